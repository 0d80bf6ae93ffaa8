"""
Storage Utilities
=================

Durable object store and atomic file helpers.

Provider URLs expire; every finished artifact is copied into an
``ObjectStore`` and the durable URL it returns replaces the provider URL.
"""

import os
import uuid
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse
from urllib.request import url2pathname
import aiofiles
import httpx

from ..core.exceptions import StorageError
from ..core.security import sanitize_filename

logger = logging.getLogger(__name__)


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


async def atomic_write_bytes(path: Union[str, Path], data: bytes) -> Path:
    """
    Write ``data`` to ``path`` so readers never see a partial file.

    The bytes go to a uniquely named temp file in the same directory, which
    then replaces the target with ``os.replace``.
    """
    path = Path(path)
    ensure_dir(path.parent)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
            await f.flush()
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise StorageError(f"Failed to write {path.name}: {e}", key=str(path))
    return path


def object_key(*parts: str, suffix: str = "") -> str:
    """Build a sanitized ``a/b/c.ext`` object key."""
    cleaned = [sanitize_filename(str(p)) for p in parts if p]
    if not cleaned:
        cleaned = [uuid.uuid4().hex]
    return "/".join(cleaned) + suffix


def local_path(url: str) -> Optional[Path]:
    """Filesystem path behind a ``file://`` URL; None for any other scheme."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return None
    return Path(url2pathname(parsed.path))


async def read_local(path: Path) -> bytes:
    """Read a stored object back from disk."""
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except OSError as e:
        raise StorageError(f"Failed to read {path.name}: {e}", key=str(path), recoverable=False)


def guess_suffix(url: str, default: str = ".bin") -> str:
    """Guess a file extension from a URL path."""
    suffix = Path(httpx.URL(url).path).suffix.lower()
    return suffix if suffix and len(suffix) <= 5 else default


# =============================================================================
# Object Stores
# =============================================================================


class ObjectStore(ABC):
    """Durable storage for generated artifacts."""

    @abstractmethod
    async def put(self, source: Union[bytes, str], key: Optional[str] = None) -> str:
        """
        Store bytes, or the content behind a URL, and return a durable URL.

        Args:
            source: Raw bytes, an http(s) URL or a file:// URL to copy
            key: Object key; generated when omitted

        Returns:
            Durable URL of the stored object
        """
        pass


class LocalObjectStore(ObjectStore):
    """
    Object store backed by a local directory.

    Usage:
        store = LocalObjectStore("./output/media", public_base_url="https://cdn.example.com/media")
        url = await store.put("https://provider.example/tmp/abc.png", key="wf1/character/char-1.png")
    """

    def __init__(
        self,
        base_path: Union[str, Path],
        public_base_url: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_path = ensure_dir(base_path).resolve()
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.timeout = timeout
        self._transport = transport

    async def put(self, source: Union[bytes, str], key: Optional[str] = None) -> str:
        if isinstance(source, str):
            data = await self._download(source)
            key = key or object_key(uuid.uuid4().hex, suffix=guess_suffix(source))
        else:
            data = source
            key = key or object_key(uuid.uuid4().hex)

        target = (self.base_path / key).resolve()
        try:
            target.relative_to(self.base_path)
        except ValueError:
            raise StorageError("Object key escapes the store directory", key=key, recoverable=False)

        await atomic_write_bytes(target, data)
        logger.info(f"Stored object {key} ({len(data)} bytes)")
        return self.url_for(key)

    def url_for(self, key: str) -> str:
        """Public URL for a stored key."""
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return (self.base_path / key).as_uri()

    async def _download(self, url: str) -> bytes:
        """Fetch the bytes behind a URL."""
        path = local_path(url)
        if path is not None:
            return await read_local(path)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise StorageError(f"Download failed: {e}", key=url)

        if response.status_code != 200:
            raise StorageError(f"Download failed with status {response.status_code}", key=url)
        return response.content
