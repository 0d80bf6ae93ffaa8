"""
Security Utilities
==================

API key hygiene, owner keys, filename and URL sanitization.
"""

import re
import hashlib
import logging
from pathlib import Path
from typing import Optional, Set
from urllib.parse import urlparse

from .exceptions import ValidationError

logger = logging.getLogger(__name__)


def clean_api_key(api_key: Optional[str]) -> str:
    """
    Strip non-ASCII characters and surrounding whitespace from an API key.

    Keys pasted from chat apps or documents often carry invisible characters
    that break the ``Authorization`` header.
    """
    if not api_key:
        return ""
    return re.sub(r"[^\x00-\x7F]", "", api_key).strip()


def hash_api_key(api_key: str) -> str:
    """
    Derive the owner key used to scope stored workflows to one user.

    Args:
        api_key: Raw API key (cleaned before hashing)

    Returns:
        Hex SHA-256 digest of the cleaned key
    """
    cleaned = clean_api_key(api_key)
    if not cleaned:
        raise ValidationError("API key is required to derive an owner key", field="api_key")
    return hashlib.sha256(cleaned.encode("utf-8")).hexdigest()


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """
    Sanitize a filename by removing dangerous characters.

    Args:
        filename: Original filename
        max_length: Maximum allowed length

    Returns:
        Sanitized filename safe for filesystem operations
    """
    if not filename:
        return "unnamed"

    # Keep: alphanumeric, underscore, hyphen, dot, space
    sanitized = re.sub(r"[^\w\-. ]", "_", filename)

    sanitized = re.sub(r"[_\s]+", "_", sanitized)
    sanitized = sanitized.strip("._- ")

    # Prevent hidden files
    if sanitized.startswith("."):
        sanitized = "_" + sanitized

    # Truncate if too long (preserve extension)
    if len(sanitized) > max_length:
        name = Path(sanitized).stem
        ext = Path(sanitized).suffix
        max_name_len = max_length - len(ext)
        sanitized = name[:max_name_len] + ext

    if not sanitized or sanitized in (".", ".."):
        sanitized = "unnamed"

    return sanitized


def redact_api_key(text: str) -> str:
    """
    Redact API keys and sensitive tokens from text.

    Args:
        text: Text that might contain API keys

    Returns:
        Text with API keys redacted
    """
    if not text:
        return text

    patterns = [
        (r"Bearer\s+[A-Za-z0-9_\-\.]+", "Bearer ***REDACTED***"),
        (r"sk-[A-Za-z0-9]{8,}", "sk-***REDACTED***"),
        (r"api[_-]?key['\"]?\s*[:=]\s*['\"]?[A-Za-z0-9_\-]+", "api_key: ***REDACTED***"),
        (r"(GPTPROTO_API_KEY)=[^\s]+", r"\1=***REDACTED***"),
    ]

    result = text
    for pattern, replacement in patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    return result


def validate_url(url: str, allowed_hosts: Optional[Set[str]] = None) -> str:
    """
    Validate a URL handed to a provider or downloader.

    Args:
        url: URL to validate
        allowed_hosts: Set of allowed hostnames (None = any public host)

    Returns:
        Validated URL

    Raises:
        ValidationError: If the URL is malformed or points at a local address
    """
    if not url:
        raise ValidationError("Empty URL", field="url")

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise ValidationError(f"Invalid URL format: {e}", field="url", value=url)

    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Invalid URL scheme: {parsed.scheme}", field="url", value=url)

    hostname = (parsed.hostname or "").lower()
    if hostname in {"localhost", "127.0.0.1", "0.0.0.0", "::1"}:
        raise ValidationError("URLs to local addresses are not allowed", field="url", value=url)

    if re.match(r"^(10\.|192\.168\.|172\.(1[6-9]|2\d|3[01])\.)", hostname):
        raise ValidationError("URLs to private IP addresses are not allowed", field="url", value=url)

    if allowed_hosts and hostname not in allowed_hosts:
        raise ValidationError(f"Host not in allowed list: {hostname}", field="url", value=url)

    return url
