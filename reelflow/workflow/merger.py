"""
Video Merger
============

Joins the finished clips into the final video with ffmpeg.

Strategies are tried from cheapest to most tolerant:
1. concat demuxer with stream copy (clips share codecs)
2. filter graph re-encode with audio
3. filter graph re-encode, video only (clips without audio tracks)
"""

import asyncio
import logging
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence
import aiofiles
import httpx

from ..core.config import MergeConfig
from ..core.exceptions import MergeError, StorageError
from ..utils.storage import ObjectStore, local_path, read_local

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Outcome of a merge: durable URL plus the strategy that produced it."""

    url: str
    strategy: str
    outcome: str = "success"

    @property
    def degraded(self) -> bool:
        return self.outcome == "fallback"


class Merger(ABC):
    """Merge capability consumed by the orchestrator."""

    @abstractmethod
    async def merge(self, video_urls: Sequence[str], key: Optional[str] = None) -> MergeResult:
        """
        Merge clips in the given order.

        Args:
            video_urls: Clip URLs, in playback order
            key: Object key for the merged file

        Returns:
            MergeResult

        Raises:
            MergeError: If no strategy produced an output
        """
        pass


class FFmpegMerger(Merger):
    """Downloads the clips, runs ffmpeg and stores the result."""

    def __init__(
        self,
        object_store: ObjectStore,
        config: Optional[MergeConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.object_store = object_store
        self.config = config or MergeConfig()
        self._transport = transport

    async def merge(self, video_urls: Sequence[str], key: Optional[str] = None) -> MergeResult:
        urls = [u for u in video_urls if u]
        if not urls:
            raise MergeError("No videos to merge")

        if len(urls) == 1:
            logger.info("Single video, nothing to merge")
            return MergeResult(url=urls[0], strategy="passthrough")

        with tempfile.TemporaryDirectory(prefix="reelflow-merge-") as tmp:
            work_dir = Path(tmp)
            clips = await self._download_all(urls, work_dir)
            output_path = work_dir / "merged.mp4"

            strategies = [
                ("concat", self._concat_copy_cmd, self.config.concat_timeout),
                ("reencode", self._reencode_cmd, self.config.reencode_timeout),
                ("video_only", self._video_only_cmd, self.config.reencode_timeout),
            ]

            for name, build, timeout in strategies:
                if output_path.exists():
                    output_path.unlink()
                cmd = build(clips, output_path, work_dir)
                ok = await asyncio.to_thread(self._run, cmd, timeout)
                if ok and output_path.exists() and output_path.stat().st_size > 0:
                    break
                logger.warning(f"Merge strategy {name} failed, trying next")
            else:
                raise MergeError(f"Failed to merge {len(clips)} videos", strategy="video_only")

            async with aiofiles.open(output_path, "rb") as f:
                data = await f.read()

        url = await self.object_store.put(data, key=key)
        outcome = "success" if name == "concat" else "fallback"
        logger.info(f"Merged {len(urls)} videos with {name}: {url}")
        return MergeResult(url=url, strategy=name, outcome=outcome)

    # -------------------------------------------------------------------------
    # ffmpeg commands
    # -------------------------------------------------------------------------

    def _concat_copy_cmd(self, clips: List[Path], output_path: Path, work_dir: Path) -> List[str]:
        list_path = work_dir / "list.txt"
        with open(list_path, "w") as f:
            for clip in clips:
                f.write(f"file '{clip.absolute()}'\n")
        return [
            self.config.ffmpeg_path, "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_path),
            "-c", "copy",
            str(output_path),
        ]

    def _reencode_cmd(self, clips: List[Path], output_path: Path, work_dir: Path) -> List[str]:
        inputs = self._input_args(clips)
        streams = "".join(f"[{i}:v][{i}:a]" for i in range(len(clips)))
        return [
            self.config.ffmpeg_path, "-y",
            *inputs,
            "-filter_complex", f"{streams}concat=n={len(clips)}:v=1:a=1[outv][outa]",
            "-map", "[outv]",
            "-map", "[outa]",
            "-c:v", "libx264",
            "-c:a", "aac",
            str(output_path),
        ]

    def _video_only_cmd(self, clips: List[Path], output_path: Path, work_dir: Path) -> List[str]:
        inputs = self._input_args(clips)
        streams = "".join(f"[{i}:v]" for i in range(len(clips)))
        return [
            self.config.ffmpeg_path, "-y",
            *inputs,
            "-filter_complex", f"{streams}concat=n={len(clips)}:v=1:a=0[outv]",
            "-map", "[outv]",
            "-c:v", "libx264",
            str(output_path),
        ]

    @staticmethod
    def _input_args(clips: List[Path]) -> List[str]:
        args: List[str] = []
        for clip in clips:
            args.extend(["-i", str(clip)])
        return args

    def _run(self, cmd: List[str], timeout: float) -> bool:
        """Run one ffmpeg command; True on exit status 0."""
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"ffmpeg did not finish: {e}")
            return False
        if result.returncode != 0:
            logger.debug(f"ffmpeg stderr: {result.stderr[-1000:]}")
        return result.returncode == 0

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    async def _download_all(self, urls: List[str], work_dir: Path) -> List[Path]:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.download_timeout),
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            return [
                await self._download(client, url, work_dir / f"clip_{index:03d}.mp4")
                for index, url in enumerate(urls)
            ]

    async def _download(self, client: httpx.AsyncClient, url: str, path: Path) -> Path:
        source = local_path(url)
        if source is not None:
            # Clips kept by a local object store are copied from disk
            try:
                data = await read_local(source)
            except StorageError as e:
                raise MergeError(f"Failed to read video: {e.message}")
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
            logger.debug(f"Copied {source} to {path.name}")
            return path

        try:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise MergeError(f"Failed to download video: {response.status_code}")
                async with aiofiles.open(path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
        except httpx.HTTPError as e:
            raise MergeError(f"Failed to download video: {e}")
        logger.debug(f"Downloaded {url} to {path.name}")
        return path
