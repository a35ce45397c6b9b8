from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from typing import Optional

from batchbrake.jobs import VideoInfo
from batchbrake.utils import get_user_cache_path

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"Duration:\s(\d+):(\d+):(\d+)\.(\d+)")
_RESOLUTION_RE = re.compile(r"Stream.*Video:.*?\b(\d{3,5})x(\d{2,5})\b")
_CODEC_RE = re.compile(r"Stream.*Video:\s(\w+)")


def parse_ffmpeg_info(text: str, path: str) -> VideoInfo:
    """Build a :class:`VideoInfo` from the banner ``ffmpeg -i`` prints on stderr."""
    info = VideoInfo(file_name=os.path.basename(path))
    try:
        info.file_size_bytes = os.path.getsize(path)
    except OSError:
        info.file_size_bytes = None

    match = _DURATION_RE.search(text or "")
    if match:
        hours, minutes, seconds, fraction = match.groups()
        info.duration = (
            int(hours) * 3600 + int(minutes) * 60 + int(seconds) + float(f"0.{fraction}")
        )

    match = _RESOLUTION_RE.search(text or "")
    if match:
        info.resolution = f"{match.group(1)}x{match.group(2)}"

    match = _CODEC_RE.search(text or "")
    if match:
        info.codec = match.group(1)

    return info


class FFmpegProbe:
    """Reads basic media facts with ``ffmpeg -i``."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", *, use_static_ffmpeg: bool = False, timeout: float = 30.0):
        self.ffmpeg_path = ffmpeg_path or "ffmpeg"
        self.use_static_ffmpeg = use_static_ffmpeg
        self.timeout = timeout
        self._paths_ready = False

    def _ensure_paths(self) -> None:
        if self._paths_ready or not self.use_static_ffmpeg:
            return
        import static_ffmpeg

        ffmpeg_cache_root = get_user_cache_path("ffmpeg")
        platform_cache = os.path.join(ffmpeg_cache_root, sys.platform)
        os.makedirs(platform_cache, exist_ok=True)
        static_ffmpeg.add_paths(weak=True, download_dir=platform_cache)
        self._paths_ready = True

    def probe(self, path: str) -> Optional[VideoInfo]:
        try:
            self._ensure_paths()
        except Exception as exc:
            logger.warning("static_ffmpeg setup failed, using %s from PATH: %s", self.ffmpeg_path, exc)
            self.use_static_ffmpeg = False
        try:
            completed = subprocess.run(
                [self.ffmpeg_path, "-hide_banner", "-i", path],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Could not probe %s: %s", path, exc)
            return None
        # ffmpeg exits non-zero without an output file; the banner is still complete
        return parse_ffmpeg_info(completed.stderr or "", path)
