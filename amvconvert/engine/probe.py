"""
Thin async wrapper around the ffprobe CLI.

``inspect`` raises ProbeFailure; ``examine`` and ``has_audio_track`` never
raise and treat any failure as "no audio", since the conversion can always
synthesize a silent track.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from amvconvert.jobs.errors import ProbeFailure
from amvconvert.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MediaInfo:
    has_audio: bool
    has_video: bool
    duration_seconds: float


UNKNOWN_MEDIA = MediaInfo(has_audio=False, has_video=False, duration_seconds=0.0)


class StreamProbe:
    """Inspects media files with ffprobe."""

    def __init__(self, ffprobe_bin: str, timeout: float = 30.0):
        self.ffprobe_bin = ffprobe_bin
        self.timeout = timeout

    def build_command(self, input_path: str) -> List[str]:
        return [
            self.ffprobe_bin,
            "-v", "quiet",            # suppress banner
            "-print_format", "json",  # machine-readable output
            "-show_format",           # duration
            "-show_streams",          # per-stream codec_type
            input_path,
        ]

    async def inspect(self, input_path: str) -> MediaInfo:
        """Run ffprobe on ``input_path`` and summarise its streams.

        Raises:
            ProbeFailure: ffprobe could not be started, timed out, exited
                non-zero or printed something other than JSON.
        """
        raw = await self._run(input_path)
        return parse_probe_output(raw)

    async def examine(self, input_path: str) -> MediaInfo:
        """Like ``inspect`` but never raises; failures yield UNKNOWN_MEDIA."""
        try:
            return await self.inspect(input_path)
        except ProbeFailure as exc:
            logger.warning(f"Probe failed for {input_path}, assuming no audio: {exc}")
            return UNKNOWN_MEDIA

    async def has_audio_track(self, input_path: str) -> bool:
        return (await self.examine(input_path)).has_audio

    async def _run(self, input_path: str) -> Dict[str, Any]:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(input_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProbeFailure(f"could not start ffprobe: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise ProbeFailure(f"ffprobe timed out after {self.timeout}s")

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise ProbeFailure(f"ffprobe exited with code {process.returncode}: {message}")

        try:
            return json.loads(stdout.decode(errors="replace") or "{}")
        except json.JSONDecodeError as exc:
            raise ProbeFailure(f"unreadable ffprobe output: {exc}") from exc


def parse_probe_output(data: Dict[str, Any]) -> MediaInfo:
    """Extract the fields we care about from raw ffprobe JSON."""
    streams = data.get("streams") or []
    fmt = data.get("format") or {}
    if not streams:
        raise ProbeFailure("no streams found")

    codec_types = {s.get("codec_type") for s in streams}
    try:
        duration = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        duration = 0.0

    return MediaInfo(
        has_audio="audio" in codec_types,
        has_video="video" in codec_types,
        duration_seconds=max(duration, 0.0),
    )
