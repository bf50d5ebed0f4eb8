"""
Builds the ffmpeg invocation for the fixed AMV target profile.

Construction is kept apart from execution so the exact command can be logged
and unit-tested without running a process.
"""

from dataclasses import dataclass
from typing import List, Optional


# AMV players expect exactly two streams: one video, one audio.
AMV_VIDEO_FILTER = (
    "scale=320:240:force_original_aspect_ratio=decrease,"
    "pad=320:240:(ow-iw)/2:(oh-ih)/2"
)
AMV_FRAME_RATE = "14"
AMV_PIXEL_FORMAT = "yuvj420p"
AMV_VIDEO_CODEC = "amv"
AMV_AUDIO_CODEC = "adpcm_ima_amv"
AMV_AUDIO_CHANNELS = "1"
AMV_AUDIO_RATE = "22050"
AMV_AUDIO_BLOCK_SIZE = "1575"

SILENT_AUDIO_SOURCE = f"anullsrc=r={AMV_AUDIO_RATE}:cl=mono"


@dataclass(frozen=True)
class EngineInput:
    """One ``-i`` source, optionally with a forced demuxer (``-f``)."""

    source: str
    format: Optional[str] = None

    def to_args(self) -> List[str]:
        args = []
        if self.format:
            args += ["-f", self.format]
        return args + ["-i", self.source]


@dataclass
class InvocationSpec:
    """Everything the supervisor needs to run one conversion."""

    inputs: List[EngineInput]
    output_options: List[str]
    output_path: str
    duration_hint: Optional[float] = None

    @property
    def synthesizes_audio(self) -> bool:
        return any(i.format == "lavfi" for i in self.inputs)

    def to_argv(self, ffmpeg_bin: str) -> List[str]:
        """
        Render the full command line:

            ffmpeg -hide_banner [-f fmt] -i <src> ... -nostats -progress pipe:1
                   <output options> -y <output>
        """
        argv = [ffmpeg_bin, "-hide_banner"]
        for engine_input in self.inputs:
            argv += engine_input.to_args()
        argv += ["-nostats", "-progress", "pipe:1"]
        argv += self.output_options
        argv += ["-y", self.output_path]
        return argv


def amv_output_options(synthesized_audio: bool) -> List[str]:
    options = [
        "-vf", AMV_VIDEO_FILTER,
        "-r", AMV_FRAME_RATE,
        "-pix_fmt", AMV_PIXEL_FORMAT,
        "-c:v", AMV_VIDEO_CODEC,
        "-c:a", AMV_AUDIO_CODEC,
        "-ac", AMV_AUDIO_CHANNELS,
        "-ar", AMV_AUDIO_RATE,
        "-block_size", AMV_AUDIO_BLOCK_SIZE,
    ]
    if synthesized_audio:
        # the silent source is infinite; stop at the end of the video
        options.append("-shortest")
    return options


def build_amv_invocation(
    input_path: str,
    output_path: str,
    has_audio: bool,
    duration_hint: Optional[float] = None,
) -> InvocationSpec:
    """Build the conversion for one upload.

    When the source has no audio track a silent mono 22050 Hz lavfi source is
    added as a second input.
    """
    inputs = [EngineInput(input_path)]
    if not has_audio:
        inputs.append(EngineInput(SILENT_AUDIO_SOURCE, format="lavfi"))
    return InvocationSpec(
        inputs=inputs,
        output_options=amv_output_options(synthesized_audio=not has_audio),
        output_path=output_path,
        duration_hint=duration_hint,
    )


def command_as_string(argv: List[str]) -> str:
    """Human-readable version of the command for logging."""
    return " ".join(argv)
