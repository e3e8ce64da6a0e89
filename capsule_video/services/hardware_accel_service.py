"""Hardware encoder detection for FFmpeg."""

import asyncio
import os
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import settings
from ..utils.constants import HardwareAccelType, VideoQuality
from ..utils.logger import get_logger

logger = get_logger(__name__)

VAAPI_DEVICE = "/dev/dri/renderD128"
SMOKE_TEST_TIMEOUT_SECONDS = 5.0
_SMOKE_TEST_INPUT = ["-f", "lavfi", "-i", "color=c=black:s=64x64:d=0.1"]


@dataclass
class EncoderConfig:
    """FFmpeg options for one video encoder."""

    video_codec: str
    input_options: List[str] = field(default_factory=list)
    output_options: List[str] = field(default_factory=list)
    hardware: Optional[HardwareAccelType] = None


def software_encoder(quality: VideoQuality = VideoQuality.MEDIUM) -> EncoderConfig:
    """libx264 settings tuned for low memory use."""
    return EncoderConfig(
        video_codec="libx264",
        output_options=[
            "-preset", "ultrafast",
            "-crf", str(quality.crf),
            "-threads", "2",
            "-bufsize", "1M",
            "-maxrate", "2M",
            "-pix_fmt", "yuv420p",
        ],
    )


class HardwareAccelerationService:
    """
    Detects a usable hardware H.264 encoder once at startup.

    Tries VAAPI, then NVENC, then QSV, each with a short test encode.
    When none works the pipeline encodes with libx264.
    """

    def __init__(self, ffmpeg_path: Optional[str] = None, enabled: Optional[bool] = None):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.enabled = settings.hardware_acceleration if enabled is None else enabled
        self.accel_type: Optional[HardwareAccelType] = None
        self.device: Optional[str] = None
        self._detected = False

    async def detect(self) -> Optional[HardwareAccelType]:
        """Probe encoders in order of preference. Safe to call more than once."""
        if self._detected:
            return self.accel_type
        self._detected = True

        if not self.enabled:
            logger.info("Hardware acceleration disabled by configuration")
            return None

        logger.info("Checking hardware acceleration availability")
        if os.path.exists(VAAPI_DEVICE) and await self._smoke_test(
            ["-vaapi_device", VAAPI_DEVICE, "-hwaccel", "vaapi"],
            ["-vf", "format=nv12,hwupload", "-c:v", "h264_vaapi"],
        ):
            self.accel_type = HardwareAccelType.VAAPI
            self.device = VAAPI_DEVICE
        elif await self._smoke_test([], ["-c:v", "h264_nvenc"]):
            self.accel_type = HardwareAccelType.NVENC
        elif await self._smoke_test([], ["-c:v", "h264_qsv"]):
            self.accel_type = HardwareAccelType.QSV

        if self.accel_type:
            logger.info("Hardware acceleration available", type=self.accel_type.value)
        else:
            logger.warning("No hardware acceleration available, using software encoding")
        return self.accel_type

    async def _smoke_test(self, input_options: List[str], output_options: List[str]) -> bool:
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-loglevel", "error",
            *input_options, *_SMOKE_TEST_INPUT, *output_options,
            "-f", "null", "-",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug("Encoder test could not start", error=str(e))
            return False

        try:
            returncode = await asyncio.wait_for(process.wait(), SMOKE_TEST_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug("Encoder test timed out", options=output_options)
            return False
        return returncode == 0

    def encoder_config(self, quality: VideoQuality = VideoQuality.MEDIUM) -> Optional[EncoderConfig]:
        """Options for the detected hardware encoder, or None."""
        if self.accel_type == HardwareAccelType.VAAPI:
            return EncoderConfig(
                video_codec="h264_vaapi",
                input_options=[
                    "-vaapi_device", self.device or VAAPI_DEVICE,
                    "-hwaccel", "vaapi",
                ],
                output_options=["-vf", "format=nv12,hwupload", "-qp", str(quality.crf)],
                hardware=HardwareAccelType.VAAPI,
            )
        if self.accel_type == HardwareAccelType.NVENC:
            return EncoderConfig(
                video_codec="h264_nvenc",
                input_options=["-hwaccel", "cuda"],
                output_options=["-preset", "fast", "-cq", str(quality.crf)],
                hardware=HardwareAccelType.NVENC,
            )
        if self.accel_type == HardwareAccelType.QSV:
            return EncoderConfig(
                video_codec="h264_qsv",
                input_options=["-hwaccel", "qsv"],
                output_options=["-preset", "fast", "-global_quality", str(quality.crf)],
                hardware=HardwareAccelType.QSV,
            )
        return None

    def encoder_chain(self, quality: VideoQuality = VideoQuality.MEDIUM) -> List[EncoderConfig]:
        """Encoders to try in order; software always comes last."""
        chain = []
        hardware = self.encoder_config(quality)
        if hardware:
            chain.append(hardware)
        chain.append(software_encoder(quality))
        return chain
