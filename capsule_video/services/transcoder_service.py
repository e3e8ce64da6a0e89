"""FFmpeg adapter: probing and conversion to H.264 MP4."""

import asyncio
import json
import math
import os
import shutil
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import settings
from ..core.abort import AbortSignal
from ..core.exceptions import AbortError, ProbeError, TranscodeError
from ..schemas.video import ProbeResult, TranscodeOutcome
from ..utils.constants import SEGMENTS_DIR_NAME, TARGET_CODEC, VideoQuality
from ..utils.helpers import clamp, parse_timemark
from ..utils.logger import get_logger
from .hardware_accel_service import EncoderConfig, HardwareAccelerationService, software_encoder

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]

_STDERR_TAIL_LINES = 40


def _parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe rates such as '30000/1001'."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            return round(float(num) / float(den), 3) if float(den) else None
        return float(value)
    except ValueError:
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def partial_output_path(output_path: Path) -> Path:
    """Where ffmpeg writes before the result is moved into place."""
    return output_path.with_name(f"{output_path.stem}.partial{output_path.suffix or '.mp4'}")


class TranscoderService:
    """Wraps the ffprobe and ffmpeg command line tools."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        hardware: Optional[HardwareAccelerationService] = None,
        segment_duration: Optional[int] = None,
    ):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.ffprobe_path = ffprobe_path or settings.ffprobe_path
        self.hardware = hardware
        self.segment_duration = (
            settings.segment_duration_seconds if segment_duration is None else segment_duration
        )

    async def check_availability(self) -> bool:
        """True when the ffmpeg binary can be executed."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        return await process.wait() == 0

    async def probe(self, path: Union[str, Path]) -> ProbeResult:
        """
        Read duration, dimensions and codec of the first video stream.
        Raises ProbeError with ffprobe's diagnostic when the file is unreadable.
        """
        cmd = [
            self.ffprobe_path, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            str(path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError("ffprobe is not available", diagnostic=str(e)) from e

        stdout, stderr = await process.communicate()
        diagnostic = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise ProbeError(
                f"Could not read video metadata: {diagnostic or 'ffprobe failed'}",
                diagnostic=diagnostic,
            )

        try:
            data: Dict[str, Any] = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError("ffprobe returned invalid output", diagnostic=str(e)) from e

        stream = next(
            (s for s in data.get("streams", []) if s.get("codec_type") == "video"),
            None,
        )
        if stream is None:
            raise ProbeError("No video stream found", diagnostic=diagnostic)

        width = int(stream.get("width") or 0)
        height = int(stream.get("height") or 0)
        if width <= 0 or height <= 0:
            raise ProbeError("Video stream has no dimensions", diagnostic=diagnostic)

        fmt = data.get("format", {})
        duration = _to_float(fmt.get("duration")) or _to_float(stream.get("duration")) or 0.0
        bitrate = _to_float(fmt.get("bit_rate"))

        return ProbeResult(
            duration=max(duration, 0.0),
            width=width,
            height=height,
            codec=(stream.get("codec_name") or "unknown").lower(),
            bitrate=int(bitrate) if bitrate else None,
            fps=_parse_frame_rate(stream.get("avg_frame_rate") or stream.get("r_frame_rate")),
            format_name=fmt.get("format_name"),
        )

    async def transcode_to_standard_codec(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
        abort_signal: Optional[AbortSignal] = None,
        *,
        duration: Optional[float] = None,
        quality: VideoQuality = VideoQuality.MEDIUM,
    ) -> TranscodeOutcome:
        """
        Re-encode input to H.264 video and AAC audio in an MP4 container.

        ``on_progress`` receives floats in [0, 100]. Output appears at
        ``output_path`` only when encoding succeeded; on failure or abort
        nothing is left there.
        """
        if abort_signal:
            abort_signal.throw_if_aborted()

        input_path = Path(input_path)
        output_path = Path(output_path)
        if duration is None:
            duration = (await self.probe(input_path)).duration

        partial = partial_output_path(output_path)
        segments_dir = output_path.parent / SEGMENTS_DIR_NAME
        report = on_progress or (lambda _: None)

        try:
            if self.segment_duration and duration > self.segment_duration:
                await self._encode_segmented(
                    input_path, partial, segments_dir, duration, quality, report, abort_signal
                )
            else:
                await self._encode_with_fallback(
                    input_path, partial, duration, quality, report, abort_signal
                )
            if abort_signal:
                abort_signal.throw_if_aborted()
            os.replace(partial, output_path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(segments_dir, ignore_errors=True)

        report(100.0)
        logger.info("Transcode finished", output=str(output_path))
        return TranscodeOutcome(
            was_converted=True,
            output_path=str(output_path),
            final_codec=TARGET_CODEC,
        )

    def _encoder_chain(self, quality: VideoQuality) -> List[EncoderConfig]:
        if self.hardware:
            return self.hardware.encoder_chain(quality)
        return [software_encoder(quality)]

    async def _encode_with_fallback(
        self,
        input_path: Path,
        output: Path,
        duration: float,
        quality: VideoQuality,
        on_progress: ProgressCallback,
        abort_signal: Optional[AbortSignal],
        start: Optional[float] = None,
        length: Optional[float] = None,
    ) -> None:
        chain = self._encoder_chain(quality)
        for index, encoder in enumerate(chain):
            cmd = self._build_encode_command(input_path, output, encoder, start, length)
            try:
                await self._run_ffmpeg(cmd, length or duration, on_progress, abort_signal)
                return
            except TranscodeError as e:
                if index == len(chain) - 1:
                    raise
                logger.warning(
                    "Hardware encoding failed, falling back",
                    encoder=encoder.video_codec,
                    error=str(e),
                )
                output.unlink(missing_ok=True)

    def _build_encode_command(
        self,
        input_path: Path,
        output: Path,
        encoder: EncoderConfig,
        start: Optional[float],
        length: Optional[float],
    ) -> List[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-y", *encoder.input_options]
        if start is not None:
            cmd += ["-ss", f"{start:.3f}"]
        cmd += ["-i", str(input_path)]
        if length is not None:
            cmd += ["-t", f"{length:.3f}"]
        cmd += [
            "-map", "0:v:0",
            "-map", "0:a:0?",
            "-c:v", encoder.video_codec,
            *encoder.output_options,
            "-c:a", "aac",
            "-b:a", "128k",
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            str(output),
        ]
        return cmd

    async def _encode_segmented(
        self,
        input_path: Path,
        output: Path,
        segments_dir: Path,
        duration: float,
        quality: VideoQuality,
        on_progress: ProgressCallback,
        abort_signal: Optional[AbortSignal],
    ) -> None:
        """Encode fixed-length segments one at a time, then join them."""
        segments_dir.mkdir(parents=True, exist_ok=True)
        count = math.ceil(duration / self.segment_duration)
        segment_files: List[Path] = []
        logger.info("Encoding in segments", segments=count, duration=duration)

        for index in range(count):
            if abort_signal:
                abort_signal.throw_if_aborted()
            start = index * self.segment_duration
            length = min(self.segment_duration, duration - start)
            segment_path = segments_dir / f"segment_{index:03d}.mp4"
            base = start / duration * 100
            weight = length / duration * 100

            def segment_progress(p: float, base: float = base, weight: float = weight) -> None:
                on_progress(base + clamp(p) * weight / 100)

            await self._encode_with_fallback(
                input_path, segment_path, duration, quality,
                segment_progress, abort_signal, start=start, length=length,
            )
            segment_files.append(segment_path)

        if abort_signal:
            abort_signal.throw_if_aborted()
        await self._concatenate(segments_dir, segment_files, output, abort_signal)

    async def _concatenate(
        self,
        segments_dir: Path,
        segment_files: List[Path],
        output: Path,
        abort_signal: Optional[AbortSignal],
    ) -> None:
        concat_list = segments_dir / "concat_list.txt"
        lines = []
        for segment in segment_files:
            escaped = str(segment.resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        concat_list.write_text("\n".join(lines) + "\n", encoding="utf-8")

        cmd = [
            self.ffmpeg_path, "-hide_banner", "-y",
            "-f", "concat", "-safe", "0",
            "-i", str(concat_list),
            "-c", "copy",
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            str(output),
        ]
        await self._run_ffmpeg(cmd, 0.0, lambda _: None, abort_signal)

    async def _run_ffmpeg(
        self,
        cmd: List[str],
        duration: float,
        on_progress: ProgressCallback,
        abort_signal: Optional[AbortSignal],
    ) -> None:
        """
        Run one ffmpeg process, relaying ``-progress`` output.
        The process is killed as soon as the abort signal fires.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"FFmpeg is not available: {e}") from e

        def kill(_reason: Optional[str] = None) -> None:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass

        remove_listener = abort_signal.add_listener(kill) if abort_signal else None
        stderr_tail: deque = deque(maxlen=_STDERR_TAIL_LINES)
        stderr_task = asyncio.create_task(self._drain_stderr(process.stderr, stderr_tail))

        try:
            async for raw in process.stdout:
                seconds = self._parse_progress_line(raw.decode("utf-8", errors="replace"))
                if seconds is not None and duration > 0:
                    on_progress(clamp(seconds / duration * 100))
            returncode = await process.wait()
            await stderr_task
        finally:
            if remove_listener:
                remove_listener()
            if process.returncode is None:
                kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if abort_signal and abort_signal.aborted:
            raise AbortError(reason=abort_signal.reason)
        if returncode != 0:
            message = f"FFmpeg exited with code {returncode}"
            if stderr_tail:
                message = f"{message}: {stderr_tail[-1]}"
            raise TranscodeError(message, stderr="\n".join(stderr_tail), returncode=returncode)

    @staticmethod
    async def _drain_stderr(stream: asyncio.StreamReader, tail: deque) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    @staticmethod
    def _parse_progress_line(line: str) -> Optional[float]:
        """Seconds encoded so far, from one ``key=value`` progress line."""
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        # out_time_ms is reported in microseconds as well
        if key in ("out_time_us", "out_time_ms"):
            try:
                return int(value) / 1_000_000
            except ValueError:
                return None
        if key == "out_time":
            return parse_timemark(value)
        return None
