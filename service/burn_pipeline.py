"""Decode, composite and re-encode pipeline for burning subtitles."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
import os
from pathlib import Path
import shutil
import subprocess
import tempfile
import threading
from typing import IO, Callable, Iterator, Sequence, Tuple

from PIL import Image

from domain.subtitle_burn import (
    OUTPUT_DIR_CODE,
    BurnValidationError,
    Cue,
    SubtitleStyle,
)
from service.frame_compositor import FrameCompositor

OUTPUT_FPS = 30
TARGET_BITRATE = "8M"
BYTES_PER_PIXEL = 3
FINAL_PROGRESS = 100
STDERR_TAIL_BYTES = 32 * 1024
OUTPUT_SUFFIX = "-subtitled"
LOGGER = logging.getLogger("burn_subtitles")

METADATA_CODE = "burn_subtitles.media.metadata_error"
PLAYBACK_CODE = "burn_subtitles.media.playback_error"
ENCODER_UNAVAILABLE_CODE = "burn_subtitles.ffmpeg.encoder_unavailable"
FFMPEG_NOT_FOUND_CODE = "burn_subtitles.ffmpeg.not_found"
ENCODE_FAILED_CODE = "burn_subtitles.ffmpeg.encode_failed"
INVALID_TRANSITION_CODE = "burn_subtitles.job.invalid_transition"
UNHANDLED_CODE = "burn_subtitles.unhandled_error"

ProgressCallback = Callable[[int], None]
FailureCallback = Callable[[str], None]


class BurnPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class BurnState(str, Enum):
    """Lifecycle states for a burn job."""

    IDLE = "idle"
    METADATA_LOADING = "metadata_loading"
    ENCODING = "encoding"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({BurnState.DONE, BurnState.FAILED, BurnState.CANCELLED})
ALLOWED_TRANSITIONS = {
    BurnState.IDLE: frozenset({BurnState.METADATA_LOADING}),
    BurnState.METADATA_LOADING: frozenset({BurnState.ENCODING}),
    BurnState.ENCODING: frozenset({BurnState.FINALIZING}),
    BurnState.FINALIZING: frozenset({BurnState.DONE}),
}


@dataclass(frozen=True)
class MediaMetadata:
    """Intrinsic properties of the source video."""

    width: int
    height: int
    duration_seconds: float

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise BurnPipelineError(METADATA_CODE, "source video has no dimensions")
        if self.duration_seconds <= 0:
            raise BurnPipelineError(METADATA_CODE, "source video has no duration")


@dataclass(frozen=True)
class EncoderSpec:
    """Output codec with its container and media type."""

    codec: str
    media_type: str
    extension: str
    extra_args: Tuple[str, ...]


# Ordered by preference; the first codec ffmpeg supports is used.
CODEC_PREFERENCES = (
    EncoderSpec(
        codec="libvpx-vp9",
        media_type="video/webm; codecs=vp9",
        extension=".webm",
        extra_args=("-deadline", "good", "-row-mt", "1"),
    ),
    EncoderSpec(
        codec="libx264",
        media_type="video/mp4",
        extension=".mp4",
        extra_args=("-preset", "veryfast", "-movflags", "+faststart"),
    ),
    EncoderSpec(
        codec="libvpx",
        media_type="video/webm",
        extension=".webm",
        extra_args=("-deadline", "good"),
    ),
)


@dataclass(frozen=True)
class DecodedFrame:
    """A decoded frame and its position on the output timeline."""

    index: int
    time_seconds: float
    image: Image.Image


@dataclass(frozen=True)
class BurnArtifact:
    """Finalized output video."""

    path: str
    media_type: str
    size_bytes: int
    frame_count: int

    @property
    def suggested_filename(self) -> str:
        return os.path.basename(self.path)


def require_tool(tool_name: str) -> str:
    """Return the path of an ffmpeg tool or raise when missing."""
    tool_path = shutil.which(tool_name)
    if not tool_path:
        raise BurnPipelineError(FFMPEG_NOT_FOUND_CODE, f"{tool_name} not on PATH")
    return tool_path


def read_rotation_degrees(stream: dict) -> int:
    """Read display rotation from stream tags or side data."""
    rotate_tag = stream.get("tags", {}).get("rotate")
    if rotate_tag is not None:
        try:
            return int(float(rotate_tag)) % 360
        except ValueError:
            return 0
    for side_data in stream.get("side_data_list", []):
        if "rotation" in side_data:
            return int(float(side_data["rotation"])) % 360
    return 0


def parse_probe_output(probe_json: str) -> MediaMetadata:
    """Extract width, height and duration from ffprobe JSON output."""
    try:
        payload = json.loads(probe_json)
    except json.JSONDecodeError as exc:
        raise BurnPipelineError(METADATA_CODE, "ffprobe output is not JSON") from exc

    video_stream = next(
        (
            stream
            for stream in payload.get("streams", [])
            if stream.get("codec_type") == "video"
        ),
        None,
    )
    if video_stream is None:
        raise BurnPipelineError(METADATA_CODE, "source has no video stream")

    width = int(video_stream.get("width") or 0)
    height = int(video_stream.get("height") or 0)
    if read_rotation_degrees(video_stream) in (90, 270):
        width, height = height, width

    duration_text = payload.get("format", {}).get("duration") or video_stream.get(
        "duration"
    )
    try:
        duration_seconds = float(duration_text)
    except (TypeError, ValueError) as exc:
        raise BurnPipelineError(
            METADATA_CODE, "source video duration unavailable"
        ) from exc
    return MediaMetadata(width=width, height=height, duration_seconds=duration_seconds)


def probe_media(source_path: str) -> MediaMetadata:
    """Open the source with ffprobe and read its intrinsic metadata."""
    if not os.path.isfile(source_path):
        raise BurnPipelineError(METADATA_CODE, f"source video not found: {source_path}")
    ffprobe_path = require_tool("ffprobe")
    result = subprocess.run(
        [
            ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_streams",
            "-show_format",
            source_path,
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise BurnPipelineError(
            METADATA_CODE, f"ffprobe failed for source video: {result.stderr.strip()}"
        )
    return parse_probe_output(result.stdout)


def parse_encoder_names(encoders_text: str) -> frozenset[str]:
    """Parse encoder names from `ffmpeg -encoders` output."""
    names: set[str] = set()
    listing_started = False
    for line in encoders_text.splitlines():
        stripped = line.strip()
        if stripped.startswith("------"):
            listing_started = True
            continue
        if not listing_started:
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            names.add(parts[1])
    return frozenset(names)


def list_available_encoders() -> frozenset[str]:
    """Return the encoder names supported by the local ffmpeg."""
    ffmpeg_path = require_tool("ffmpeg")
    result = subprocess.run(
        [ffmpeg_path, "-hide_banner", "-encoders"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise BurnPipelineError(
            ENCODER_UNAVAILABLE_CODE, f"ffmpeg -encoders failed: {result.stderr.strip()}"
        )
    return parse_encoder_names(result.stdout)


def negotiate_encoder(
    available: frozenset[str], output_path: str | None
) -> EncoderSpec:
    """Pick the first preferred codec that ffmpeg supports.

    When an output path is given, only codecs whose container matches its
    extension are considered.
    """
    candidates: Sequence[EncoderSpec] = CODEC_PREFERENCES
    if output_path:
        extension = Path(output_path).suffix.lower()
        candidates = [spec for spec in CODEC_PREFERENCES if spec.extension == extension]
        if not candidates:
            raise BurnPipelineError(
                ENCODER_UNAVAILABLE_CODE,
                f"no supported codec writes {extension or 'extensionless'} files",
            )
    for spec in candidates:
        if spec.codec in available:
            return spec
    raise BurnPipelineError(
        ENCODER_UNAVAILABLE_CODE,
        "ffmpeg supports none of: " + ", ".join(spec.codec for spec in candidates),
    )


def select_encoder(output_path: str | None) -> EncoderSpec:
    """Negotiate the output codec against the local ffmpeg."""
    return negotiate_encoder(list_available_encoders(), output_path)


def default_output_path(source_path: str, encoder: EncoderSpec) -> str:
    """Derive an output path next to the source video."""
    source = Path(source_path)
    return str(source.with_name(f"{source.stem}{OUTPUT_SUFFIX}{encoder.extension}"))


class StderrDrain:
    """Collect the tail of a process stderr stream on a daemon thread."""

    def __init__(self, stream: IO[bytes] | None) -> None:
        self._stream = stream
        self._chunks: list[bytes] = []
        self._size = 0
        self._thread = None
        if stream is not None:
            self._thread = threading.Thread(
                target=self._drain, args=(stream,), daemon=True
            )
            self._thread.start()

    def _drain(self, stream: IO[bytes]) -> None:
        for chunk in iter(lambda: stream.read(4096), b""):
            self._chunks.append(chunk)
            self._size += len(chunk)
            while self._size > STDERR_TAIL_BYTES and len(self._chunks) > 1:
                self._size -= len(self._chunks.pop(0))

    def text(self, timeout_seconds: float = 5.0) -> str:
        if self._thread is not None:
            self._thread.join(timeout=timeout_seconds)
        return b"".join(self._chunks).decode("utf-8", errors="replace").strip()

    def close(self, timeout_seconds: float = 5.0) -> None:
        """Wait for the drain to reach end of stream, then close the stream."""
        if self._thread is not None:
            self._thread.join(timeout=timeout_seconds)
            if self._thread.is_alive():
                return
        if self._stream is not None and not self._stream.closed:
            self._stream.close()


def stop_process(process: subprocess.Popen[bytes]) -> None:
    """Close pipes and kill a process that is still running."""
    try:
        if process.stdin and not process.stdin.closed:
            process.stdin.close()
    except OSError:
        pass
    if process.poll() is None:
        process.kill()
        process.wait()
    if process.stdout and not process.stdout.closed:
        process.stdout.close()


def read_exactly(stream: IO[bytes], byte_count: int) -> bytes:
    """Read up to byte_count bytes, stopping early only at end of stream."""
    buffer = bytearray()
    while len(buffer) < byte_count:
        chunk = stream.read(byte_count - len(buffer))
        if not chunk:
            break
        buffer += chunk
    return bytes(buffer)


class FfmpegFrameDecoder:
    """Lazy sequence of RGB frames decoded at the fixed output rate."""

    def __init__(self, source_path: str, metadata: MediaMetadata) -> None:
        self.source_path = source_path
        self.metadata = metadata
        ffmpeg_path = require_tool("ffmpeg")
        filters = f"fps={OUTPUT_FPS},scale={metadata.width}:{metadata.height}"
        self.process = subprocess.Popen(
            [
                ffmpeg_path,
                "-v",
                "error",
                "-i",
                source_path,
                "-an",
                "-sn",
                "-vf",
                filters,
                "-f",
                "rawvideo",
                "-pix_fmt",
                "rgb24",
                "pipe:1",
            ],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        self.stderr = StderrDrain(self.process.stderr)

    def __iter__(self) -> Iterator[DecodedFrame]:
        if self.process.stdout is None:
            raise BurnPipelineError(PLAYBACK_CODE, "decoder stdout unavailable")
        size = (self.metadata.width, self.metadata.height)
        frame_bytes = size[0] * size[1] * BYTES_PER_PIXEL
        frame_index = 0
        while True:
            raw = read_exactly(self.process.stdout, frame_bytes)
            if not raw:
                break
            if len(raw) < frame_bytes:
                raise BurnPipelineError(
                    PLAYBACK_CODE, f"decoder returned a truncated frame {frame_index}"
                )
            yield DecodedFrame(
                index=frame_index,
                time_seconds=frame_index / float(OUTPUT_FPS),
                image=Image.frombytes("RGB", size, raw),
            )
            frame_index += 1

        return_code = self.process.wait()
        if return_code != 0:
            raise BurnPipelineError(
                PLAYBACK_CODE,
                f"decoder failed with exit code {return_code}. {self.stderr.text()}",
            )

    def close(self) -> None:
        stop_process(self.process)
        self.stderr.close()


class FfmpegFrameEncoder:
    """Streaming encoder fed with raw RGB frames on stdin."""

    def __init__(
        self, output_path: str, width: int, height: int, encoder: EncoderSpec
    ) -> None:
        self.output_path = output_path
        ffmpeg_path = require_tool("ffmpeg")
        ffmpeg_cmd = [
            ffmpeg_path,
            "-y",
            "-v",
            "error",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "-s",
            f"{width}x{height}",
            "-r",
            str(OUTPUT_FPS),
            "-i",
            "-",
            "-an",
            "-vf",
            "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:v",
            encoder.codec,
            "-b:v",
            TARGET_BITRATE,
            "-pix_fmt",
            "yuv420p",
            *encoder.extra_args,
            output_path,
        ]
        try:
            self.process = subprocess.Popen(
                ffmpeg_cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BurnPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc
        self.stderr = StderrDrain(self.process.stderr)

    def write(self, frame_bytes: bytes) -> None:
        if self.process.stdin is None:
            raise BurnPipelineError(ENCODE_FAILED_CODE, "ffmpeg stdin unavailable")
        try:
            self.process.stdin.write(frame_bytes)
        except BrokenPipeError as exc:
            raise BurnPipelineError(
                ENCODE_FAILED_CODE, f"encoder stopped accepting frames. {self.stderr.text()}"
            ) from exc

    def finish(self) -> None:
        pipe_broken = False
        if self.process.stdin and not self.process.stdin.closed:
            try:
                self.process.stdin.close()
            except BrokenPipeError:
                # Buffered frames could not be flushed; ffmpeg already exited.
                pipe_broken = True
        return_code = self.process.wait()
        stderr_text = self.stderr.text()
        self.stderr.close()
        if return_code != 0 or pipe_broken:
            raise BurnPipelineError(
                ENCODE_FAILED_CODE,
                f"ffmpeg failed with exit code {return_code}. {stderr_text}",
            )

    def abort(self) -> None:
        stop_process(self.process)
        self.stderr.close()


def open_frame_decoder(source_path: str, metadata: MediaMetadata) -> FfmpegFrameDecoder:
    return FfmpegFrameDecoder(source_path, metadata)


def open_frame_encoder(
    output_path: str, width: int, height: int, encoder: EncoderSpec
) -> FfmpegFrameEncoder:
    return FfmpegFrameEncoder(output_path, width, height, encoder)


class BurnJob:
    """One burn-in operation, driven through explicit state transitions.

    `run` walks idle -> metadata_loading -> encoding -> finalizing -> done.
    Any error moves the job to failed and leaves no output file behind;
    `cancel` may be called from another thread and stops the job before the
    next frame.
    """

    def __init__(
        self,
        source_path: str,
        cues: Sequence[Cue],
        style: SubtitleStyle,
        output_path: str | None = None,
        progress_callback: ProgressCallback | None = None,
        failure_callback: FailureCallback | None = None,
    ) -> None:
        self.source_path = source_path
        self.cues: Tuple[Cue, ...] = tuple(cues)
        self.style = style
        self.output_path = output_path
        self.progress_callback = progress_callback
        self.failure_callback = failure_callback
        self.state = BurnState.IDLE
        self.metadata: MediaMetadata | None = None
        self.encoder_spec: EncoderSpec | None = None
        self.bytes_written = 0
        self.frames_written = 0
        self.last_progress = 0
        self.artifact: BurnArtifact | None = None
        self.error: BurnValidationError | BurnPipelineError | None = None
        self._cancel_event = threading.Event()
        self._decoder = None
        self._encoder = None
        self._temp_output_path: str | None = None
        self._failure_reported = False

    @property
    def output_width(self) -> int:
        return self.metadata.width if self.metadata else 0

    @property
    def output_height(self) -> int:
        return self.metadata.height if self.metadata else 0

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation; the running loop stops before the next frame."""
        self._cancel_event.set()

    def _transition(self, target: BurnState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise BurnPipelineError(
                INVALID_TRANSITION_CODE,
                f"cannot move burn job from {self.state.value} to {target.value}",
            )
        self.state = target
        LOGGER.info("burn_subtitles.job.state: %s", target.value)

    def _report_progress(self, percent: int) -> None:
        self.last_progress = max(self.last_progress, percent)
        if self.progress_callback is not None:
            self.progress_callback(self.last_progress)

    def load_metadata(self) -> MediaMetadata:
        """Open the source and read its dimensions and duration."""
        self._transition(BurnState.METADATA_LOADING)
        self.metadata = probe_media(self.source_path)
        LOGGER.info(
            "burn_subtitles.media.metadata: %dx%d, %.3fs",
            self.metadata.width,
            self.metadata.height,
            self.metadata.duration_seconds,
        )
        return self.metadata

    def start_encoding(self) -> EncoderSpec:
        """Negotiate the codec and start the encoder and decoder processes."""
        if self.metadata is None:
            raise BurnPipelineError(INVALID_TRANSITION_CODE, "metadata not loaded")
        encoder_spec = select_encoder(self.output_path)
        if self.output_path is None:
            self.output_path = default_output_path(self.source_path, encoder_spec)
        output_dir = os.path.dirname(os.path.abspath(self.output_path))
        if not os.path.isdir(output_dir):
            raise BurnValidationError(
                OUTPUT_DIR_CODE,
                f"output directory does not exist: {output_dir}",
            )
        file_handle, temp_path = tempfile.mkstemp(
            prefix=".burn-", suffix=encoder_spec.extension, dir=output_dir
        )
        os.close(file_handle)
        self._temp_output_path = temp_path
        self.encoder_spec = encoder_spec
        self._transition(BurnState.ENCODING)
        LOGGER.info(
            "burn_subtitles.encoder.selected: %s (%s)",
            encoder_spec.codec,
            encoder_spec.media_type,
        )
        self._encoder = open_frame_encoder(
            temp_path, self.metadata.width, self.metadata.height, encoder_spec
        )
        self._decoder = open_frame_decoder(self.source_path, self.metadata)
        return encoder_spec

    def encode_frames(self) -> bool:
        """Composite and encode every decoded frame.

        Returns False when the job was cancelled before the source ended.
        """
        if self.state != BurnState.ENCODING or self.metadata is None:
            raise BurnPipelineError(INVALID_TRANSITION_CODE, "encoder not started")
        if self._decoder is None or self._encoder is None:
            raise BurnPipelineError(INVALID_TRANSITION_CODE, "encoder not started")
        compositor = FrameCompositor(
            cues=self.cues,
            style=self.style,
            width=self.metadata.width,
            height=self.metadata.height,
            total_duration=self.metadata.duration_seconds,
        )
        for frame in self._decoder:
            if self.cancel_requested:
                return False
            result = compositor.composite(frame.image, frame.time_seconds)
            frame_bytes = result.surface.tobytes()
            self._encoder.write(frame_bytes)
            self.bytes_written += len(frame_bytes)
            self.frames_written += 1
            self._report_progress(result.progress_percent)
        if self.cancel_requested:
            return False
        if self.frames_written == 0:
            raise BurnPipelineError(PLAYBACK_CODE, "source produced no frames")
        return True

    def finalize(self) -> BurnArtifact:
        """Flush the encoder and publish the output file."""
        if self.encoder_spec is None or self._encoder is None:
            raise BurnPipelineError(INVALID_TRANSITION_CODE, "encoder not started")
        if self._temp_output_path is None or self.output_path is None:
            raise BurnPipelineError(INVALID_TRANSITION_CODE, "output path missing")
        self._transition(BurnState.FINALIZING)
        self._encoder.finish()
        self._encoder = None
        os.replace(self._temp_output_path, self.output_path)
        self._temp_output_path = None
        self.artifact = BurnArtifact(
            path=self.output_path,
            media_type=self.encoder_spec.media_type,
            size_bytes=os.path.getsize(self.output_path),
            frame_count=self.frames_written,
        )
        self._report_progress(FINAL_PROGRESS)
        self._transition(BurnState.DONE)
        LOGGER.info(
            "burn_subtitles.output.written: %s (%d bytes)",
            self.artifact.path,
            self.artifact.size_bytes,
        )
        return self.artifact

    def _mark_cancelled(self) -> None:
        self.state = BurnState.CANCELLED
        LOGGER.info("burn_subtitles.job.state: %s", BurnState.CANCELLED.value)

    def _fail(self, error: BurnValidationError | BurnPipelineError) -> None:
        self.state = BurnState.FAILED
        self.error = error
        LOGGER.error("%s: %s", error.code, str(error).strip())
        if self.failure_callback is not None and not self._failure_reported:
            self._failure_reported = True
            self.failure_callback(str(error).strip())

    def release(self) -> None:
        """Release processes and discard any partial output."""
        if self._decoder is not None:
            self._decoder.close()
            self._decoder = None
        if self._encoder is not None:
            self._encoder.abort()
            self._encoder = None
        if self._temp_output_path is not None:
            try:
                os.remove(self._temp_output_path)
            except FileNotFoundError:
                pass
            self._temp_output_path = None

    def run(self) -> BurnArtifact | None:
        """Run the job to completion; returns None when cancelled."""
        if self.state != BurnState.IDLE:
            raise BurnPipelineError(
                INVALID_TRANSITION_CODE, f"burn job already {self.state.value}"
            )
        try:
            if self.cancel_requested:
                self._mark_cancelled()
                return None
            self.load_metadata()
            self.start_encoding()
            if not self.encode_frames():
                self._mark_cancelled()
                return None
            return self.finalize()
        except (BurnValidationError, BurnPipelineError) as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            wrapped = BurnPipelineError(UNHANDLED_CODE, str(exc).strip())
            self._fail(wrapped)
            raise wrapped from exc
        finally:
            self.release()

    def run_in_background(self) -> threading.Thread:
        """Run the job on a daemon thread and return the thread."""
        thread = threading.Thread(target=self._run_reporting_errors, daemon=True)
        thread.start()
        return thread

    def _run_reporting_errors(self) -> None:
        try:
            self.run()
        except (BurnValidationError, BurnPipelineError):
            # Already recorded on self.error and sent to the failure callback.
            return
