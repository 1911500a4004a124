#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Burn SRT or WebVTT subtitles into a video and re-encode it."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
import json
import logging
import os
import sys
from typing import Callable, Sequence, Tuple

from domain.subtitle_burn import (
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    INVALID_SUBTITLE_CODE,
    BurnValidationError,
    Cue,
    SubtitleEffect,
    SubtitleStyle,
    parse_srt,
)
from service.burn_pipeline import BurnJob, BurnPipelineError

LOGGER = logging.getLogger("burn_subtitles")
PROGRESS_LOG_STEP = 10
JOIN_POLL_SECONDS = 0.5

# Keys of the style record in saved projects, mapped to SubtitleStyle fields.
STYLE_FILE_KEYS = {
    "fontSize": "font_size_px",
    "color": "color",
    "backgroundColor": "background_color",
    "fontFamily": "font_family",
    "textShadow": "text_shadow",
    "position": "position_percent",
    "opacity": "opacity",
}


@dataclass(frozen=True)
class BurnRequest:
    """Parsed CLI request."""

    input_video_file: str
    subtitle_file: str
    output_video_file: str | None
    cues: Tuple[Cue, ...]
    style: SubtitleStyle

    def __post_init__(self) -> None:
        if not self.input_video_file.strip():
            raise BurnValidationError(
                INVALID_CONFIG_CODE, "input-video-file must be non-empty"
            )
        if self.output_video_file is not None:
            if os.path.abspath(self.output_video_file) == os.path.abspath(
                self.input_video_file
            ):
                raise BurnValidationError(
                    INVALID_CONFIG_CODE, "output-video-file must differ from input"
                )


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise BurnValidationError(
            INPUT_FILE_CODE, f"input file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise BurnValidationError(
            INPUT_FILE_CODE,
            f"input file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def load_style_file(file_path: str) -> SubtitleStyle:
    """Load a style record saved in the project JSON format."""
    try:
        payload = json.loads(read_utf8_text_strict(file_path))
    except json.JSONDecodeError as exc:
        raise BurnValidationError(
            INVALID_CONFIG_CODE, f"style file is not valid JSON: {file_path}"
        ) from exc
    if isinstance(payload, dict) and isinstance(payload.get("style"), dict):
        payload = payload["style"]
    if not isinstance(payload, dict):
        raise BurnValidationError(
            INVALID_CONFIG_CODE, f"style file must hold an object: {file_path}"
        )
    unknown_keys = sorted(set(payload) - set(STYLE_FILE_KEYS))
    if unknown_keys:
        raise BurnValidationError(
            INVALID_CONFIG_CODE, f"unknown style keys: {', '.join(unknown_keys)}"
        )
    values = {STYLE_FILE_KEYS[key]: value for key, value in payload.items()}
    try:
        return SubtitleStyle(**values)
    except TypeError as exc:
        raise BurnValidationError(INVALID_CONFIG_CODE, str(exc)) from exc


def parse_args(argv: Sequence[str]) -> BurnRequest:
    """Parse CLI arguments into a BurnRequest."""
    parser = argparse.ArgumentParser(prog="burn_subtitles.py", add_help=True)
    parser.add_argument("--input-video-file", required=True)
    parser.add_argument("--subtitle-file", required=True, help=".srt or .vtt")
    parser.add_argument(
        "--output-video-file",
        default=None,
        help=".webm or .mp4; defaults to <input>-subtitled next to the input",
    )
    parser.add_argument("--style-file", default=None)
    parser.add_argument("--font-size", type=float, default=None)
    parser.add_argument("--color", default=None)
    parser.add_argument(
        "--background-color", default=None, help="paint value or transparent"
    )
    parser.add_argument("--font-family", default=None)
    parser.add_argument(
        "--effect",
        default=None,
        choices=[effect.value for effect in SubtitleEffect],
    )
    parser.add_argument(
        "--position", type=float, default=None, help="percent from the bottom edge"
    )
    parser.add_argument("--opacity", type=float, default=None)

    parsed = parser.parse_args(argv)
    style = load_style_file(parsed.style_file) if parsed.style_file else SubtitleStyle()
    overrides = {
        "font_size_px": parsed.font_size,
        "color": parsed.color,
        "background_color": parsed.background_color,
        "font_family": parsed.font_family,
        "text_shadow": parsed.effect,
        "position_percent": parsed.position,
        "opacity": parsed.opacity,
    }
    style = replace(
        style, **{key: value for key, value in overrides.items() if value is not None}
    )

    cues = parse_srt(read_utf8_text_strict(parsed.subtitle_file))
    if not cues:
        LOGGER.warning(
            "%s: no cues in %s; the video is re-encoded unchanged",
            INVALID_SUBTITLE_CODE,
            parsed.subtitle_file,
        )

    return BurnRequest(
        input_video_file=parsed.input_video_file,
        subtitle_file=parsed.subtitle_file,
        output_video_file=parsed.output_video_file,
        cues=cues,
        style=style,
    )


def build_progress_logger() -> Callable[[int], None]:
    """Return a progress callback that logs every PROGRESS_LOG_STEP percent."""
    last_logged = [-PROGRESS_LOG_STEP]

    def log_progress(percent: int) -> None:
        if percent - last_logged[0] >= PROGRESS_LOG_STEP or (
            percent == 100 and last_logged[0] != 100
        ):
            last_logged[0] = percent
            LOGGER.info("burn_subtitles.progress: %d%%", percent)

    return log_progress


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        job = BurnJob(
            source_path=request.input_video_file,
            cues=request.cues,
            style=request.style,
            output_path=request.output_video_file,
            progress_callback=build_progress_logger(),
        )
        worker = job.run_in_background()
        try:
            while worker.is_alive():
                worker.join(JOIN_POLL_SECONDS)
        except KeyboardInterrupt:
            LOGGER.info("burn_subtitles.job.cancel: interrupted")
            job.cancel()
            worker.join()
        if job.error is not None:
            return 1
        if job.artifact is None:
            LOGGER.error("burn_subtitles.job.cancelled: no output written")
            return 1
        LOGGER.info(
            "burn_subtitles.output.media_type: %s", job.artifact.media_type
        )
        return 0
    except BurnValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except BurnPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("burn_subtitles.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
