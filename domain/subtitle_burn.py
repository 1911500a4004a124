"""Domain types and parsing for burn_subtitles."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import re
import uuid
from typing import Iterable, Sequence, Tuple

from PIL import ImageColor

INVALID_CUE_CODE = "burn_subtitles.input.invalid_cue"
INVALID_STYLE_CODE = "burn_subtitles.input.invalid_style"
INVALID_COLOR_CODE = "burn_subtitles.input.invalid_color"
INVALID_CONFIG_CODE = "burn_subtitles.input.invalid_config"
INVALID_SUBTITLE_CODE = "burn_subtitles.input.invalid_subtitles"
INPUT_FILE_CODE = "burn_subtitles.input.file_error"
OUTPUT_DIR_CODE = "burn_subtitles.input.output_dir"

TRANSPARENT = "transparent"
TIME_RANGE_SEPARATOR = "-->"
MARKUP_TAG_PATTERN = re.compile(r"<[^>]*>")
SRT_TIMESTAMP_PATTERN = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")
RGBA_FUNCTION_PATTERN = re.compile(
    r"^rgba\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*([0-9]*\.?[0-9]+)\s*\)$"
)


class BurnValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class SubtitleEffect(str, Enum):
    """Text treatments supported by the burn-in renderer."""

    NONE = "none"
    DROP_SHADOW = "drop_shadow"
    OUTLINE = "outline"
    GLOW = "glow"


# Checked in order; the first fragment found in a descriptor wins.
EFFECT_DESCRIPTOR_FRAGMENTS = (
    ("0 0 5px", SubtitleEffect.GLOW),
    ("2px 2px", SubtitleEffect.DROP_SHADOW),
    ("-1px -1px", SubtitleEffect.OUTLINE),
)


@dataclass(frozen=True)
class Cue:
    """Timed subtitle text with inclusive bounds in seconds."""

    cue_id: str
    start_seconds: float
    end_seconds: float
    text: str

    def __post_init__(self) -> None:
        if self.start_seconds < 0:
            raise BurnValidationError(
                INVALID_CUE_CODE, "cue start time must be non-negative"
            )
        if self.end_seconds < self.start_seconds:
            raise BurnValidationError(
                INVALID_CUE_CODE, "cue end time must not precede start time"
            )

    def contains(self, time_seconds: float) -> bool:
        """Return True when the time falls inside the cue, bounds included."""
        return self.start_seconds <= time_seconds <= self.end_seconds


@dataclass(frozen=True)
class SubtitleStyle:
    """Immutable style snapshot applied to every burned cue."""

    font_size_px: float = 24.0
    color: str = "#ffffff"
    background_color: str = "rgba(0,0,0,0.5)"
    font_family: str = "Inter, sans-serif"
    text_shadow: str = "2px 2px 2px rgba(0,0,0,0.5)"
    position_percent: float = 10.0
    opacity: float = 1.0

    def __post_init__(self) -> None:
        for field_name in ("font_size_px", "position_percent", "opacity"):
            value = getattr(self, field_name)
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or not math.isfinite(value)
            ):
                raise BurnValidationError(
                    INVALID_STYLE_CODE, f"{field_name} must be a finite number"
                )
        for field_name in ("color", "background_color", "font_family", "text_shadow"):
            if not isinstance(getattr(self, field_name), str):
                raise BurnValidationError(
                    INVALID_STYLE_CODE, f"{field_name} must be a string"
                )
        if self.font_size_px <= 0:
            raise BurnValidationError(
                INVALID_STYLE_CODE, "font size must be positive"
            )
        if self.position_percent < 0 or self.position_percent > 100:
            raise BurnValidationError(
                INVALID_STYLE_CODE, "position must be between 0 and 100"
            )
        if self.opacity < 0 or self.opacity > 1:
            raise BurnValidationError(
                INVALID_STYLE_CODE, "opacity must be between 0 and 1"
            )
        if not self.font_family.strip():
            raise BurnValidationError(
                INVALID_STYLE_CODE, "font family must be non-empty"
            )
        parse_color_to_rgba(self.color)
        parse_color_to_rgba(self.background_color)

    @property
    def effect(self) -> SubtitleEffect:
        return parse_effect(self.text_shadow)

    @property
    def has_background(self) -> bool:
        return self.background_color.strip().lower() != TRANSPARENT

    @property
    def primary_font_family(self) -> str:
        """Return the first family of a CSS-like family list, unquoted."""
        first_family = self.font_family.split(",")[0]
        return first_family.replace("'", "").replace('"', "").strip()


def parse_effect(descriptor: str) -> SubtitleEffect:
    """Map a free-form shadow descriptor onto a SubtitleEffect."""
    normalized = descriptor.strip()
    for fragment, effect in EFFECT_DESCRIPTOR_FRAGMENTS:
        if fragment in normalized:
            return effect
    try:
        return SubtitleEffect(normalized.lower())
    except ValueError:
        return SubtitleEffect.NONE


def parse_color_to_rgba(color_value: str) -> Tuple[int, int, int, int]:
    """Parse a CSS-like paint value into an RGBA tuple."""
    normalized = color_value.strip().lower()
    if normalized == TRANSPARENT:
        return (0, 0, 0, 0)

    rgba_match = RGBA_FUNCTION_PATTERN.fullmatch(normalized.replace(" ", ""))
    if rgba_match:
        red_value, green_value, blue_value = (
            int(part) for part in rgba_match.groups()[:3]
        )
        alpha_value = float(rgba_match.group(4))
        if max(red_value, green_value, blue_value) > 255 or alpha_value > 1:
            raise BurnValidationError(
                INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
            )
        return (
            red_value,
            green_value,
            blue_value,
            int(round(alpha_value * 255)),
        )

    try:
        parsed = ImageColor.getcolor(normalized, "RGBA")
    except ValueError as exc:
        raise BurnValidationError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        ) from exc
    return tuple(parsed)  # type: ignore[return-value]


def _parse_int_field(value: str) -> int:
    stripped = value.strip()
    if not stripped.isdigit():
        raise ValueError(f"not a number: {value!r}")
    return int(stripped)


def parse_timecode(timecode_value: str | None) -> float:
    """Parse an SRT or VTT timecode into seconds; malformed input yields 0."""
    if not isinstance(timecode_value, str) or not timecode_value:
        return 0.0
    parts = timecode_value.strip().replace(",", ".").split(":")
    try:
        if len(parts) == 3:
            hours = _parse_int_field(parts[0])
            minutes = _parse_int_field(parts[1])
            seconds_part = parts[2]
        elif len(parts) == 2:
            hours = 0
            minutes = _parse_int_field(parts[0])
            seconds_part = parts[1]
        else:
            return 0.0
        seconds_text, _, millis_text = seconds_part.partition(".")
        seconds = _parse_int_field(seconds_text)
        millis = _parse_int_field(millis_text) if millis_text else 0
    except ValueError:
        return 0.0
    return hours * 3600 + minutes * 60 + seconds + millis / 1000.0


def format_timecode(total_seconds: float) -> str:
    """Format seconds as an SRT timecode with unbounded hours."""
    if not math.isfinite(total_seconds) or total_seconds < 0:
        total_seconds = 0.0
    total_millis = int(round(total_seconds * 1000))
    whole_seconds, millis = divmod(total_millis, 1000)
    hours, remainder = divmod(whole_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def find_active_cue(cues: Iterable[Cue], time_seconds: float) -> Cue | None:
    """Return the first cue in list order that contains the time."""
    for cue in cues:
        if cue.contains(time_seconds):
            return cue
    return None


def new_cue_id() -> str:
    """Return an opaque identifier for a parsed cue."""
    return uuid.uuid4().hex[:9]


def parse_srt(text_value: str) -> Tuple[Cue, ...]:
    """Parse SRT or WebVTT content into cues."""
    normalized = text_value.replace("\ufeff", "").replace("\r\n", "\n").strip()
    if not normalized:
        return ()

    cues: list[Cue] = []
    for block in re.split(r"\n\s*\n", normalized):
        if block.strip().startswith("WEBVTT"):
            continue
        lines = block.split("\n")
        time_index = next(
            (
                index_value
                for index_value, line in enumerate(lines)
                if TIME_RANGE_SEPARATOR in line
            ),
            None,
        )
        if time_index is None:
            continue
        start_text, _, end_text = lines[time_index].partition(TIME_RANGE_SEPARATOR)
        end_fields = end_text.strip().split(" ")
        if not start_text.strip() or not end_fields[0]:
            continue
        start_seconds = parse_timecode(start_text.strip())
        end_seconds = parse_timecode(end_fields[0])
        if end_seconds < start_seconds:
            raise BurnValidationError(
                INVALID_SUBTITLE_CODE,
                f"cue ends before it starts: {lines[time_index].strip()!r}",
            )
        raw_text = "\n".join(lines[time_index + 1 :]).strip()
        cues.append(
            Cue(
                cue_id=new_cue_id(),
                start_seconds=start_seconds,
                end_seconds=end_seconds,
                text=MARKUP_TAG_PATTERN.sub("", raw_text),
            )
        )
    return tuple(cues)


def build_srt(cues: Sequence[Cue]) -> str:
    """Build SRT content from cues."""
    blocks = [
        f"{index}\n{format_timecode(cue.start_seconds)} --> "
        f"{format_timecode(cue.end_seconds)}\n{cue.text}\n"
        for index, cue in enumerate(cues, start=1)
    ]
    return "\n".join(blocks)


def build_vtt(cues: Sequence[Cue]) -> str:
    """Build WebVTT content from cues."""
    body = SRT_TIMESTAMP_PATTERN.sub(r"\1.\2", build_srt(cues))
    return f"WEBVTT\n\n{body}"
