"""Text wrapping, geometry and painting for burned subtitles."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Callable, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from domain.subtitle_burn import (
    SubtitleEffect,
    SubtitleStyle,
    parse_color_to_rgba,
)

REFERENCE_HEIGHT = 600.0
MAX_TEXT_WIDTH_RATIO = 0.8
LINE_HEIGHT_RATIO = 1.25
BOX_PADDING_X_RATIO = 0.6
BOX_PADDING_Y_RATIO = 0.3
BOX_DESCENT_RATIO = 0.2
GLOW_BLUR = 10.0
SHADOW_BLUR = 4.0
SHADOW_OFFSET = 2.0
OUTLINE_WIDTH = 3.0
GLOW_RGBA = (0, 0, 0, 255)
SHADOW_RGBA = (0, 0, 0, 204)
OUTLINE_RGBA = (0, 0, 0, 255)
FALLBACK_FONT_FILES = ("DejaVuSans-Bold.ttf", "DejaVuSans.ttf")
TEXT_ANCHOR = "md"
LOGGER = logging.getLogger("burn_subtitles")

MeasureFn = Callable[[str], float]


@dataclass(frozen=True)
class LayoutMetrics:
    """Per-frame geometry derived from the output size and style."""

    scale: float
    font_size: float
    anchor_x: float
    anchor_y: float
    max_text_width: float
    line_height: float


@dataclass(frozen=True)
class BoxGeometry:
    """Background box placement in output pixels."""

    box_x: float
    box_top: float
    box_width: float
    box_height: float

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return (
            self.box_x,
            self.box_top,
            self.box_x + self.box_width,
            self.box_top + self.box_height,
        )


@dataclass(frozen=True)
class EffectParams:
    """Resolved shadow and stroke settings for one effect."""

    shadow_rgba: Tuple[int, int, int, int] | None
    shadow_offset: Tuple[float, float]
    shadow_blur: float
    stroke_rgba: Tuple[int, int, int, int] | None
    stroke_width: float

    @property
    def has_shadow(self) -> bool:
        return self.shadow_rgba is not None

    @property
    def has_stroke(self) -> bool:
        return self.stroke_rgba is not None and self.stroke_width > 0


def compute_layout_metrics(width: int, height: int, style: SubtitleStyle) -> LayoutMetrics:
    """Derive font size, anchor and wrap width for an output size."""
    scale = height / REFERENCE_HEIGHT
    font_size = style.font_size_px * scale
    return LayoutMetrics(
        scale=scale,
        font_size=font_size,
        anchor_x=width / 2.0,
        anchor_y=height * (1 - style.position_percent / 100.0),
        max_text_width=width * MAX_TEXT_WIDTH_RATIO,
        line_height=font_size * LINE_HEIGHT_RATIO,
    )


def wrap_text(text_value: str, max_width: float, measure: MeasureFn) -> Tuple[str, ...]:
    """Greedily wrap text into lines narrower than max_width.

    Explicit line breaks always start a new line, and every paragraph yields
    at least one line, so blank lines survive. A word wider than max_width is
    kept whole on its own line.
    """
    lines: list[str] = []
    for paragraph in text_value.replace("\r\n", "\n").split("\n"):
        words = paragraph.split(" ")
        current_line = words[0]
        for word in words[1:]:
            candidate = f"{current_line} {word}"
            if measure(candidate) < max_width:
                current_line = candidate
            else:
                lines.append(current_line)
                current_line = word
        lines.append(current_line)
    return tuple(lines)


def compute_box_geometry(
    lines: Sequence[str],
    measure: MeasureFn,
    anchor: Tuple[float, float],
    line_height: float,
    font_size: float,
) -> BoxGeometry:
    """Compute the background box around wrapped lines."""
    widest_line = max((measure(line) for line in lines), default=0.0)
    box_width = widest_line + font_size * BOX_PADDING_X_RATIO * 2
    box_height = len(lines) * line_height + font_size * BOX_PADDING_Y_RATIO * 2
    anchor_x, anchor_y = anchor
    box_bottom = anchor_y + font_size * BOX_DESCENT_RATIO
    return BoxGeometry(
        box_x=anchor_x - box_width / 2.0,
        box_top=box_bottom - box_height,
        box_width=box_width,
        box_height=box_height,
    )


def compute_effect_params(effect: SubtitleEffect, scale: float) -> EffectParams:
    """Resolve effect magnitudes scaled to the output resolution."""
    if effect == SubtitleEffect.GLOW:
        return EffectParams(GLOW_RGBA, (0.0, 0.0), GLOW_BLUR * scale, None, 0.0)
    if effect == SubtitleEffect.DROP_SHADOW:
        offset = SHADOW_OFFSET * scale
        return EffectParams(
            SHADOW_RGBA, (offset, offset), SHADOW_BLUR * scale, None, 0.0
        )
    if effect == SubtitleEffect.OUTLINE:
        return EffectParams(None, (0.0, 0.0), 0.0, OUTLINE_RGBA, OUTLINE_WIDTH * scale)
    return EffectParams(None, (0.0, 0.0), 0.0, None, 0.0)


def compute_line_baselines(
    line_count: int, anchor_y: float, line_height: float
) -> Tuple[float, ...]:
    """Return baselines top to bottom; the last line sits on the anchor."""
    return tuple(
        anchor_y - (line_count - 1 - index_value) * line_height
        for index_value in range(line_count)
    )


def measure_text_width(
    draw_context: ImageDraw.ImageDraw,
    text_value: str,
    font: ImageFont.FreeTypeFont,
) -> float:
    """Measure text width using font metrics."""
    if not text_value:
        return 0.0
    try:
        return float(draw_context.textlength(text_value, font=font))
    except Exception:
        bbox = draw_context.textbbox((0, 0), text_value, font=font)
        return float(bbox[2] - bbox[0])


def build_measure(font: ImageFont.FreeTypeFont) -> MeasureFn:
    """Bind a width measurement function to a font."""
    layout_draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    return lambda text_value: measure_text_width(layout_draw, text_value, font)


def font_file_candidates(font_family: str) -> Tuple[str, ...]:
    """List font files to try for a family name or font path."""
    if os.path.isfile(font_family):
        return (font_family,)
    compact = font_family.replace(" ", "")
    return (
        f"{compact}-SemiBold.ttf",
        f"{compact}-Bold.ttf",
        f"{compact}.ttf",
        f"{compact}.otf",
    ) + FALLBACK_FONT_FILES


def load_font(
    font_family: str,
    font_size: float,
    cache: dict[Tuple[str, int], ImageFont.FreeTypeFont] | None = None,
) -> ImageFont.FreeTypeFont:
    """Load the first usable font for a family, falling back to defaults."""
    size_value = max(1, int(round(font_size)))
    cache_key = (font_family, size_value)
    if cache is not None and cache_key in cache:
        return cache[cache_key]

    font = None
    for font_file in font_file_candidates(font_family):
        try:
            font = ImageFont.truetype(font_file, size=size_value)
        except OSError:
            continue
        if font_file in FALLBACK_FONT_FILES:
            LOGGER.warning(
                "burn_subtitles.font.fallback: %s unavailable, using %s",
                font_family,
                font_file,
            )
        break
    if font is None:
        LOGGER.warning(
            "burn_subtitles.font.fallback: %s unavailable, using bundled default",
            font_family,
        )
        font = ImageFont.load_default(size=size_value)

    if cache is not None:
        cache[cache_key] = font
    return font


def draw_text_lines(
    layer: Image.Image,
    lines: Sequence[str],
    baselines: Sequence[float],
    anchor_x: float,
    font: ImageFont.FreeTypeFont,
    fill_rgba: Tuple[int, int, int, int],
    offset: Tuple[float, float] = (0.0, 0.0),
) -> None:
    """Draw centered lines with bottom baselines onto a layer."""
    draw_context = ImageDraw.Draw(layer)
    for line, baseline in zip(lines, baselines):
        draw_context.text(
            (anchor_x + offset[0], baseline + offset[1]),
            line,
            font=font,
            fill=fill_rgba,
            anchor=TEXT_ANCHOR,
        )


def draw_stroked_lines(
    layer: Image.Image,
    lines: Sequence[str],
    baselines: Sequence[float],
    anchor_x: float,
    font: ImageFont.FreeTypeFont,
    stroke_rgba: Tuple[int, int, int, int],
    line_width: float,
) -> None:
    """Draw the outline pass; half the line width lies outside the glyphs."""
    stroke_radius = max(1, int(round(line_width / 2.0)))
    draw_context = ImageDraw.Draw(layer)
    for line, baseline in zip(lines, baselines):
        draw_context.text(
            (anchor_x, baseline),
            line,
            font=font,
            fill=stroke_rgba,
            anchor=TEXT_ANCHOR,
            stroke_width=stroke_radius,
            stroke_fill=stroke_rgba,
        )


def apply_opacity(layer: Image.Image, opacity: float) -> Image.Image:
    """Scale a layer's alpha channel by the style opacity."""
    if opacity >= 1.0:
        return layer
    alpha = layer.getchannel("A").point(lambda value: int(round(value * opacity)))
    layer.putalpha(alpha)
    return layer


def render_cue_overlay(
    size: Tuple[int, int],
    text_value: str,
    style: SubtitleStyle,
    metrics: LayoutMetrics,
    font: ImageFont.FreeTypeFont,
) -> Image.Image:
    """Render one cue into a transparent RGBA layer of the output size."""
    measure = build_measure(font)
    lines = wrap_text(text_value, metrics.max_text_width, measure)
    baselines = compute_line_baselines(len(lines), metrics.anchor_y, metrics.line_height)
    overlay = Image.new("RGBA", size, (0, 0, 0, 0))

    if style.has_background:
        box = compute_box_geometry(
            lines,
            measure,
            (metrics.anchor_x, metrics.anchor_y),
            metrics.line_height,
            metrics.font_size,
        )
        ImageDraw.Draw(overlay).rectangle(
            [int(round(value)) for value in box.bounds],
            fill=parse_color_to_rgba(style.background_color),
        )

    effect = compute_effect_params(style.effect, metrics.scale)
    if effect.has_shadow and effect.shadow_rgba is not None:
        shadow_layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw_text_lines(
            shadow_layer,
            lines,
            baselines,
            metrics.anchor_x,
            font,
            effect.shadow_rgba,
            effect.shadow_offset,
        )
        if effect.shadow_blur > 0:
            # Canvas blur amounts are twice the gaussian sigma.
            shadow_layer = shadow_layer.filter(
                ImageFilter.GaussianBlur(radius=effect.shadow_blur / 2.0)
            )
        overlay = Image.alpha_composite(overlay, shadow_layer)

    text_layer = Image.new("RGBA", size, (0, 0, 0, 0))
    if effect.has_stroke and effect.stroke_rgba is not None:
        draw_stroked_lines(
            text_layer,
            lines,
            baselines,
            metrics.anchor_x,
            font,
            effect.stroke_rgba,
            effect.stroke_width,
        )
    draw_text_lines(
        text_layer,
        lines,
        baselines,
        metrics.anchor_x,
        font,
        parse_color_to_rgba(style.color),
    )
    overlay = Image.alpha_composite(overlay, text_layer)
    return apply_opacity(overlay, style.opacity)


def paint_cue_text(
    surface: Image.Image,
    text_value: str,
    style: SubtitleStyle,
    metrics: LayoutMetrics,
    font: ImageFont.FreeTypeFont,
) -> None:
    """Paint a cue onto the surface in place."""
    overlay = render_cue_overlay(surface.size, text_value, style, metrics, font)
    surface.paste(overlay, (0, 0), overlay)
