"""Per-frame compositing of source frames and active cues."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Tuple

from PIL import Image, ImageFont

from domain.subtitle_burn import Cue, SubtitleStyle, find_active_cue
from service.text_layout import (
    LayoutMetrics,
    compute_layout_metrics,
    load_font,
    paint_cue_text,
    render_cue_overlay,
)


@dataclass(frozen=True)
class CompositeResult:
    """Painted surface plus the progress implied by the frame time."""

    surface: Image.Image
    progress_percent: int


def compute_progress_percent(query_time: float, total_duration: float) -> int:
    """Convert a playback time into an integer percentage in [0, 100]."""
    if total_duration <= 0:
        return 0
    percent = int(round(query_time / total_duration * 100))
    return max(0, min(100, percent))


def draw_source_frame(surface: Image.Image, source_frame: Image.Image) -> None:
    """Fill the whole surface with the decoded frame."""
    frame = source_frame
    if frame.size != surface.size:
        frame = frame.resize(surface.size)
    if frame.mode != surface.mode:
        frame = frame.convert(surface.mode)
    surface.paste(frame, (0, 0))


def composite_frame(
    source_frame: Image.Image,
    query_time: float,
    cues: Sequence[Cue],
    style: SubtitleStyle,
    total_duration: float,
    surface: Image.Image | None = None,
    font_cache: dict[Tuple[str, int], ImageFont.FreeTypeFont] | None = None,
) -> CompositeResult:
    """Draw a frame and its active cue onto the output surface."""
    if surface is None:
        surface = Image.new("RGB", source_frame.size)
    draw_source_frame(surface, source_frame)

    active_cue = find_active_cue(cues, query_time)
    if active_cue is not None:
        width, height = surface.size
        metrics = compute_layout_metrics(width, height, style)
        font = load_font(style.primary_font_family, metrics.font_size, font_cache)
        paint_cue_text(surface, active_cue.text, style, metrics, font)

    return CompositeResult(
        surface=surface,
        progress_percent=compute_progress_percent(query_time, total_duration),
    )


@dataclass
class FrameCompositor:
    """Compositor bound to one job's cue list, style and output size.

    Cue overlays only depend on the cue text, so the most recent one is
    reused until the active cue changes.
    """

    cues: Tuple[Cue, ...]
    style: SubtitleStyle
    width: int
    height: int
    total_duration: float
    font_cache: dict[Tuple[str, int], ImageFont.FreeTypeFont] = field(
        default_factory=dict
    )
    metrics: LayoutMetrics = field(init=False, repr=False)
    surface: Image.Image = field(init=False, repr=False)
    _overlay_key: Cue | None = field(default=None, init=False, repr=False)
    _overlay: Image.Image | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.cues = tuple(self.cues)
        self.metrics = compute_layout_metrics(self.width, self.height, self.style)
        self.surface = Image.new("RGB", (self.width, self.height))

    def overlay_for(self, cue: Cue) -> Image.Image:
        """Return the rendered overlay for a cue, reusing the last one."""
        if self._overlay is None or self._overlay_key != cue:
            font = load_font(
                self.style.primary_font_family, self.metrics.font_size, self.font_cache
            )
            self._overlay = render_cue_overlay(
                (self.width, self.height), cue.text, self.style, self.metrics, font
            )
            self._overlay_key = cue
        return self._overlay

    def composite(self, source_frame: Image.Image, query_time: float) -> CompositeResult:
        """Composite one decoded frame at its playback time."""
        draw_source_frame(self.surface, source_frame)
        active_cue = find_active_cue(self.cues, query_time)
        if active_cue is not None:
            overlay = self.overlay_for(active_cue)
            self.surface.paste(overlay, (0, 0), overlay)
        return CompositeResult(
            surface=self.surface,
            progress_percent=compute_progress_percent(query_time, self.total_duration),
        )
