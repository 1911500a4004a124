"""Tests for subtitle_burn domain types and parsing."""

from __future__ import annotations

import pytest

from domain.subtitle_burn import (
    INVALID_COLOR_CODE,
    INVALID_CUE_CODE,
    INVALID_STYLE_CODE,
    INVALID_SUBTITLE_CODE,
    BurnValidationError,
    Cue,
    SubtitleEffect,
    SubtitleStyle,
    build_srt,
    build_vtt,
    find_active_cue,
    format_timecode,
    parse_color_to_rgba,
    parse_effect,
    parse_srt,
    parse_timecode,
)


def make_cue(start_seconds: float, end_seconds: float, text_value: str) -> Cue:
    """Build a cue with a readable identifier."""
    return Cue(
        cue_id=f"{start_seconds}-{end_seconds}",
        start_seconds=start_seconds,
        end_seconds=end_seconds,
        text=text_value,
    )


def test_parse_timecode_accepts_srt_vtt_and_short_forms() -> None:
    """Parse comma, dot and minute-only timecodes."""
    assert parse_timecode("01:02:03,456") == pytest.approx(3723.456)
    assert parse_timecode("01:02:03.456") == pytest.approx(3723.456)
    assert parse_timecode("02:03.500") == pytest.approx(123.5)
    assert parse_timecode("00:00:07") == pytest.approx(7.0)


@pytest.mark.parametrize(
    "timecode_value",
    [
        "",
        None,
        12,
        3.5,
        "garbage",
        "aa:bb:cc,ddd",
        "1:2:3:4",
        "--> 00:00:01,000",
        "-1:00",
    ],
)
def test_parse_timecode_degrades_to_zero(timecode_value: object) -> None:
    """Malformed timecodes never raise."""
    assert parse_timecode(timecode_value) == 0.0


def test_format_timecode_pads_and_keeps_hours_unbounded() -> None:
    """Format zero-padded fields without wrapping hours."""
    assert format_timecode(0) == "00:00:00,000"
    assert format_timecode(3723.456) == "01:02:03,456"
    assert format_timecode(100 * 3600 + 1.5) == "100:00:01,500"


def test_format_timecode_never_emits_thousand_milliseconds() -> None:
    """Round sub-millisecond remainders into the next second."""
    assert format_timecode(59.9996) == "00:01:00,000"


@pytest.mark.parametrize("seconds", [0.0, 0.001, 1.5, 59.999, 3600.25, 359999.999])
def test_timecode_round_trip_within_a_millisecond(seconds: float) -> None:
    """Formatting then parsing recovers the value to the millisecond."""
    assert parse_timecode(format_timecode(seconds)) == pytest.approx(
        seconds, abs=0.001
    )


def test_find_active_cue_prefers_first_overlapping_cue() -> None:
    """Overlapping cues resolve to the first match in list order."""
    first = make_cue(1.0, 5.0, "first")
    second = make_cue(2.0, 3.0, "second")
    assert find_active_cue([first, second], 2.5) is first
    assert find_active_cue([second, first], 2.5) is second


def test_find_active_cue_bounds_are_inclusive() -> None:
    """Start and end times both count as active."""
    cue = make_cue(1.0, 2.0, "edge")
    assert find_active_cue([cue], 1.0) is cue
    assert find_active_cue([cue], 2.0) is cue
    assert find_active_cue([cue], 2.0001) is None


def test_find_active_cue_handles_empty_and_unordered_lists() -> None:
    """Resolve against empty and unsorted cue lists."""
    late = make_cue(10.0, 12.0, "late")
    early = make_cue(0.0, 1.0, "early")
    assert find_active_cue([], 1.0) is None
    assert find_active_cue([late, early], 0.5) is early
    assert find_active_cue([late, early], 5.0) is None


def test_cue_rejects_invalid_bounds() -> None:
    """Reject negative starts and inverted ranges."""
    with pytest.raises(BurnValidationError) as negative:
        make_cue(-1.0, 1.0, "bad")
    assert negative.value.code == INVALID_CUE_CODE
    with pytest.raises(BurnValidationError):
        make_cue(2.0, 1.0, "bad")


def test_parse_srt_reads_blocks_and_strips_markup() -> None:
    """Parse indexed SRT blocks with multi-line text."""
    content = (
        "1\n00:00:01,000 --> 00:00:02,500\n<b>Hello</b>\nthere\n\n"
        "2\n00:00:03,000 --> 00:00:04,000\nWorld\n"
    )
    cues = parse_srt(content)
    assert [(cue.start_seconds, cue.end_seconds, cue.text) for cue in cues] == [
        (1.0, 2.5, "Hello\nthere"),
        (3.0, 4.0, "World"),
    ]
    assert cues[0].cue_id != cues[1].cue_id


def test_parse_srt_reads_webvtt_with_settings() -> None:
    """Skip the WEBVTT header and trailing cue settings."""
    content = (
        "WEBVTT\n\n"
        "00:01.000 --> 00:02.000 align:center line:90%\n<c.yellow>Hi</c>\n\n"
        "note without timing\n"
    )
    cues = parse_srt(content)
    assert len(cues) == 1
    assert cues[0].start_seconds == pytest.approx(1.0)
    assert cues[0].end_seconds == pytest.approx(2.0)
    assert cues[0].text == "Hi"


def test_parse_srt_rejects_inverted_range() -> None:
    """Fail when a cue ends before it starts."""
    with pytest.raises(BurnValidationError) as error:
        parse_srt("1\n00:00:05,000 --> 00:00:01,000\nbackwards\n")
    assert error.value.code == INVALID_SUBTITLE_CODE


def test_build_srt_and_vtt() -> None:
    """Write SRT and WebVTT text from cues."""
    cues = (make_cue(1.0, 2.5, "Hello"), make_cue(3.0, 4.0, "World"))
    srt_text = build_srt(cues)
    assert srt_text == (
        "1\n00:00:01,000 --> 00:00:02,500\nHello\n\n"
        "2\n00:00:03,000 --> 00:00:04,000\nWorld\n"
    )
    vtt_text = build_vtt(cues)
    assert vtt_text.startswith("WEBVTT\n\n1\n00:00:01.000 --> 00:00:02.500\n")
    reparsed = parse_srt(vtt_text)
    assert [cue.text for cue in reparsed] == ["Hello", "World"]


@pytest.mark.parametrize(
    ("descriptor", "expected"),
    [
        ("0 0 5px rgba(0,0,0,1)", SubtitleEffect.GLOW),
        ("2px 2px 4px rgba(0,0,0,0.8)", SubtitleEffect.DROP_SHADOW),
        ("-1px -1px 0 #000, 1px -1px 0 #000, -1px 1px 0 #000, 1px 1px 0 #000", SubtitleEffect.OUTLINE),
        ("none", SubtitleEffect.NONE),
        ("outline", SubtitleEffect.OUTLINE),
        ("something else", SubtitleEffect.NONE),
    ],
)
def test_parse_effect(descriptor: str, expected: SubtitleEffect) -> None:
    """Map shadow descriptors onto effects."""
    assert parse_effect(descriptor) == expected


def test_parse_color_to_rgba() -> None:
    """Parse hex, named, rgba() and transparent paint values."""
    assert parse_color_to_rgba("#ffffff") == (255, 255, 255, 255)
    assert parse_color_to_rgba("red") == (255, 0, 0, 255)
    assert parse_color_to_rgba("rgba(0, 0, 0, 0.5)") == (0, 0, 0, 128)
    assert parse_color_to_rgba("transparent") == (0, 0, 0, 0)
    with pytest.raises(BurnValidationError) as error:
        parse_color_to_rgba("not-a-color")
    assert error.value.code == INVALID_COLOR_CODE


def test_style_defaults_and_validation() -> None:
    """Validate style ranges and derived properties."""
    style = SubtitleStyle()
    assert style.effect == SubtitleEffect.DROP_SHADOW
    assert style.has_background
    assert style.primary_font_family == "Inter"
    assert not SubtitleStyle(background_color="transparent").has_background
    assert SubtitleStyle(font_family="'Open Sans', sans-serif").primary_font_family == "Open Sans"

    for bad_values in (
        {"font_size_px": 0},
        {"position_percent": 101},
        {"opacity": 1.5},
        {"font_family": "  "},
        {"font_family": 1},
        {"color": 5},
        {"background_color": None},
        {"text_shadow": 2},
        {"font_size_px": "24"},
        {"position_percent": True},
        {"opacity": None},
    ):
        with pytest.raises(BurnValidationError) as error:
            SubtitleStyle(**bad_values)
        assert error.value.code == INVALID_STYLE_CODE
    with pytest.raises(BurnValidationError):
        SubtitleStyle(color="#12")
