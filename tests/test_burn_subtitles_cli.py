"""Tests for the burn_subtitles CLI."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import List

import pytest

import burn_subtitles
from domain.subtitle_burn import (
    INVALID_CONFIG_CODE,
    INVALID_STYLE_CODE,
    BurnValidationError,
    SubtitleEffect,
)

SRT_CONTENT = "1\n00:00:00,000 --> 00:00:01,000\nHello\n"


def run_burn_subtitles(args: List[str], repo_root: Path) -> subprocess.CompletedProcess[str]:
    """Run burn_subtitles.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(repo_root / "burn_subtitles.py"), *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
    )


def write_subtitles(tmp_path: Path) -> Path:
    subtitle_path = tmp_path / "input.srt"
    subtitle_path.write_text(SRT_CONTENT, encoding="utf-8")
    return subtitle_path


def test_load_style_file_reads_project_style(tmp_path: Path) -> None:
    """Accept a saved project with a nested style record."""
    style_path = tmp_path / "project.json"
    style_path.write_text(
        json.dumps(
            {
                "style": {
                    "fontSize": 32,
                    "color": "#ffff00",
                    "backgroundColor": "transparent",
                    "fontFamily": "Roboto, sans-serif",
                    "textShadow": "0 0 5px rgba(0,0,0,1)",
                    "position": 20,
                    "opacity": 0.75,
                }
            }
        ),
        encoding="utf-8",
    )

    style = burn_subtitles.load_style_file(str(style_path))

    assert style.font_size_px == 32
    assert style.effect == SubtitleEffect.GLOW
    assert not style.has_background
    assert style.primary_font_family == "Roboto"
    assert style.position_percent == 20
    assert style.opacity == 0.75


@pytest.mark.parametrize(
    ("content", "expected_code"),
    [
        ("not json", INVALID_CONFIG_CODE),
        ("[1, 2]", INVALID_CONFIG_CODE),
        ('{"fontWeight": 700}', INVALID_CONFIG_CODE),
        ('{"opacity": 2}', INVALID_STYLE_CODE),
        ('{"color": 5}', INVALID_STYLE_CODE),
        ('{"fontFamily": 1}', INVALID_STYLE_CODE),
        ('{"fontSize": "large"}', INVALID_STYLE_CODE),
        ('{"position": true}', INVALID_STYLE_CODE),
        ('{"opacity": NaN}', INVALID_STYLE_CODE),
    ],
)
def test_load_style_file_rejects_invalid_content(
    tmp_path: Path, content: str, expected_code: str
) -> None:
    """Reject malformed JSON, unknown keys and out-of-range values."""
    style_path = tmp_path / "style.json"
    style_path.write_text(content, encoding="utf-8")

    with pytest.raises(BurnValidationError) as error:
        burn_subtitles.load_style_file(str(style_path))

    assert error.value.code == expected_code


def test_parse_args_applies_overrides_over_style_file(tmp_path: Path) -> None:
    """Command-line style flags win over the style file."""
    subtitle_path = write_subtitles(tmp_path)
    style_path = tmp_path / "style.json"
    style_path.write_text(json.dumps({"fontSize": 30, "color": "#00ff00"}), encoding="utf-8")

    request = burn_subtitles.parse_args(
        [
            "--input-video-file",
            str(tmp_path / "in.mp4"),
            "--subtitle-file",
            str(subtitle_path),
            "--style-file",
            str(style_path),
            "--font-size",
            "40",
            "--effect",
            "outline",
        ]
    )

    assert request.style.font_size_px == 40
    assert request.style.color == "#00ff00"
    assert request.style.effect == SubtitleEffect.OUTLINE
    assert [cue.text for cue in request.cues] == ["Hello"]
    assert request.output_video_file is None


def test_parse_args_rejects_output_equal_to_input(tmp_path: Path) -> None:
    """Refuse to overwrite the source video."""
    subtitle_path = write_subtitles(tmp_path)
    video_path = str(tmp_path / "in.webm")

    with pytest.raises(BurnValidationError) as error:
        burn_subtitles.parse_args(
            [
                "--input-video-file",
                video_path,
                "--subtitle-file",
                str(subtitle_path),
                "--output-video-file",
                video_path,
            ]
        )

    assert error.value.code == INVALID_CONFIG_CODE


def test_progress_logger_logs_every_ten_percent(caplog: pytest.LogCaptureFixture) -> None:
    """Log progress in ten percent steps and always log completion."""
    log_progress = burn_subtitles.build_progress_logger()

    with caplog.at_level("INFO", logger="burn_subtitles"):
        for percent in (0, 3, 10, 15, 21, 99, 100, 100):
            log_progress(percent)

    logged = [record.getMessage() for record in caplog.records]
    assert logged == [
        "burn_subtitles.progress: 0%",
        "burn_subtitles.progress: 10%",
        "burn_subtitles.progress: 21%",
        "burn_subtitles.progress: 99%",
        "burn_subtitles.progress: 100%",
    ]


def test_cli_missing_subtitle_file(tmp_path: Path) -> None:
    """Fail when the subtitle file does not exist."""
    repo_root = Path(__file__).resolve().parents[1]

    result = run_burn_subtitles(
        [
            "--input-video-file",
            str(tmp_path / "in.mp4"),
            "--subtitle-file",
            str(tmp_path / "missing.srt"),
        ],
        repo_root,
    )

    assert result.returncode == 1
    assert "burn_subtitles.input.file_error" in result.stderr


def test_cli_missing_video_file(tmp_path: Path) -> None:
    """Fail with a metadata error when the video does not exist."""
    repo_root = Path(__file__).resolve().parents[1]
    subtitle_path = write_subtitles(tmp_path)

    result = run_burn_subtitles(
        [
            "--input-video-file",
            str(tmp_path / "missing.mp4"),
            "--subtitle-file",
            str(subtitle_path),
        ],
        repo_root,
    )

    assert result.returncode == 1
    assert "burn_subtitles.media.metadata_error" in result.stderr
    assert list(tmp_path.iterdir()) == [subtitle_path]
