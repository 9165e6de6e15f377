"""配置文件读写、样式校验与颜色解析。"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from image_watermarking.core.config import (
    ConsistencyConfig,
    JobConfig,
    ShadowStyle,
    WatermarkStyle,
    ensure_valid_style,
    load_style_config,
    parse_font_size,
    save_style_config,
    validate_style,
)
from image_watermarking.core.exceptions import ErrorCategory, InvalidConfigurationError
from image_watermarking.utils.colors import parse_color


def test_default_style_is_valid() -> None:
    assert validate_style(WatermarkStyle()) == []


def test_style_round_trips_through_file(tmp_path: Path) -> None:
    style = WatermarkStyle(text="ACME", position="top-left", padding=12, font_size=30, shadow=ShadowStyle(blur=4))
    path = save_style_config(style, tmp_path / "conf" / "watermark-config.json")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["fontSize"] == 30
    assert data["shadow"] == {"blur": 4, "color": "rgba(0, 0, 0, 0.5)"}

    loaded = load_style_config(path)
    assert loaded == style


def test_load_falls_back_to_defaults(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_style_config(broken) == WatermarkStyle()

    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"text": "", "position": "center"}), encoding="utf-8")
    assert load_style_config(invalid) == WatermarkStyle()

    assert load_style_config(tmp_path / "missing.json") == WatermarkStyle()
    assert load_style_config(None) == WatermarkStyle()


def test_validate_style_reports_each_problem() -> None:
    style = WatermarkStyle(text="  ", position="middle", padding=-1, min_font_size=4, color="blue-ish")
    errors = validate_style(style)
    assert len(errors) == 5

    with pytest.raises(InvalidConfigurationError) as excinfo:
        ensure_valid_style(style)
    assert excinfo.value.category is ErrorCategory.SYSTEM


@pytest.mark.parametrize(
    ("value", "expected"),
    [("5%", (0.05, None)), ("32px", (None, 32)), (28, (None, 28)), ("40", (None, 40))],
)
def test_parse_font_size(value, expected) -> None:
    ratio, fixed = parse_font_size(value)
    assert fixed == expected[1]
    if expected[0] is None:
        assert ratio is None
    else:
        assert ratio == pytest.approx(expected[0])


def test_parse_font_size_rejects_garbage() -> None:
    with pytest.raises(InvalidConfigurationError):
        parse_font_size("large")


def test_consistency_config_follows_style() -> None:
    style = WatermarkStyle(font_size="4%", padding=10, position="top-right", min_font_size=16)
    config = ConsistencyConfig.from_style(style, tolerance=0.2)
    assert config.font_size_ratio == pytest.approx(0.04)
    assert config.fixed_font_size is None
    assert config.padding == 10
    assert config.position == "top-right"
    assert config.min_font_size == 16
    assert config.tolerance == 0.2

    job = JobConfig(root=Path("/site"), style=style)
    assert job.consistency.position == "top-right"
    assert job.backup_dir == Path("/site/.backups")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("rgba(255, 255, 255, 0.8)", (255, 255, 255, 204)),
        ("rgb(10,20,30)", (10, 20, 30, 255)),
        ("#fff", (255, 255, 255, 255)),
        ("#00000080", (0, 0, 0, 128)),
    ],
)
def test_parse_color(value: str, expected) -> None:
    assert parse_color(value) == expected


def test_parse_color_rejects_out_of_range_channels() -> None:
    with pytest.raises(InvalidConfigurationError):
        parse_color("rgba(300, 0, 0, 1)")
