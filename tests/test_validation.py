"""完整性校验、水印检测与重复水印检测。"""

from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from image_watermarking.core.config import (
    DetectionConfig,
    DuplicateDetectionConfig,
    JobConfig,
    WatermarkStyle,
)
from image_watermarking.processing.marker import marker_save_kwargs, read_marker
from image_watermarking.processing.validation import (
    CornerBrightnessDetector,
    MarkerDetector,
    ValidationEngine,
    bright_pixel_ratio,
)

SVG = '<svg xmlns="http://www.w3.org/2000/svg" width="120" height="80"><rect width="120" height="80"/>{body}</svg>'


def bright_patch(image: Image.Image, corner: str, fraction: float = 0.25) -> Image.Image:
    """在角落区域（边长 20%）内画一块占比约为 fraction 的白色矩形。"""

    width, height = image.size
    cw, ch = int(width * 0.2), int(height * 0.2)
    left = width - cw if corner.endswith("right") else 0
    top = height - ch if corner.startswith("bottom") else 0
    ImageDraw.Draw(image).rectangle((left, top, left + cw - 1, top + int(ch * fraction) - 1), fill="white")
    return image


def test_validate_image_reports_metadata(tmp_path: Path) -> None:
    path = tmp_path / "a.png"
    Image.new("RGBA", (30, 20), (10, 20, 30, 128)).save(path)

    result = ValidationEngine().validate_image(path)

    assert result.is_valid
    assert result.metadata is not None
    assert (result.metadata.width, result.metadata.height) == (30, 20)
    assert result.metadata.channels == 4
    assert result.metadata.has_alpha
    assert result.metadata.format == "png"


@pytest.mark.parametrize(
    ("name", "content", "fragment"),
    [
        ("empty.png", b"", "文件为空"),
        ("broken.jpg", b"\xff\xd8\xff\xe0 truncated", "损坏"),
        ("notes.gif", b"GIF89a....", "不支持的格式"),
    ],
)
def test_validate_image_rejects_bad_files(tmp_path: Path, name: str, content: bytes, fragment: str) -> None:
    path = tmp_path / name
    path.write_bytes(content)

    result = ValidationEngine().validate_image(path)

    assert not result.is_valid
    assert fragment in (result.error or "")


def test_validate_missing_file(tmp_path: Path) -> None:
    result = ValidationEngine().validate_image(tmp_path / "nope.png")
    assert not result.is_valid
    assert result.error == "文件不存在"


def test_validate_svg_checks_structure(tmp_path: Path) -> None:
    good = tmp_path / "good.svg"
    good.write_text(SVG.format(body=""), encoding="utf-8")
    bad = tmp_path / "bad.svg"
    bad.write_text("<svg><rect/>", encoding="utf-8")
    engine = ValidationEngine()

    result = engine.validate_image(good)
    assert result.is_valid
    assert (result.metadata.width, result.metadata.height) == (120, 80)
    assert not engine.validate_image(bad).is_valid


def test_svg_watermark_detection_uses_text(tmp_path: Path) -> None:
    plain = tmp_path / "plain.svg"
    plain.write_text(SVG.format(body=""), encoding="utf-8")
    marked = tmp_path / "marked.svg"
    marked.write_text(SVG.format(body="<text>P.F.O</text>"), encoding="utf-8")
    engine = ValidationEngine()

    assert engine.check_watermark_exists(plain).confidence == pytest.approx(0.1)
    check = engine.check_watermark_exists(marked)
    assert check.has_watermark
    assert check.confidence == pytest.approx(0.9)

    doubled = tmp_path / "doubled.svg"
    doubled.write_text(SVG.format(body="<text>P.F.O</text><text>PFO</text>"), encoding="utf-8")
    assert engine.detect_duplicate_watermarks(doubled).has_duplicates
    assert not engine.detect_duplicate_watermarks(marked).has_duplicates


def test_svg_detection_follows_custom_watermark_text(tmp_path: Path) -> None:
    config = JobConfig(root=tmp_path, style=WatermarkStyle(text="Acme.Co"))
    assert config.detection.text_variants == ("Acme.Co", "Acme Co", "AcmeCo")

    engine = ValidationEngine(config.detection)
    for name, body in (("exact", "Acme.Co"), ("spaced", "Acme Co"), ("joined", "AcmeCo")):
        path = tmp_path / f"{name}.svg"
        path.write_text(SVG.format(body=f"<text>{body}</text>"), encoding="utf-8")
        check = engine.check_watermark_exists(path)
        assert check.has_watermark, name
        assert check.detector == "svg-text"

    default_text = tmp_path / "default.svg"
    default_text.write_text(SVG.format(body="<text>P.F.O</text>"), encoding="utf-8")
    assert not engine.check_watermark_exists(default_text).has_watermark


def test_marker_detector_reads_png_text_chunk(tmp_path: Path) -> None:
    path = tmp_path / "marked.png"
    Image.new("RGB", (40, 40), (20, 40, 60)).save(path, **marker_save_kwargs("png", "ACME", {"Author": "someone"}))

    with Image.open(path) as image:
        assert read_marker(image) == "ACME"
        assert image.info["Author"] == "someone"
        assert MarkerDetector().detect(image) == 1.0

    check = ValidationEngine().check_watermark_exists(path)
    assert check.has_watermark
    assert check.detector == "marker"
    assert check.confidence == 1.0


@pytest.mark.parametrize("fmt, suffix", [("jpeg", "jpg"), ("webp", "webp")])
def test_marker_survives_lossy_containers(tmp_path: Path, fmt: str, suffix: str) -> None:
    path = tmp_path / f"marked.{suffix}"
    Image.new("RGB", (40, 40), (20, 40, 60)).save(path, format=fmt.upper(), **marker_save_kwargs(fmt, "P.F.O"))

    with Image.open(path) as image:
        assert read_marker(image) == "P.F.O"


def test_corner_brightness_heuristic(tmp_path: Path) -> None:
    image = Image.new("RGB", (200, 100), (30, 30, 30))
    detector = CornerBrightnessDetector(DetectionConfig())
    assert detector.detect(image) == pytest.approx(0.2)

    bright_patch(image, "bottom-right")
    assert bright_pixel_ratio(image, "bottom-right", 0.2, 200) == pytest.approx(0.25)
    assert detector.detect(image) == pytest.approx(0.8)

    path = tmp_path / "patched.png"
    image.save(path)
    check = ValidationEngine().check_watermark_exists(path)
    assert check.has_watermark
    assert check.detector == "corner-brightness"


def test_all_white_corner_is_not_a_watermark() -> None:
    image = Image.new("RGB", (100, 100), "white")
    assert CornerBrightnessDetector().detect(image) == pytest.approx(0.2)


def test_transparent_corner_is_not_bright() -> None:
    image = Image.new("RGBA", (100, 100), (255, 255, 255, 0))
    assert bright_pixel_ratio(image, "bottom-right", 0.2, 200) == 0.0


def test_duplicate_detection_uses_its_own_config(tmp_path: Path) -> None:
    image = Image.new("RGB", (200, 200), (30, 30, 30))
    bright_patch(image, "bottom-right")
    bright_patch(image, "top-left")
    path = tmp_path / "two.png"
    image.save(path)

    duplicate = ValidationEngine().detect_duplicate_watermarks(path)
    assert duplicate.has_duplicates
    assert set(duplicate.corners) == {"bottom-right", "top-left"}

    strict = ValidationEngine(duplicate_detection=DuplicateDetectionConfig(min_corners=3))
    assert not strict.detect_duplicate_watermarks(path).has_duplicates


def test_compare_images_and_batch(tmp_path: Path) -> None:
    first = tmp_path / "first.png"
    second = tmp_path / "second.png"
    Image.new("RGB", (64, 64), (40, 80, 120)).save(first)
    image = Image.new("RGB", (64, 64), (40, 80, 120))
    ImageDraw.Draw(image).rectangle((40, 50, 60, 60), fill=(250, 250, 250))
    image.save(second)
    broken = tmp_path / "broken.png"
    broken.write_text("nope")
    engine = ValidationEngine()

    comparison = engine.compare_images(first, second)
    assert comparison.identical_layout
    assert comparison.format_match
    assert comparison.ssim is not None and comparison.ssim < 1.0

    batch = engine.validate_image_batch([first, second, broken])
    assert batch["valid"] == 2
    assert batch["invalid"] == 1
    assert not batch["results"][str(broken)].is_valid
