"""处理结束后的整体校验。"""

from __future__ import annotations

from pathlib import Path

from PIL import Image

from image_watermarking.processing.final_validation import FinalValidator
from image_watermarking.processing.validation import ValidationEngine


def make_images(root: Path, good: int, broken: int) -> list[Path]:
    paths = []
    for index in range(good):
        path = root / f"ok-{index}.png"
        Image.new("RGB", (40, 30), (20, 30, 40)).save(path)
        paths.append(path)
    for index in range(broken):
        path = root / f"broken-{index}.png"
        path.write_bytes(b"not an image at all")
        paths.append(path)
    return paths


def test_all_valid_images_pass(tmp_path: Path) -> None:
    result = FinalValidator(ValidationEngine()).perform_final_validation(make_images(tmp_path, 3, 0))

    assert result["image_integrity"]["status"] == "PASS"
    assert result["overall"] == {"status": "PASS", "critical_issues": 0, "warnings": 0}


def test_integrity_failures_below_ratio_are_warnings(tmp_path: Path) -> None:
    result = FinalValidator(ValidationEngine()).perform_final_validation(make_images(tmp_path, 10, 1))

    integrity = result["image_integrity"]
    assert integrity["status"] == "WARNING"
    assert integrity["details"] == {"total_validated": 11, "passed": 10, "failed": 1}
    assert [issue["severity"] for issue in integrity["issues"]] == ["warning"]
    assert result["overall"]["critical_issues"] == 0
    assert result["overall"]["status"] == "WARNING"


def test_integrity_failures_above_ratio_are_critical(tmp_path: Path) -> None:
    result = FinalValidator(ValidationEngine()).perform_final_validation(make_images(tmp_path, 2, 1))

    integrity = result["image_integrity"]
    assert integrity["status"] == "FAIL"
    assert [issue["severity"] for issue in integrity["issues"]] == ["critical"]
    assert result["overall"]["status"] == "FAIL"
    assert result["overall"]["critical_issues"] == 1
