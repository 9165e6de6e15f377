"""处理结束后的整体校验：完整性、一致性、引用、路径与重复水印。"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from image_watermarking.core.exceptions import WatermarkingError
from image_watermarking.processing.consistency import ConsistencyReport
from image_watermarking.processing.references import PathConsistency, ReferenceCheck
from image_watermarking.processing.validation import ValidationEngine

LOGGER = logging.getLogger(__name__)

INTEGRITY_FAILURE_RATIO = 0.1


def _check(status: str = "PASS") -> dict[str, Any]:
    return {"status": status, "issues": [], "details": {}}


class FinalValidator:
    """汇总各项检查为 critical/warning 问题列表。"""

    def __init__(self, validation_engine: ValidationEngine) -> None:
        self.validation_engine = validation_engine

    def perform_final_validation(
        self,
        processed_paths: Iterable[Path],
        consistency: Optional[ConsistencyReport] = None,
        path_check: Optional[PathConsistency] = None,
        reference_check: Optional[ReferenceCheck] = None,
    ) -> dict[str, Any]:
        paths = list(processed_paths)
        validation = {
            "image_integrity": self._check_integrity(paths),
            "watermark_consistency": self._check_consistency(paths, consistency),
            "duplicate_watermarks": self._check_duplicates(paths),
            "reference_preservation": self._check_references(reference_check),
            "path_consistency": self._check_paths(path_check),
        }

        critical = sum(
            1 for check in validation.values() for issue in check["issues"] if issue["severity"] == "critical"
        )
        warnings = sum(
            1 for check in validation.values() for issue in check["issues"] if issue["severity"] == "warning"
        )
        status = "FAIL" if critical else ("WARNING" if warnings else "PASS")
        validation["overall"] = {"status": status, "critical_issues": critical, "warnings": warnings}
        LOGGER.info("最终校验：%s（严重 %d，警告 %d）", status, critical, warnings)
        return validation

    def _check_integrity(self, paths: list[Path]) -> dict[str, Any]:
        check = _check()
        failures = []
        for path in paths:
            result = self.validation_engine.validate_image(path)
            if not result.is_valid:
                failures.append({"image": str(path), "issue": result.error})
        failed = len(failures)
        check["details"] = {"total_validated": len(paths), "passed": len(paths) - failed, "failed": failed}
        if failed:
            # 失败比例超过阈值才算严重
            critical = failed > len(paths) * INTEGRITY_FAILURE_RATIO
            check["status"] = "FAIL" if critical else "WARNING"
            severity = "critical" if critical else "warning"
            check["issues"] = [{**failure, "severity": severity} for failure in failures]
        return check

    def _check_consistency(self, paths: list[Path], consistency: Optional[ConsistencyReport]) -> dict[str, Any]:
        check = _check()
        if consistency is not None and not consistency.is_consistent:
            check["status"] = "WARNING"
            check["issues"] = [{"issue": item, "severity": "warning"} for item in consistency.inconsistencies]
        check["details"] = {
            "images_checked": len(paths),
            "consistency_score": 100 if consistency is None or consistency.is_consistent else 75,
        }
        return check

    def _check_duplicates(self, paths: list[Path]) -> dict[str, Any]:
        check = _check()
        found = 0
        for path in paths:
            try:
                duplicate = self.validation_engine.detect_duplicate_watermarks(path)
            except (WatermarkingError, OSError) as exc:
                check["issues"].append({"image": str(path), "issue": f"重复水印检测失败: {exc}", "severity": "warning"})
                continue
            if duplicate.has_duplicates:
                found += 1
                check["issues"].append({"image": str(path), "issue": duplicate.details, "severity": "warning"})
        check["details"] = {"images_checked": len(paths), "duplicates": found}
        if check["issues"]:
            check["status"] = "WARNING"
        return check

    @staticmethod
    def _check_references(reference_check: Optional[ReferenceCheck]) -> dict[str, Any]:
        check = _check()
        if reference_check is None:
            return check
        for broken in reference_check.broken_references:
            check["issues"].append(
                {
                    "issue": f"失效引用: {broken.image_path}（{broken.reference.source_file}:{broken.reference.line}）",
                    "severity": "critical",
                }
            )
        if check["issues"]:
            check["status"] = "FAIL"
        check["details"] = dict(reference_check.summary)
        return check

    @staticmethod
    def _check_paths(path_check: Optional[PathConsistency]) -> dict[str, Any]:
        check = _check()
        if path_check is None:
            return check
        for change in path_check.changed_paths:
            check["issues"].append({"issue": f"路径变化 ({change.status}): {change.path}", "severity": "critical"})
        if check["issues"]:
            check["status"] = "FAIL"
        check["details"] = {"changed_paths": len(path_check.changed_paths)}
        return check
