"""最终报告：质量评分、上线就绪判断与改进建议。"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel

from image_watermarking.core.report import format_duration

LOGGER = logging.getLogger(__name__)

REPORT_VERSION = "1.0.0"
FINAL_BASENAME = "watermarking-final-report"
ERROR_FINAL_BASENAME = "watermarking-error-final-report"
ERROR_RATE_BLOCKER = 0.1

EMPTY_VALIDATION = {"overall": {"status": "PASS", "critical_issues": 0, "warnings": 0}}


def calculate_quality_score(error_rate: float, critical: int, warnings: int) -> int:
    score = 100 - error_rate * 50 - critical * 10 - warnings * 2
    return max(0, int(round(score)))


def efficiency_rating(ratio: float) -> str:
    if ratio >= 0.95:
        return "Excellent"
    if ratio >= 0.85:
        return "Good"
    if ratio >= 0.70:
        return "Fair"
    return "Poor"


class FinalReportGenerator:
    """由主报告与最终校验结果派生 FinalReport 并导出三件套。"""

    def __init__(self, report_dir: Optional[Path] = None) -> None:
        self.report_dir = report_dir or Path.cwd()

    def generate(
        self,
        base_report: dict[str, Any],
        validation: Optional[dict[str, Any]] = None,
        *,
        interrupted: bool = False,
    ) -> dict[str, Any]:
        validation = validation or EMPTY_VALIDATION
        summary = base_report.get("summary", {})
        total = summary.get("total_images", 0)
        processed = summary.get("processed", 0)
        skipped = summary.get("skipped", 0)
        errors = summary.get("errors", 0)
        overall = validation["overall"]
        critical = overall["critical_issues"]
        warnings = overall["warnings"]
        error_rate = errors / total if total else 0.0

        if interrupted:
            status = "INTERRUPTED"
        elif critical:
            status = "CRITICAL_ISSUES"
        elif warnings or errors:
            status = "SUCCESS_WITH_WARNINGS"
        else:
            status = "SUCCESS"

        handled_ratio = (processed + skipped) / total if total else 1.0
        elapsed = summary.get("processing_time", 0.0)
        readiness = self.assess_deployment_readiness(critical, error_rate, validation, interrupted=interrupted)

        return {
            "metadata": {
                "version": REPORT_VERSION,
                "generated_at": datetime.now().isoformat(),
                "session_id": base_report.get("session_id"),
            },
            "executive_summary": {
                "overall_status": status,
                "quality_score": calculate_quality_score(error_rate, critical, warnings),
                "success_rate": f"{processed / total * 100:.1f}%" if total else "0%",
                "processing_efficiency": efficiency_rating(handled_ratio),
                "key_achievements": self.identify_achievements(base_report, validation),
                "critical_issues": critical,
                "warnings": warnings,
            },
            "processing_results": {
                "total_images": total,
                "processed": processed,
                "skipped": skipped,
                "errors": errors,
                "error_rate": f"{error_rate * 100:.2f}%",
                "processing_time": format_duration(elapsed),
                "throughput": f"{(processed + skipped + errors) / elapsed * 60:.1f} images/min" if elapsed > 0 else "0 images/min",
                "error_details": base_report.get("errors", []),
            },
            "quality_metrics": {
                "integrity_pass_rate": self._integrity_rate(validation),
                "consistency": (validation.get("watermark_consistency") or {}).get("details", {}),
                "format_breakdown": base_report.get("statistics", {}).get("format_breakdown", {}),
                "size_breakdown": base_report.get("statistics", {}).get("size_breakdown", {}),
            },
            "validation": validation,
            "deployment_readiness": readiness,
            "recommendations": self.generate_recommendations(base_report, validation),
            "system_health": {
                "status": "CRITICAL" if critical else ("DEGRADED" if error_rate > 0.05 else "HEALTHY"),
                "error_categories": base_report.get("statistics", {}).get("error_categories", {}),
                "most_common_error": _most_common(base_report.get("statistics", {}).get("error_categories", {})),
            },
        }

    @staticmethod
    def assess_deployment_readiness(
        critical: int, error_rate: float, validation: dict[str, Any], *, interrupted: bool = False
    ) -> dict[str, Any]:
        blockers: list[str] = []
        warnings: list[str] = []
        if critical:
            blockers.append(f"存在 {critical} 个严重校验问题需要处理")
        if error_rate > ERROR_RATE_BLOCKER:
            blockers.append(f"错误率 {error_rate * 100:.1f}% 超过上线阈值")
        if interrupted:
            blockers.append("处理被中断，仍有图片未完成")
        if validation["overall"]["warnings"]:
            warnings.append(f"{validation['overall']['warnings']} 个警告建议复核")
        ready = not blockers
        return {
            "ready": ready,
            "confidence": "HIGH" if ready and not warnings else ("MEDIUM" if ready else "LOW"),
            "blockers": blockers,
            "warnings": warnings,
        }

    @staticmethod
    def generate_recommendations(base_report: dict[str, Any], validation: dict[str, Any]) -> dict[str, list[dict[str, str]]]:
        priority: list[dict[str, str]] = []
        optimization: list[dict[str, str]] = []
        maintenance: list[dict[str, str]] = [
            {"title": "定期清理备份", "action": "运行 backups cleanup 保留最近几代备份"},
        ]
        summary = base_report.get("summary", {})
        categories = base_report.get("statistics", {}).get("error_categories", {})

        if validation["overall"]["critical_issues"]:
            priority.append({"title": "处理严重校验问题", "action": "查看 validation 小节中的 critical 条目并修复"})
        for label, count in sorted(categories.items(), key=lambda item: -item[1]):
            priority.append({"title": f"排查 {label} 错误（{count} 个）", "action": "参考主报告 troubleshooting 建议"})
        if (validation.get("watermark_consistency") or {}).get("status") == "WARNING":
            optimization.append({"title": "复核水印一致性", "action": "检查尺寸异常的图片是否需要单独处理"})
        if summary.get("average_processing_time", 0) > 5:
            optimization.append({"title": "单张处理耗时偏高", "action": "开启并行模式或拆分超大图片"})
        if (validation.get("duplicate_watermarks") or {}).get("issues"):
            maintenance.append({"title": "人工确认疑似重复水印", "action": "检查 duplicate_watermarks 列出的图片"})
        return {"priority": priority, "optimization": optimization, "maintenance": maintenance}

    @staticmethod
    def identify_achievements(base_report: dict[str, Any], validation: dict[str, Any]) -> list[str]:
        summary = base_report.get("summary", {})
        achievements: list[str] = []
        if summary.get("processed"):
            achievements.append(f"成功为 {summary['processed']} 张图片添加水印")
        if summary.get("total_images") and not summary.get("errors"):
            achievements.append("零错误完成")
        if (validation.get("watermark_consistency") or {}).get("status") == "PASS" and summary.get("processed", 0) > 1:
            achievements.append("全部图片水印比例一致")
        if (validation.get("reference_preservation") or {}).get("status") == "PASS":
            achievements.append("所有图片引用保持有效")
        return achievements

    @staticmethod
    def _integrity_rate(validation: dict[str, Any]) -> str:
        details = (validation.get("image_integrity") or {}).get("details") or {}
        total = details.get("total_validated", 0)
        if not total:
            return "100%"
        return f"{details.get('passed', 0) / total * 100:.1f}%"

    def render_text(self, report: dict[str, Any]) -> str:
        """生成便于阅读的纯文本报告。"""

        summary = report["executive_summary"]
        results = report["processing_results"]
        readiness = report["deployment_readiness"]
        lines = [
            "图片水印最终报告",
            "=" * 40,
            f"生成时间: {report['metadata']['generated_at']}",
            f"总体状态: {summary['overall_status']}",
            f"质量评分: {summary['quality_score']}/100",
            f"成功率: {summary['success_rate']}",
            f"处理效率: {summary['processing_efficiency']}",
            "",
            "处理结果",
            "-" * 40,
            f"图片总数: {results['total_images']}",
            f"已处理: {results['processed']}",
            f"已跳过: {results['skipped']}",
            f"失败: {results['errors']} ({results['error_rate']})",
            f"耗时: {results['processing_time']}",
            f"吞吐量: {results['throughput']}",
            "",
            "上线就绪",
            "-" * 40,
            f"可以上线: {'是' if readiness['ready'] else '否'}",
            f"置信度: {readiness['confidence']}",
        ]
        lines.extend(f"  阻塞: {item}" for item in readiness["blockers"])
        lines.extend(f"  警告: {item}" for item in readiness["warnings"])

        if summary["key_achievements"]:
            lines += ["", "成果", "-" * 40]
            lines.extend(f"• {item}" for item in summary["key_achievements"])

        recommendations = report["recommendations"]
        if recommendations["priority"]:
            lines += ["", "优先建议", "-" * 40]
            lines.extend(
                f"{index}. {item['title']}\n   操作: {item['action']}"
                for index, item in enumerate(recommendations["priority"], start=1)
            )

        if results["error_details"]:
            lines += ["", "错误详情", "-" * 40]
            lines.extend(
                f"• {item['path']}: {item['message']}\n  分类: {item['label']}  时间: {item['timestamp']}"
                for item in results["error_details"]
            )
        return "\n".join(lines) + "\n"

    def export(self, report: dict[str, Any], *, error: bool = False) -> list[Path]:
        """写出完整 JSON、摘要 JSON 与文本报告。"""

        base = ERROR_FINAL_BASENAME if error else FINAL_BASENAME
        self.report_dir.mkdir(parents=True, exist_ok=True)
        full_path = self.report_dir / f"{base}.json"
        summary_path = self.report_dir / f"{base}-summary.json"
        text_path = self.report_dir / f"{base}-readable.txt"

        summary = {
            "executive_summary": report["executive_summary"],
            "deployment_readiness": report["deployment_readiness"],
            "key_metrics": {
                key: report["processing_results"][key]
                for key in ("total_images", "processed", "skipped", "errors", "error_rate", "throughput")
            },
        }
        full_path.write_text(json.dumps(report, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        summary_path.write_text(json.dumps(summary, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        text_path.write_text(self.render_text(report), encoding="utf-8")
        LOGGER.info("最终报告已写入 %s", full_path)
        return [full_path, summary_path, text_path]

    def print_final_summary(self, report: dict[str, Any], console: Optional[Console] = None) -> None:
        console = console or Console()
        summary = report["executive_summary"]
        readiness = report["deployment_readiness"]
        color = {"SUCCESS": "green", "SUCCESS_WITH_WARNINGS": "yellow"}.get(summary["overall_status"], "red")
        body = "\n".join(
            [
                f"状态: [{color}]{summary['overall_status']}[/{color}]",
                f"质量评分: {summary['quality_score']}/100",
                f"吞吐量: {report['processing_results']['throughput']}",
                f"上线就绪: {'是' if readiness['ready'] else '否'}（{readiness['confidence']}）",
                *[f"[red]阻塞[/red] {item}" for item in readiness["blockers"]],
            ]
        )
        console.print(Panel(body, title="最终报告"))


def _most_common(categories: dict[str, int]) -> Optional[str]:
    if not categories:
        return None
    return max(categories.items(), key=lambda item: item[1])[0]
