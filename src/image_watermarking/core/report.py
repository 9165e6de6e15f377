"""报告生成：累计计数、分类统计并导出 JSON/CSV 报告。"""

from __future__ import annotations

import csv
import json
import logging
import threading
import time
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.table import Table

from image_watermarking.core.exceptions import ErrorCategory
from image_watermarking.core.models import FileOutcome, ImageMetadata, ImageRecord
from image_watermarking.core.progress import ProgressStats

LOGGER = logging.getLogger(__name__)

REPORT_FILENAME = "watermarking-report.json"
LOGS_FILENAME = "watermarking-detailed-logs.json"
ERROR_REPORT_FILENAME = "watermarking-error-report.json"
ERROR_LOGS_FILENAME = "watermarking-error-logs.json"
OUTCOMES_FILENAME = "watermarking-outcomes.csv"

CSV_HEADER = ["path", "status", "category", "message", "attempts", "duration"]

CATEGORY_LABELS = {
    ErrorCategory.PERMISSION: "Permission",
    ErrorCategory.CORRUPTION: "Corrupted File",
    ErrorCategory.MEMORY: "Memory",
    ErrorCategory.FORMAT: "Format",
    ErrorCategory.NETWORK: "Network",
    ErrorCategory.STORAGE: "Storage",
}
DEFAULT_LABEL = "Processing Error"
SUGGESTIONS = {
    "Permission": ["检查文件读写权限", "确认文件未被其他程序占用"],
    "Corrupted File": ["用图片查看器确认文件可以打开", "替换或重新导出损坏的图片"],
    "Memory": ["减小批次大小", "关闭并行模式后重试"],
    "Format": ["确认扩展名与实际编码一致", "转换为受支持的格式"],
    "Network": ["检查网络存储的连接状态", "稍后重试"],
    "Storage": ["释放磁盘空间", "清理旧的备份代"],
    "Processing Error": ["查看详细日志定位原因", "单独处理该文件排查问题"],
}
SIZE_CATEGORIES = (
    (100_000, "Small (<100K px)"),
    (1_000_000, "Medium (<1M px)"),
    (5_000_000, "Large (<5M px)"),
)
VERY_LARGE = "Very Large (>=5M px)"


def category_label(category: Optional[ErrorCategory]) -> str:
    return CATEGORY_LABELS.get(category, DEFAULT_LABEL) if category else DEFAULT_LABEL


def size_category(pixels: int) -> str:
    for limit, label in SIZE_CATEGORIES:
        if pixels < limit:
            return label
    return VERY_LARGE


def format_duration(seconds: float) -> str:
    """把秒数格式化为 ``1h 2m 3s`` / ``2m 3s`` / ``3.2s``。"""

    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


def write_csv_report(outcomes: Iterable[FileOutcome], output_dir: Path, filename: str = OUTCOMES_FILENAME) -> Path:
    """将逐文件处理结果写入 CSV 报告。"""

    report_path = output_dir / filename
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(CSV_HEADER)
        for outcome in outcomes:
            writer.writerow(
                [
                    str(outcome.path),
                    outcome.status,
                    outcome.category.value if outcome.category else "",
                    outcome.message or "",
                    outcome.attempts,
                    f"{outcome.duration:.3f}",
                ]
            )
    return report_path


class ReportGenerator:
    """运行结果的唯一计数方；所有写操作串行化。"""

    def __init__(self, report_dir: Optional[Path] = None) -> None:
        self.report_dir = report_dir or Path.cwd()
        self.session_id = f"session-{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"
        self.total_images = 0
        self.processed = 0
        self.skipped = 0
        self.errors = 0
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.processed_images: list[str] = []
        self.skipped_images: list[dict[str, Any]] = []
        self.error_details: list[dict[str, Any]] = []
        self.outcomes: list[FileOutcome] = []
        self.logs: list[dict[str, Any]] = []
        self.format_breakdown: Counter[str] = Counter()
        self.size_breakdown: Counter[str] = Counter()
        self.error_categories: Counter[str] = Counter()
        self.skipped_reasons: Counter[str] = Counter()
        self.processing_times: list[float] = []
        self.largest_image: Optional[dict[str, Any]] = None
        self.smallest_image: Optional[dict[str, Any]] = None
        self.consistency_results: Optional[dict[str, Any]] = None
        self.reference_validation: Optional[dict[str, Any]] = None
        self.extra: dict[str, Any] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ 计时
    def start_timing(self) -> None:
        self.start_time = time.monotonic()
        self.end_time = None
        self.log_event("session_started", {"session_id": self.session_id})

    def end_timing(self) -> None:
        self.end_time = time.monotonic()

    @property
    def processing_time(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.monotonic()
        return end - self.start_time

    # ------------------------------------------------------------------ 计数
    def set_total_images(self, total: int) -> None:
        with self._lock:
            self.total_images = total

    def restore_stats(self, stats: ProgressStats) -> None:
        """续跑时在既有计数上继续累加。"""

        with self._lock:
            self.processed += stats.processed
            self.skipped += stats.skipped
            self.errors += stats.errors
        self.log_event("stats_restored", stats.to_dict())

    def log_event(self, event: str, details: Optional[dict[str, Any]] = None) -> None:
        entry = {"timestamp": datetime.now().isoformat(), "event": event, **(details or {})}
        with self._lock:
            self.logs.append(entry)

    def record_outcome(self, outcome: FileOutcome, record: Optional[ImageRecord] = None) -> None:
        """按结果状态分派，每个文件只计数一次。"""

        if outcome.status == "processed":
            self.record_processed(outcome, record)
        elif outcome.status == "skipped":
            self.record_skipped(outcome, record)
        else:
            self.record_error(outcome, record)

    def record_processed(self, outcome: FileOutcome, record: Optional[ImageRecord] = None) -> None:
        metadata = outcome.result.original_metadata if outcome.result else outcome.metadata
        with self._lock:
            self.processed += 1
            self.outcomes.append(outcome)
            self.processed_images.append(str(outcome.path))
            self.processing_times.append(outcome.duration)
            fmt = record.format if record else outcome.path.suffix.lower().lstrip(".")
            self.format_breakdown[fmt] += 1
            if metadata is not None:
                self._track_size(outcome.path, metadata)
        self.log_event("processed", {"path": str(outcome.path), "duration": round(outcome.duration, 4)})

    def record_skipped(self, outcome: FileOutcome, record: Optional[ImageRecord] = None) -> None:
        reason = outcome.message or "unknown"
        with self._lock:
            self.skipped += 1
            self.outcomes.append(outcome)
            self.skipped_images.append({"path": str(outcome.path), "reason": reason})
            self.skipped_reasons[reason] += 1
        self.log_event("skipped", {"path": str(outcome.path), "reason": reason})

    def record_error(self, outcome: FileOutcome, record: Optional[ImageRecord] = None) -> None:
        label = category_label(outcome.category)
        detail = {
            "path": str(outcome.path),
            "message": outcome.message,
            "category": outcome.category.value if outcome.category else ErrorCategory.UNKNOWN.value,
            "label": label,
            "attempts": outcome.attempts,
            "timestamp": datetime.now().isoformat(),
        }
        with self._lock:
            self.errors += 1
            self.outcomes.append(outcome)
            self.error_details.append(detail)
            self.error_categories[label] += 1
        self.log_event("error", detail)

    def _track_size(self, path: Path, metadata: ImageMetadata) -> None:
        pixels = metadata.pixels
        self.size_breakdown[size_category(pixels)] += 1
        entry = {"path": str(path), "width": metadata.width, "height": metadata.height, "pixels": pixels}
        if self.largest_image is None or pixels > self.largest_image["pixels"]:
            self.largest_image = entry
        if self.smallest_image is None or pixels < self.smallest_image["pixels"]:
            self.smallest_image = entry

    def add_consistency_results(self, results: dict[str, Any]) -> None:
        with self._lock:
            self.consistency_results = results
        self.log_event("consistency_checked", {"is_consistent": results.get("is_consistent")})

    def add_reference_validation(self, results: dict[str, Any]) -> None:
        with self._lock:
            self.reference_validation = results
        self.log_event("references_checked", {"valid": results.get("reference_validation", {}).get("valid")})

    def get_processed_images(self) -> list[str]:
        with self._lock:
            return list(self.processed_images)

    # ------------------------------------------------------------------ 输出
    @property
    def success_rate(self) -> float:
        attempted = self.processed + self.errors
        return self.processed / attempted * 100 if attempted else 0.0

    def generate_report(self) -> dict[str, Any]:
        with self._lock:
            elapsed = self.processing_time
            completed = self.processed + self.skipped + self.errors
            average = sum(self.processing_times) / len(self.processing_times) if self.processing_times else 0.0
            labels = sorted(self.error_categories)
            return {
                "session_id": self.session_id,
                "generated_at": datetime.now().isoformat(),
                "summary": {
                    "total_images": self.total_images,
                    "processed": self.processed,
                    "skipped": self.skipped,
                    "errors": self.errors,
                    "completed": completed,
                    "success_rate": round(self.success_rate, 1),
                    "processing_time": round(elapsed, 3),
                    "processing_time_formatted": format_duration(elapsed),
                    "average_processing_time": round(average, 4),
                    "throughput_per_minute": round(completed / elapsed * 60, 1) if elapsed > 0 else 0.0,
                },
                "statistics": {
                    "format_breakdown": dict(self.format_breakdown),
                    "size_breakdown": dict(self.size_breakdown),
                    "error_categories": dict(self.error_categories),
                    "skipped_reasons": dict(self.skipped_reasons),
                    "largest_image": self.largest_image,
                    "smallest_image": self.smallest_image,
                },
                "processed_images": list(self.processed_images),
                "skipped_images": list(self.skipped_images),
                "errors": list(self.error_details),
                "troubleshooting": {label: SUGGESTIONS.get(label, SUGGESTIONS[DEFAULT_LABEL]) for label in labels},
                "consistency": self.consistency_results,
                "reference_validation": self.reference_validation,
                **self.extra,
            }

    def _write_json(self, filename: str, payload: Any) -> Path:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_dir / filename
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        return path

    def export_results(self, *, error: bool = False) -> Path:
        path = self._write_json(ERROR_REPORT_FILENAME if error else REPORT_FILENAME, self.generate_report())
        LOGGER.info("报告已写入 %s", path)
        return path

    def export_detailed_logs(self, *, error: bool = False) -> Path:
        with self._lock:
            payload = {"session_id": self.session_id, "entries": list(self.logs)}
        return self._write_json(ERROR_LOGS_FILENAME if error else LOGS_FILENAME, payload)

    def export_outcomes(self) -> Path:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            outcomes = list(self.outcomes)
        return write_csv_report(outcomes, self.report_dir)

    def export_all(self, *, error: bool = False) -> list[Path]:
        """写出主报告、详细日志与逐文件 CSV，单个文件失败不影响其他文件。"""

        written: list[Path] = []
        for exporter in (
            lambda: self.export_results(error=error),
            lambda: self.export_detailed_logs(error=error),
            self.export_outcomes,
        ):
            try:
                written.append(exporter())
            except OSError as exc:
                LOGGER.error("写入报告失败：%s", exc)
        return written

    def print_summary(self, console: Optional[Console] = None) -> None:
        console = console or Console()
        report = self.generate_report()
        summary = report["summary"]

        table = Table(title="水印处理汇总", show_header=False)
        table.add_column("项目", style="bold")
        table.add_column("数值", justify="right")
        table.add_row("图片总数", str(summary["total_images"]))
        table.add_row("已处理", f"[green]{summary['processed']}[/green]")
        table.add_row("已跳过", f"[yellow]{summary['skipped']}[/yellow]")
        table.add_row("失败", f"[red]{summary['errors']}[/red]")
        table.add_row("成功率", f"{summary['success_rate']}%")
        table.add_row("耗时", summary["processing_time_formatted"])
        console.print(table)

        categories = report["statistics"]["error_categories"]
        if categories:
            errors = Table(title="错误分类")
            errors.add_column("分类")
            errors.add_column("数量", justify="right")
            errors.add_column("建议")
            for label, count in sorted(categories.items(), key=lambda item: -item[1]):
                errors.add_row(label, str(count), "；".join(report["troubleshooting"].get(label, [])))
            console.print(errors)
