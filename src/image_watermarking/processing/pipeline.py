"""处理流水线：扫描、分批执行加水印、校验并输出报告。"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from image_watermarking.core.backup import BackupManager, BackupRegistry
from image_watermarking.core.config import DEFAULT_RESUME_FILENAME, JobConfig, ensure_valid_style
from image_watermarking.core.exceptions import ErrorCategory, ProcessingAborted
from image_watermarking.core.final_report import FinalReportGenerator
from image_watermarking.core.models import FileOutcome, ImageRecord
from image_watermarking.core.progress import (
    CancellationToken,
    ProgressTracker,
    ProgressUpdate,
    ResumeSnapshot,
    clear_resume_snapshot,
    load_resume_snapshot,
    save_resume_snapshot,
)
from image_watermarking.core.report import ReportGenerator
from image_watermarking.core.scanner import build_image_record, find_all_images, get_image_statistics
from image_watermarking.processing.consistency import ConsistencyRegistry, ProcessingConsistency
from image_watermarking.processing.error_handler import ErrorHandler, RecoveryLedger, SystemAction
from image_watermarking.processing.final_validation import FinalValidator
from image_watermarking.processing.references import ReferenceValidator
from image_watermarking.processing.validation import ValidationEngine
from image_watermarking.processing.watermark import WatermarkProcessor
from image_watermarking.processing.worker import WorkerContext, plan_image, process_image

LOGGER = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[ProgressUpdate], None]]


@dataclass(slots=True)
class RunState:
    """一次运行期间的可变状态，由编排器独占。"""

    backups: BackupRegistry = field(default_factory=BackupRegistry)
    ledger: RecoveryLedger = field(default_factory=RecoveryLedger)
    consistency: ConsistencyRegistry = field(default_factory=ConsistencyRegistry)
    completed: set[Path] = field(default_factory=set)
    outcomes: list[FileOutcome] = field(default_factory=list)


@dataclass(slots=True)
class RunSummary:
    status: str  # completed | interrupted | dry_run
    outcomes: list[FileOutcome] = field(default_factory=list)
    report: Optional[dict[str, Any]] = None
    final_report: Optional[dict[str, Any]] = None
    plan: Optional[dict[str, Any]] = None
    report_files: list[Path] = field(default_factory=list)
    resume_file: Optional[Path] = None

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


class WatermarkingSystem:
    """批处理编排器：发现 → (续跑) → 分批处理 → 整体校验 → 报告。"""

    def __init__(
        self,
        config: JobConfig,
        *,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: ProgressCallback = None,
    ) -> None:
        ensure_valid_style(config.style)
        self.config = config
        self.options = config.options
        self.root = config.root.resolve()
        self.cancel_token = cancel_token or CancellationToken()
        self.progress_callback = progress_callback
        self.resume_path = self.options.resume_file or self.options.report_dir / DEFAULT_RESUME_FILENAME

        self.state = RunState()
        self.tracker = ProgressTracker()
        self.report = ReportGenerator(self.options.report_dir)
        self.final_reporter = FinalReportGenerator(self.options.report_dir)
        self.backup_manager = BackupManager(config.backup_dir, self.root, self.state.backups)
        self.validation_engine = ValidationEngine(config.detection, config.duplicate_detection)
        self.consistency = ProcessingConsistency(config.consistency, self.state.consistency)
        self.processor = WatermarkProcessor(config.style, self.consistency, self.validation_engine)
        self.error_handler = ErrorHandler(
            self.backup_manager,
            self.state.ledger,
            max_retries=self.options.max_retries,
            retry_base_delay=self.options.retry_base_delay,
            min_free_space_mb=self.options.min_free_space_mb,
            disk_root=self.root,
            event_sink=self.report.log_event,
        )
        self.reference_validator = ReferenceValidator()
        self.final_validator = FinalValidator(self.validation_engine)
        self.worker_context = WorkerContext(
            validation_engine=self.validation_engine,
            processor=self.processor,
            backup_manager=self.backup_manager,
            error_handler=self.error_handler,
            allow_unprotected=self.options.allow_unprotected,
        )
        self._pending: list[ImageRecord] = []
        self._aborted_by: Optional[FileOutcome] = None

    # ------------------------------------------------------------------ 入口
    def run(self) -> RunSummary:
        LOGGER.info("开始水印处理：%s", self.root)
        self.report.start_timing()
        try:
            self._pending = self._prepare()
            if self.options.dry_run:
                return self._dry_run(self._pending)
            self.reference_validator.scan_code_files_for_image_references(self.root)
            self._process_all()
        except Exception as exc:
            if not self.options.dry_run:
                self._flush_after_failure(exc)
            raise

        if self.cancel_token.cancelled:
            return self._finish_interrupted()
        return self._finish()

    # ------------------------------------------------------------------ 准备
    def _prepare(self) -> list[ImageRecord]:
        snapshot = load_resume_snapshot(self.resume_path)
        if snapshot is not None and not self._snapshot_within_root(snapshot):
            snapshot = None
        if snapshot is None:
            records = find_all_images(self.root)
            self.tracker = ProgressTracker(total=len(records))
            self.report.set_total_images(len(records))
            self._emit(f"发现 {len(records)} 张图片")
            return records

        total = snapshot.current_index + len(snapshot.remaining_images)
        self.tracker = ProgressTracker(total=total, stats=snapshot.stats)
        self.report.set_total_images(total)
        self.report.restore_stats(snapshot.stats)
        LOGGER.info("从续跑快照继续：已完成 %d 张，剩余 %d 张", snapshot.current_index, len(snapshot.remaining_images))

        records: list[ImageRecord] = []
        for path in snapshot.remaining_images:
            try:
                records.append(build_image_record(path, self.root))
            except OSError as exc:
                LOGGER.warning("续跑列表中的文件已不可用 %s：%s", path, exc)
                self._complete(FileOutcome(path=path, status="skipped", message="续跑时文件已不存在"))
        return records

    def _snapshot_within_root(self, snapshot: ResumeSnapshot) -> bool:
        root = self.root.resolve()
        outside = [path for path in snapshot.remaining_images if not path.resolve().is_relative_to(root)]
        if outside:
            LOGGER.warning("续跑快照中有 %d 个路径不在 %s 下，忽略该快照并重新扫描", len(outside), root)
            return False
        return True

    def _dry_run(self, records: list[ImageRecord]) -> RunSummary:
        plan: dict[str, Any] = {
            "would_process": [],
            "would_skip": [],
            "invalid": [],
            "statistics": get_image_statistics(records),
        }
        for index, record in enumerate(records, start=1):
            if self.cancel_token.cancelled:
                break
            action = plan_image(record, self.validation_engine)
            if action.action == "process":
                plan["would_process"].append(str(action.path))
            elif action.action == "skip":
                plan["would_skip"].append({"path": str(action.path), "reason": action.reason})
            else:
                plan["invalid"].append({"path": str(action.path), "reason": action.reason})
            self._notify(ProgressUpdate(total=len(records), completed=index, message=f"检查 {record.filename}"))

        self.report.end_timing()
        LOGGER.info(
            "试运行：待处理 %d，跳过 %d，无效 %d",
            len(plan["would_process"]),
            len(plan["would_skip"]),
            len(plan["invalid"]),
        )
        self._notify(ProgressUpdate(total=len(records), completed=len(records), message="试运行完成", status="completed"))
        return RunSummary(status="dry_run", plan=plan)

    # ------------------------------------------------------------------ 分批
    def _should_stop(self) -> bool:
        return self.cancel_token.cancelled or self._aborted_by is not None

    def _process_all(self) -> None:
        pending = self._pending
        batch_size = max(1, self.options.batch_size)
        interval = max(1, self.options.checkpoint_interval)
        index = 0
        batch_number = 0

        while index < len(pending) and not self._should_stop():
            batch = pending[index : index + batch_size]
            batch_number += 1
            LOGGER.info("处理第 %d 批（%d 张）", batch_number, len(batch))
            try:
                if self.options.parallel:
                    self._run_parallel(batch)
                else:
                    self._run_sequential(batch)
            except Exception as exc:  # noqa: BLE001
                result = self.error_handler.handle_system_error(exc, f"batch_{batch_number}")
                if not result.can_continue:
                    raise ProcessingAborted(result.message, category=result.category) from exc
                for record in batch:
                    if record.path not in self.state.completed:
                        self._complete(
                            FileOutcome(path=record.path, status="error", message=str(exc), category=result.category),
                            record,
                        )
                if result.action is SystemAction.REDUCE_BATCH_SIZE and batch_size > 1:
                    batch_size = max(1, batch_size // 2)
                    LOGGER.warning("批次大小缩小为 %d", batch_size)
            index += len(batch)

            if batch_number % interval == 0 and index < len(pending) and not self._should_stop():
                save_resume_snapshot(self.tracker.snapshot(self._remaining()), self.resume_path)

        if self._aborted_by is not None:
            raise ProcessingAborted(
                f"遇到错误后停止处理：{self._aborted_by.path}（{self._aborted_by.message}）",
                category=self._aborted_by.category,
            )

    def _run_sequential(self, batch: list[ImageRecord]) -> None:
        for record in batch:
            if self._should_stop():
                return
            self._complete(process_image(record, self.worker_context), record)

    def _run_parallel(self, batch: list[ImageRecord]) -> None:
        """滑动窗口并发：任一任务完成即补入下一个，状态只在当前线程更新。"""

        limit = max(1, self.options.max_concurrency)
        queue: Iterator[ImageRecord] = iter(batch)
        in_flight: dict[Future[FileOutcome], ImageRecord] = {}

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="watermark") as executor:

            def fill() -> None:
                while len(in_flight) < limit and not self._should_stop():
                    record = next(queue, None)
                    if record is None:
                        return
                    in_flight[executor.submit(process_image, record, self.worker_context)] = record

            fill()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    record = in_flight.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as exc:  # noqa: BLE001
                        LOGGER.exception("任务执行异常：%s", exc)
                        outcome = FileOutcome(
                            path=record.path, status="error", message=str(exc), category=ErrorCategory.SYSTEM
                        )
                    self._complete(outcome, record)
                fill()

    def _complete(self, outcome: FileOutcome, record: Optional[ImageRecord] = None) -> None:
        self.state.completed.add(outcome.path)
        self.state.outcomes.append(outcome)
        self.tracker.record(outcome.status)
        self.report.record_outcome(outcome, record)
        if outcome.status == "error" and not self.options.continue_on_error and self._aborted_by is None:
            self._aborted_by = outcome
        self._emit(f"{outcome.status} {outcome.path.name}")

    def _remaining(self) -> list[Path]:
        return [record.path for record in self._pending if record.path not in self.state.completed]

    # ------------------------------------------------------------------ 收尾
    def _finish(self) -> RunSummary:
        processed = [outcome for outcome in self.state.outcomes if outcome.status == "processed"]
        processed_paths = [outcome.final_path for outcome in processed]

        consistency = self.consistency.validate_processing_consistency(processed_paths)
        self.report.add_consistency_results(
            {**consistency.to_dict(), "processing_statistics": self.consistency.get_processing_statistics()}
        )
        path_check = self.reference_validator.validate_path_consistency(
            [outcome.path for outcome in processed],
            [path for path in processed_paths if path.exists()],
        )
        reference_check = self.reference_validator.validate_processed_image_references(processed_paths, self.root)
        self.report.add_reference_validation(
            {
                "reference_validation": reference_check.to_dict(),
                "path_consistency": path_check.to_dict(),
                "summary": self.reference_validator.get_reference_summary(),
            }
        )
        validation = self.final_validator.perform_final_validation(
            processed_paths, consistency, path_check, reference_check
        )
        self.report.end_timing()

        files = self.report.export_all()
        report = self.report.generate_report()
        final = self.final_reporter.generate(report, validation)
        files.extend(self._export_final(final))

        cleanup = self.backup_manager.cleanup_backups(self.options.backup_keep)
        self.report.log_event("backups_cleaned", {"deleted": cleanup.deleted, "kept": cleanup.kept})
        clear_resume_snapshot(self.resume_path)

        LOGGER.info(
            "处理完成：处理 %d，跳过 %d，失败 %d",
            self.tracker.stats.processed,
            self.tracker.stats.skipped,
            self.tracker.stats.errors,
        )
        self._emit("处理完成", status="completed")
        return RunSummary(
            status="completed",
            outcomes=list(self.state.outcomes),
            report=report,
            final_report=final,
            report_files=files,
        )

    def _finish_interrupted(self) -> RunSummary:
        remaining = self._remaining()
        LOGGER.warning("处理被中断（%s），剩余 %d 张", self.cancel_token.reason, len(remaining))
        save_resume_snapshot(self.tracker.snapshot(remaining), self.resume_path)
        self.report.end_timing()
        self.report.log_event("interrupted", {"reason": self.cancel_token.reason, "remaining": len(remaining)})

        files = self.report.export_all()
        report = self.report.generate_report()
        final = self.final_reporter.generate(report, interrupted=True)
        files.extend(self._export_final(final))
        self._emit("已中断，可使用续跑快照继续", status="interrupted")
        return RunSummary(
            status="interrupted",
            outcomes=list(self.state.outcomes),
            report=report,
            final_report=final,
            report_files=files,
            resume_file=self.resume_path,
        )

    def _flush_after_failure(self, error: Exception) -> None:
        """致命错误时尽量写出错误报告与续跑快照，异常由调用方继续抛出。"""

        if not isinstance(error, ProcessingAborted):
            self.error_handler.handle_system_error(error, "main_execution")
        detail = self.error_handler.generate_detailed_error_report(error, {"root": str(self.root)})
        self.report.extra["fatal_error"] = detail
        self.report.log_event("fatal_error", detail)
        self.report.end_timing()

        if self._pending:
            try:
                save_resume_snapshot(self.tracker.snapshot(self._remaining()), self.resume_path)
            except OSError as exc:
                LOGGER.error("保存续跑快照失败：%s", exc)
        self.report.export_all(error=True)
        final = self.final_reporter.generate(self.report.generate_report())
        self._export_final(final, error=True)
        self._emit(f"处理失败：{error}", status="failed")

    def _export_final(self, final: dict[str, Any], *, error: bool = False) -> list[Path]:
        try:
            return self.final_reporter.export(final, error=error)
        except OSError as exc:
            LOGGER.error("写入最终报告失败：%s", exc)
            return []

    # ------------------------------------------------------------------ 进度
    def _emit(self, message: Optional[str] = None, status: str = "running") -> None:
        self._notify(self.tracker.update(message, status))

    def _notify(self, update: ProgressUpdate) -> None:
        if self.progress_callback is not None:
            self.progress_callback(update)


def validate_tree(config: JobConfig) -> dict[str, Any]:
    """只读检查整棵目录：完整性、已有水印与引用统计。"""

    root = config.root.resolve()
    engine = ValidationEngine(config.detection, config.duplicate_detection)
    records = find_all_images(root)
    batch = engine.validate_image_batch(record.path for record in records)

    watermarked: list[str] = []
    invalid: list[dict[str, Optional[str]]] = []
    for path, result in batch["results"].items():
        if not result.is_valid:
            invalid.append({"path": path, "reason": result.error})
        elif engine.check_watermark_exists(Path(path)).has_watermark:
            watermarked.append(path)

    references = ReferenceValidator()
    references.scan_code_files_for_image_references(root)
    return {
        "statistics": get_image_statistics(records),
        "valid": batch["valid"],
        "invalid": invalid,
        "watermarked": watermarked,
        "references": references.get_reference_summary(),
    }
