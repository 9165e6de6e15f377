"""单张图片的处理单元：校验、备份、加水印、复核。"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from image_watermarking.core.backup import BackupManager
from image_watermarking.core.exceptions import BackupError, ErrorCategory, RestoreError
from image_watermarking.core.models import FileOutcome, ImageRecord
from image_watermarking.processing.error_handler import ErrorHandler, RecoveryAction
from image_watermarking.processing.validation import ValidationEngine
from image_watermarking.processing.watermark import WatermarkProcessor

LOGGER = logging.getLogger(__name__)

SKIP_ALREADY_WATERMARKED = "已有水印"


@dataclass(slots=True)
class WorkerContext:
    """单文件处理所需的协作对象，由编排器创建并共享。"""

    validation_engine: ValidationEngine
    processor: WatermarkProcessor
    backup_manager: BackupManager
    error_handler: ErrorHandler
    allow_unprotected: bool = False


@dataclass(slots=True)
class PlannedAction:
    """试运行时单个文件的预期动作。"""

    path: Path
    action: str  # process | skip | invalid
    reason: Optional[str] = None


def plan_image(record: ImageRecord, engine: ValidationEngine) -> PlannedAction:
    """只读检查：校验文件并检测水印，不做任何写操作。"""

    validation = engine.validate_image(record.path)
    if not validation.is_valid:
        return PlannedAction(record.path, "invalid", validation.error)
    check = engine.check_watermark_exists(record.path)
    if check.has_watermark:
        return PlannedAction(record.path, "skip", SKIP_ALREADY_WATERMARKED)
    return PlannedAction(record.path, "process")


def process_image(record: ImageRecord, context: WorkerContext) -> FileOutcome:
    """处理单个文件，所有异常都在这里转换为 skipped/error 结果。"""

    started = time.perf_counter()
    path = record.path
    try:
        outcome = _process(path, context)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("处理 %s 时出现未预期的异常", path)
        outcome = FileOutcome(path=path, status="error", message=str(exc), category=ErrorCategory.SYSTEM)
    outcome.duration = time.perf_counter() - started
    return outcome


def _process(path: Path, context: WorkerContext) -> FileOutcome:
    engine = context.validation_engine
    handler = context.error_handler

    validation = engine.validate_image(path)
    if not validation.is_valid:
        corruption = handler.handle_corrupted_image(path)
        return FileOutcome(
            path=path,
            status="skipped",
            message=f"无效图片: {validation.error}（{corruption.message}）",
            category=ErrorCategory.CORRUPTION,
        )

    check = engine.check_watermark_exists(path)
    if check.error:
        LOGGER.warning("水印检测失败 %s：%s", path, check.error)
    if check.has_watermark:
        LOGGER.debug("跳过已有水印的图片 %s（%s，置信度 %.2f）", path, check.detector, check.confidence)
        return FileOutcome(path=path, status="skipped", message=SKIP_ALREADY_WATERMARKED, metadata=validation.metadata)

    backup_path: Optional[Path] = None
    try:
        backup_path = context.backup_manager.create_backup(path)
    except BackupError as exc:
        system = handler.handle_system_error(exc, "backup_creation")
        if not context.allow_unprotected:
            return FileOutcome(path=path, status="error", message=f"备份失败: {exc}", category=system.category)
        LOGGER.warning("备份失败，按配置在无备份的情况下继续处理 %s：%s", path, exc)

    attempts = 0
    while True:
        attempts += 1
        try:
            result = context.processor.apply_watermark(path)
            break
        except Exception as exc:  # noqa: BLE001
            recovery = handler.handle_processing_failure(path, exc, backup_path)
            if recovery.should_retry:
                LOGGER.info("%.1f 秒后重试 %s（第 %d 次）", recovery.delay, path, recovery.attempt)
                time.sleep(recovery.delay)
                continue
            status = "skipped" if recovery.action is RecoveryAction.SKIP_UNSUPPORTED else "error"
            return FileOutcome(
                path=path,
                status=status,
                message=recovery.message,
                category=recovery.category,
                attempts=attempts,
                backup_path=backup_path,
            )

    if not result.preservation.is_preserved:
        _restore(context, path, backup_path)
        return FileOutcome(
            path=path,
            status="error",
            message="图片保真校验失败: " + "; ".join(result.preservation.issues),
            category=ErrorCategory.PRESERVATION,
            attempts=attempts,
            backup_path=backup_path,
            result=result,
        )

    after = engine.check_watermark_exists(path)
    if not after.has_watermark:
        _restore(context, path, backup_path)
        return FileOutcome(
            path=path,
            status="error",
            message="处理后未检测到水印",
            category=ErrorCategory.FUNCTIONALITY,
            attempts=attempts,
            backup_path=backup_path,
            result=result,
        )

    handler.clear_recovery_attempts(path)
    return FileOutcome(
        path=path,
        status="processed",
        attempts=attempts,
        backup_path=backup_path,
        result=result,
        metadata=result.original_metadata,
    )


def _restore(context: WorkerContext, path: Path, backup_path: Optional[Path]) -> None:
    if backup_path is None:
        LOGGER.error("没有备份，无法恢复 %s", path)
        return
    try:
        context.backup_manager.restore_from_backup(path, backup_path)
    except RestoreError as exc:
        LOGGER.error("恢复备份失败 %s：%s", path, exc)
