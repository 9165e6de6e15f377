"""错误分类、恢复策略与重试计数。"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from PIL import UnidentifiedImageError

from image_watermarking.core.backup import BackupManager
from image_watermarking.core.exceptions import (
    ErrorCategory,
    RestoreError,
    WatermarkingError,
    category_from_os_error,
)
from image_watermarking.processing.image_loader import format_from_extension, read_header, sniff_format

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]

# 外部错误只能依靠消息文本兜底分类，按顺序匹配
MESSAGE_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.MEMORY, ("memory", "heap", "cannot allocate")),
    (ErrorCategory.PERMISSION, ("permission", "access denied", "eacces", "eperm", "read-only")),
    (ErrorCategory.STORAGE, ("no space", "disk full", "enospc", "disk", "quota")),
    (ErrorCategory.NETWORK, ("network", "timeout", "timed out", "etimedout", "econnrefused")),
    (ErrorCategory.FORMAT, ("unsupported", "format", "invalid", "unknown file")),
    (ErrorCategory.CORRUPTION, ("corrupt", "malformed", "truncated", "broken data", "cannot identify")),
)

TROUBLESHOOTING: dict[ErrorCategory, dict[str, list[str]]] = {
    ErrorCategory.MEMORY: {
        "immediate": ["关闭其他占用内存的程序", "减小批次大小后重试", "重新启动水印任务"],
        "preventive": ["单独处理超大图片", "处理期间监控内存占用"],
        "escalation": ["联系管理员提高内存配额", "改用内存更大的机器运行"],
    },
    ErrorCategory.PERMISSION: {
        "immediate": ["检查文件与目录权限", "确认文件未被其他进程锁定"],
        "preventive": ["处理前统一设置文件权限", "使用具备写权限的账户运行"],
        "escalation": ["联系管理员调整权限"],
    },
    ErrorCategory.STORAGE: {
        "immediate": ["释放磁盘空间", "清理临时文件", "检查备份目录占用"],
        "preventive": ["处理前检查剩余空间", "定期清理旧的备份代"],
        "escalation": ["扩容存储", "换到空间更大的磁盘运行"],
    },
    ErrorCategory.CORRUPTION: {
        "immediate": ["用图片查看器确认文件能否打开", "从源头重新导出该图片"],
        "preventive": ["批处理前先执行 validate 命令"],
        "escalation": ["替换损坏的原始素材"],
    },
    ErrorCategory.FORMAT: {
        "immediate": ["确认扩展名与真实编码一致", "转换为 JPEG/PNG/WebP/SVG 之一"],
        "preventive": ["只提交受支持格式的图片"],
        "escalation": ["评估是否需要支持新的格式"],
    },
}
DEFAULT_TROUBLESHOOTING = {
    "immediate": ["查看具体错误信息", "确认图片文件可以访问", "尝试单独处理该文件"],
    "preventive": ["批处理前先校验图片", "保留原始文件的备份"],
    "escalation": ["附上完整错误信息反馈问题", "对问题文件进行人工处理"],
}


class RecoveryAction(str, Enum):
    RETRY_AFTER_DELAY = "retry_after_delay"
    SKIP_UNSUPPORTED = "skip_unsupported"
    RESTORE_AND_SKIP = "restore_and_skip"
    GIVE_UP = "give_up"
    SKIP = "skip"


class SystemAction(str, Enum):
    CONTINUE = "continue"
    REDUCE_BATCH_SIZE = "reduce_batch_size"
    ABORT = "abort"


@dataclass(slots=True)
class RecoveryResult:
    action: RecoveryAction
    category: ErrorCategory
    attempt: int
    restored: bool
    message: str
    delay: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is RecoveryAction.RETRY_AFTER_DELAY


@dataclass(slots=True)
class SystemErrorResult:
    can_continue: bool
    action: SystemAction
    category: ErrorCategory
    message: str


@dataclass(slots=True)
class CorruptionResult:
    recovered: bool
    action: RecoveryAction
    message: str
    detected_format: Optional[str] = None
    expected_format: Optional[str] = None


class RecoveryLedger:
    """每个文件的失败次数，成功后清零，进程内有效。"""

    def __init__(self) -> None:
        self._attempts: dict[Path, int] = {}
        self._lock = threading.Lock()

    def increment(self, path: Path) -> int:
        with self._lock:
            count = self._attempts.get(path, 0) + 1
            self._attempts[path] = count
            return count

    def get(self, path: Path) -> int:
        with self._lock:
            return self._attempts.get(path, 0)

    def clear(self, path: Path) -> None:
        with self._lock:
            self._attempts.pop(path, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)


def classify_error(error: BaseException) -> ErrorCategory:
    """优先使用异常自带的分类，其次按异常类型，最后按消息文本兜底。"""

    if isinstance(error, WatermarkingError) and error.category is not ErrorCategory.UNKNOWN:
        return error.category
    if isinstance(error, MemoryError):
        return ErrorCategory.MEMORY
    if isinstance(error, OSError):
        category = category_from_os_error(error)
        if category is not None:
            return category
    if isinstance(error, UnidentifiedImageError):
        return ErrorCategory.CORRUPTION

    message = f"{type(error).__name__} {error}".lower()
    for category, needles in MESSAGE_PATTERNS:
        if any(needle in message for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def troubleshooting_steps(category: ErrorCategory) -> dict[str, list[str]]:
    steps = TROUBLESHOOTING.get(category, DEFAULT_TROUBLESHOOTING)
    return {key: list(values) for key, values in steps.items()}


class ErrorHandler:
    """把失败转换为恢复动作；计数只记在 RecoveryLedger 中，结果计数由报告负责。"""

    def __init__(
        self,
        backup_manager: Optional[BackupManager] = None,
        ledger: Optional[RecoveryLedger] = None,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        min_free_space_mb: int = 100,
        disk_root: Optional[Path] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.backup_manager = backup_manager
        self.ledger = ledger if ledger is not None else RecoveryLedger()
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.min_free_space_mb = min_free_space_mb
        self.disk_root = disk_root or Path.cwd()
        self.event_sink = event_sink

    def _emit(self, event: str, **details: Any) -> None:
        if self.event_sink is not None:
            self.event_sink(event, details)

    def retry_delay(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** max(0, attempt - 1))

    def handle_processing_failure(
        self, path: Path, error: BaseException, backup_path: Optional[Path] = None
    ) -> RecoveryResult:
        """单文件失败：先尝试从备份恢复，再按分类决定重试或跳过。"""

        category = classify_error(error)
        attempt = self.ledger.increment(path)
        restored = self._try_restore(path, backup_path)

        if attempt >= self.max_retries:
            action = RecoveryAction.GIVE_UP
            message = f"已失败 {attempt} 次，放弃处理: {error}"
        elif category in {ErrorCategory.MEMORY, ErrorCategory.NETWORK}:
            action = RecoveryAction.RETRY_AFTER_DELAY
            message = f"{category.value} 错误，稍后重试: {error}"
        elif category is ErrorCategory.FORMAT:
            action = RecoveryAction.SKIP_UNSUPPORTED
            message = f"格式不受支持，跳过: {error}"
        else:
            action = RecoveryAction.RESTORE_AND_SKIP
            message = f"{category.value} 错误，已恢复并跳过: {error}" if restored else f"{category.value} 错误，跳过: {error}"

        delay = self.retry_delay(attempt) if action is RecoveryAction.RETRY_AFTER_DELAY else 0.0
        LOGGER.warning(
            "处理失败 %s [分类=%s 第 %d 次 备份=%s 动作=%s]：%s",
            path,
            category.value,
            attempt,
            "有" if restored or backup_path else "无",
            action.value,
            error,
        )
        self._emit(
            "processing_failure",
            path=str(path),
            category=category.value,
            attempt=attempt,
            action=action.value,
            restored=restored,
            message=str(error),
        )
        return RecoveryResult(action=action, category=category, attempt=attempt, restored=restored, message=message, delay=delay)

    def _try_restore(self, path: Path, backup_path: Optional[Path]) -> bool:
        if self.backup_manager is None:
            return False
        if backup_path is None and self.backup_manager.get_backup_path(path) is None:
            return False
        try:
            self.backup_manager.restore_from_backup(path, backup_path)
        except RestoreError as exc:
            LOGGER.error("恢复备份失败 %s：%s", path, exc)
            self._emit("restore_failed", path=str(path), message=str(exc))
            return False
        return True

    def clear_recovery_attempts(self, path: Path) -> None:
        self.ledger.clear(path)

    def free_space_mb(self) -> float:
        usage = shutil.disk_usage(self.disk_root)
        return usage.free / (1024 * 1024)

    def handle_system_error(self, error: BaseException, context: str) -> SystemErrorResult:
        """批次/进程级错误：内存不足缩小批次，空间不足视剩余空间决定，权限错误终止。"""

        category = classify_error(error)
        if category is ErrorCategory.MEMORY:
            result = SystemErrorResult(True, SystemAction.REDUCE_BATCH_SIZE, category, f"{context}: 内存不足，缩小批次后继续")
        elif category is ErrorCategory.STORAGE:
            try:
                free_mb = self.free_space_mb()
            except OSError as exc:
                LOGGER.error("无法检查磁盘空间：%s", exc)
                free_mb = 0.0
            if free_mb >= self.min_free_space_mb:
                result = SystemErrorResult(True, SystemAction.CONTINUE, category, f"{context}: 存储错误，剩余 {free_mb:.0f}MB，继续")
            else:
                result = SystemErrorResult(False, SystemAction.ABORT, category, f"{context}: 磁盘空间不足 ({free_mb:.0f}MB)")
        elif category is ErrorCategory.PERMISSION:
            result = SystemErrorResult(False, SystemAction.ABORT, category, f"{context}: 权限不足: {error}")
        else:
            result = SystemErrorResult(True, SystemAction.CONTINUE, category, f"{context}: {error}")

        log = LOGGER.warning if result.can_continue else LOGGER.error
        log("系统错误 [%s/%s]：%s", category.value, result.action.value, result.message)
        self._emit("system_error", context=context, category=category.value, action=result.action.value, message=str(error))
        return result

    def handle_corrupted_image(self, path: Path, error: Optional[BaseException] = None) -> CorruptionResult:
        """通过文件头魔数区分真正损坏与扩展名错误。"""

        expected = format_from_extension(path)
        try:
            detected = sniff_format(read_header(path))
        except OSError as exc:
            detected = None
            LOGGER.debug("读取文件头失败 %s：%s", path, exc)

        if detected is None:
            message = "无法识别文件头，文件已损坏"
        elif detected != expected:
            message = f"文件实际格式为 {detected}，与扩展名 ({expected}) 不符"
        else:
            message = f"文件头为 {detected}，但内容无法解码（可能被截断）"

        LOGGER.warning("损坏图片 %s：%s", path, message)
        self._emit(
            "corrupted_image",
            path=str(path),
            detected=detected,
            expected=expected,
            message=str(error) if error else message,
        )
        return CorruptionResult(
            recovered=False,
            action=RecoveryAction.SKIP,
            message=message,
            detected_format=detected,
            expected_format=expected,
        )

    def generate_detailed_error_report(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        category = classify_error(error)
        return {
            "timestamp": datetime.now().isoformat(),
            "category": category.value,
            "error_type": type(error).__name__,
            "message": str(error),
            "context": dict(context or {}),
            "troubleshooting": troubleshooting_steps(category),
        }
