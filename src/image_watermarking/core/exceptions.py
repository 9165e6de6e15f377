"""项目内使用的自定义异常定义。"""

from __future__ import annotations

import errno
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """错误分类标签，决定恢复策略与报告归类。"""

    MEMORY = "memory"
    PERMISSION = "permission"
    STORAGE = "storage"
    NETWORK = "network"
    FORMAT = "format"
    CORRUPTION = "corruption"
    PRESERVATION = "preservation"
    FUNCTIONALITY = "functionality"
    CONSISTENCY = "consistency"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class WatermarkingError(Exception):
    """基础异常类型，可携带明确的错误分类。"""

    default_category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str = "", *, category: Optional[ErrorCategory] = None) -> None:
        super().__init__(message)
        self.category = category or self.default_category


class InvalidConfigurationError(WatermarkingError):
    """配置不合法时抛出。"""

    default_category = ErrorCategory.SYSTEM


class ProcessingAborted(WatermarkingError):
    """任务被用户中断或因错误策略提前终止时抛出。"""

    default_category = ErrorCategory.SYSTEM


class ImageLoadingError(WatermarkingError):
    """图片无法解码。"""

    default_category = ErrorCategory.CORRUPTION


class UnsupportedFormatError(WatermarkingError):
    """扩展名或编码格式不受支持。"""

    default_category = ErrorCategory.FORMAT


class BackupError(WatermarkingError):
    """备份创建或校验失败。"""

    default_category = ErrorCategory.STORAGE


class RestoreError(WatermarkingError):
    """从备份恢复失败。"""

    default_category = ErrorCategory.STORAGE


class PreservationError(WatermarkingError):
    """处理后的图片尺寸、格式或通道数与原图不一致。"""

    default_category = ErrorCategory.PRESERVATION


class ImageWriteError(WatermarkingError):
    """写回图片文件失败。"""

    default_category = ErrorCategory.STORAGE


ERRNO_CATEGORIES = {
    errno.EACCES: ErrorCategory.PERMISSION,
    errno.EPERM: ErrorCategory.PERMISSION,
    errno.EROFS: ErrorCategory.PERMISSION,
    errno.ENOSPC: ErrorCategory.STORAGE,
    errno.ENOMEM: ErrorCategory.MEMORY,
    errno.ETIMEDOUT: ErrorCategory.NETWORK,
    errno.ECONNREFUSED: ErrorCategory.NETWORK,
    errno.ECONNRESET: ErrorCategory.NETWORK,
}


def category_from_os_error(exc: OSError) -> Optional[ErrorCategory]:
    """按 errno 推断文件系统错误的分类，无法判断时返回 None。"""

    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMISSION
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK
    return ERRNO_CATEGORIES.get(exc.errno) if exc.errno is not None else None
