"""核心数据模型定义。"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from image_watermarking.core.exceptions import ErrorCategory


@dataclass(frozen=True, slots=True)
class ImageRecord:
    """扫描阶段得到的图片信息，以绝对路径为身份标识。"""

    path: Path
    relative_path: str
    filename: str
    format: str
    size_bytes: int
    last_modified: datetime

    @property
    def project(self) -> str:
        parts = self.relative_path.split("/")
        if len(parts) > 2 and parts[0] == "projects":
            return parts[1]
        return parts[0] if len(parts) > 1 else "root"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "relative_path": self.relative_path,
            "filename": self.filename,
            "format": self.format,
            "size_bytes": self.size_bytes,
            "last_modified": self.last_modified.isoformat(),
        }


@dataclass(slots=True)
class ImageMetadata:
    """解码后得到的图片基础信息，作为保真比对的基线。"""

    width: int
    height: int
    format: str
    channels: int
    mode: str = ""
    has_alpha: bool = False

    @property
    def pixels(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ValidationResult:
    """单个文件的完整性校验结果。"""

    is_valid: bool
    error: Optional[str] = None
    metadata: Optional[ImageMetadata] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "error": self.error,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass(slots=True)
class WatermarkCheck:
    """水印存在性检测结果（启发式，非权威）。"""

    has_watermark: bool
    confidence: float
    error: Optional[str] = None
    detector: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ImageReference:
    """源码中对图片路径的一次引用。"""

    source_file: str
    line: int
    type: str
    original_reference: str
    resolved_path: Path

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_file": self.source_file,
            "line": self.line,
            "type": self.type,
            "original_reference": self.original_reference,
            "resolved_path": str(self.resolved_path),
        }


@dataclass(slots=True)
class PreservationResult:
    """处理前后元数据比对结果。"""

    is_preserved: bool
    issues: list[str] = field(default_factory=list)
    original: Optional[ImageMetadata] = None
    processed: Optional[ImageMetadata] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_preserved": self.is_preserved,
            "issues": list(self.issues),
            "original": self.original.to_dict() if self.original else None,
            "processed": self.processed.to_dict() if self.processed else None,
        }


@dataclass(slots=True)
class FormatInfo:
    """编码阶段的格式信息。"""

    source_format: str
    output_format: str
    rasterized: bool = False
    lossless: bool = False
    quality: Optional[int] = None


@dataclass(slots=True)
class ProcessingResult:
    """单张图片加水印后的结果。"""

    success: bool
    image_path: Path
    format_info: FormatInfo
    consistent_config: Any
    preservation: PreservationResult
    original_metadata: ImageMetadata
    processed_at: datetime = field(default_factory=datetime.now)
    duration: float = 0.0


@dataclass(slots=True)
class FileOutcome:
    """记录单个文件的最终结果（用于报告/日志）。"""

    path: Path
    status: str  # processed | skipped | error
    message: Optional[str] = None
    category: Optional[ErrorCategory] = None
    attempts: int = 0
    duration: float = 0.0
    backup_path: Optional[Path] = None
    result: Optional[ProcessingResult] = None
    metadata: Optional[ImageMetadata] = None
    events: list[str] = field(default_factory=list)

    @property
    def final_path(self) -> Path:
        if self.result is not None:
            return self.result.image_path
        return self.path
