"""水印任务的配置模型与样式配置文件读写。"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Tuple, Union

from image_watermarking.core.exceptions import InvalidConfigurationError
from image_watermarking.utils.colors import parse_color

LOGGER = logging.getLogger(__name__)

POSITIONS = ("bottom-right", "bottom-left", "top-right", "top-left")
MIN_ALLOWED_FONT_SIZE = 8
DEFAULT_STYLE_FILENAME = "watermark-config.json"
DEFAULT_RESUME_FILENAME = "watermarking-resume.json"
BACKUP_DIRNAME = ".backups"
DEFAULT_FONT_SIZE_RATIO = 0.05

FontSize = Union[str, int]


@dataclass(slots=True)
class ShadowStyle:
    """文字阴影配置。"""

    blur: int = 2
    color: str = "rgba(0, 0, 0, 0.5)"


@dataclass(slots=True)
class WatermarkStyle:
    """可由配置文件加载的水印样式。"""

    text: str = "P.F.O"
    position: str = "bottom-right"
    padding: int = 20
    font_size: FontSize = "5%"
    min_font_size: int = 24
    color: str = "rgba(255, 255, 255, 0.8)"
    shadow: ShadowStyle = field(default_factory=ShadowStyle)
    font_path: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "text": self.text,
            "position": self.position,
            "padding": self.padding,
            "fontSize": self.font_size,
            "minFontSize": self.min_font_size,
            "color": self.color,
            "shadow": {"blur": self.shadow.blur, "color": self.shadow.color},
        }
        if self.font_path is not None:
            data["fontPath"] = str(self.font_path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WatermarkStyle":
        default = cls()
        shadow_data = data.get("shadow") or {}
        font_path = data.get("fontPath")
        return cls(
            text=data.get("text", default.text),
            position=data.get("position", default.position),
            padding=data.get("padding", default.padding),
            font_size=data.get("fontSize", default.font_size),
            min_font_size=data.get("minFontSize", default.min_font_size),
            color=data.get("color", default.color),
            shadow=ShadowStyle(
                blur=shadow_data.get("blur", default.shadow.blur),
                color=shadow_data.get("color", default.shadow.color),
            ),
            font_path=Path(font_path) if font_path else None,
        )


@dataclass(slots=True)
class ConsistencyConfig:
    """跨图片一致性策略：所有尺寸都以比例表达。"""

    padding: int = 20
    padding_ratio: float = 0.02
    font_size_ratio: float = DEFAULT_FONT_SIZE_RATIO
    fixed_font_size: Optional[int] = None
    min_font_size: int = 24
    max_font_size: int = 72
    char_width_ratio: float = 2.8
    char_height_ratio: float = 1.2
    tolerance: float = 0.1
    position: str = "bottom-right"
    base_color: str = "rgba(255, 255, 255, 0.8)"
    base_shadow_blur: int = 2
    base_shadow_color: str = "rgba(0, 0, 0, 0.5)"
    base_shadow_offset: Tuple[int, int] = (2, 2)
    reference_area: int = 1920 * 1080

    @classmethod
    def from_style(cls, style: WatermarkStyle, **overrides: Any) -> "ConsistencyConfig":
        """由水印样式派生一致性策略，比例类参数保持默认。"""

        ratio, fixed = parse_font_size(style.font_size)
        values: dict[str, Any] = {
            "padding": style.padding,
            "font_size_ratio": ratio if ratio is not None else DEFAULT_FONT_SIZE_RATIO,
            "fixed_font_size": fixed,
            "min_font_size": style.min_font_size,
            "position": style.position,
            "base_color": style.color,
            "base_shadow_blur": style.shadow.blur,
            "base_shadow_color": style.shadow.color,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class DetectionConfig:
    """主水印检测器参数（右下角亮像素比例）。"""

    corner_ratio: float = 0.2
    brightness_threshold: int = 200
    min_ratio: float = 0.05
    max_ratio: float = 0.3
    detected_confidence: float = 0.8
    absent_confidence: float = 0.2
    text_variants: Tuple[str, ...] = ("P.F.O", "P F O", "PFO")

    @classmethod
    def for_text(cls, text: str, **overrides: Any) -> "DetectionConfig":
        """按水印文字生成 SVG 检测用的写法变体。"""

        return cls(text_variants=text_variants(text), **overrides)


@dataclass(slots=True)
class DuplicateDetectionConfig:
    """重复水印检测参数，独立于主检测器调整。"""

    corner_ratio: float = 0.2
    brightness_threshold: int = 200
    min_ratio: float = 0.05
    max_ratio: float = 0.3
    min_corners: int = 2


@dataclass(slots=True)
class ProcessingOptions:
    """编排器运行选项。"""

    continue_on_error: bool = True
    max_retries: int = 3
    batch_size: int = 10
    parallel: bool = False
    max_concurrency: int = 4
    dry_run: bool = False
    verbose: bool = False
    resume_file: Optional[Path] = None
    checkpoint_interval: int = 5
    retry_base_delay: float = 1.0
    allow_unprotected: bool = False
    backup_keep: int = 5
    report_dir: Path = field(default_factory=Path.cwd)
    min_free_space_mb: int = 100


@dataclass(slots=True)
class JobConfig:
    """单次水印任务的配置集合。"""

    root: Path
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    style: WatermarkStyle = field(default_factory=WatermarkStyle)
    consistency: Optional[ConsistencyConfig] = None
    detection: Optional[DetectionConfig] = None
    duplicate_detection: DuplicateDetectionConfig = field(default_factory=DuplicateDetectionConfig)

    def __post_init__(self) -> None:
        if self.consistency is None:
            self.consistency = ConsistencyConfig.from_style(self.style)
        if self.detection is None:
            self.detection = DetectionConfig.for_text(self.style.text)

    @property
    def backup_dir(self) -> Path:
        return self.root / BACKUP_DIRNAME


def text_variants(text: str) -> Tuple[str, ...]:
    """原文、以空格分隔的写法、去掉标点后连写的写法，去重后保持顺序。"""

    words = re.findall(r"\w+", text)
    candidates = [text.strip(), " ".join(words), "".join(words)]
    return tuple(dict.fromkeys(item for item in candidates if item))


def parse_font_size(value: FontSize) -> tuple[Optional[float], Optional[int]]:
    """解析字号配置，返回 (宽度比例, 固定像素) 二者之一。"""

    if isinstance(value, bool):
        raise InvalidConfigurationError(f"无法解析字号: {value!r}")
    if isinstance(value, (int, float)):
        return None, int(value)
    text = str(value).strip()
    try:
        if text.endswith("%"):
            return float(text[:-1]) / 100.0, None
        if text.endswith("px"):
            text = text[:-2]
        return None, int(float(text))
    except ValueError as exc:
        raise InvalidConfigurationError(f"无法解析字号: {value!r}") from exc


def validate_style(style: WatermarkStyle) -> list[str]:
    """校验水印样式，返回错误描述列表（为空表示合法）。"""

    errors: list[str] = []
    if not isinstance(style.text, str) or not style.text.strip():
        errors.append("水印文本不能为空")
    if style.position not in POSITIONS:
        errors.append(f"水印位置必须为 {', '.join(POSITIONS)} 之一")
    if not isinstance(style.padding, int) or style.padding < 0:
        errors.append("边距必须为非负整数")
    if not isinstance(style.min_font_size, int) or style.min_font_size < MIN_ALLOWED_FONT_SIZE:
        errors.append(f"最小字号不能小于 {MIN_ALLOWED_FONT_SIZE}")
    try:
        ratio, fixed = parse_font_size(style.font_size)
        if (ratio is not None and ratio <= 0) or (fixed is not None and fixed <= 0):
            errors.append("字号必须大于 0")
    except InvalidConfigurationError as exc:
        errors.append(str(exc))
    for label, color in (("文字颜色", style.color), ("阴影颜色", style.shadow.color)):
        try:
            parse_color(color)
        except InvalidConfigurationError as exc:
            errors.append(f"{label}不合法: {exc}")
    if not isinstance(style.shadow.blur, int) or style.shadow.blur < 0:
        errors.append("阴影模糊半径必须为非负整数")
    return errors


def ensure_valid_style(style: WatermarkStyle) -> WatermarkStyle:
    errors = validate_style(style)
    if errors:
        raise InvalidConfigurationError("; ".join(errors))
    return style


def load_style_config(path: Optional[Path]) -> WatermarkStyle:
    """从 JSON 文件加载水印样式，加载失败时回退到默认样式。"""

    if path is None or not path.exists():
        if path is not None:
            LOGGER.info("未找到水印配置文件 %s，使用默认样式", path)
        return WatermarkStyle()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise InvalidConfigurationError("配置文件顶层必须是对象")
        return ensure_valid_style(WatermarkStyle.from_dict(data))
    except (OSError, ValueError, TypeError, AttributeError, InvalidConfigurationError) as exc:
        LOGGER.warning("加载水印配置失败 %s：%s，使用默认样式", path, exc)
        return WatermarkStyle()


def save_style_config(style: WatermarkStyle, path: Path) -> Path:
    """将水印样式写入 JSON 文件。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(style.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path
