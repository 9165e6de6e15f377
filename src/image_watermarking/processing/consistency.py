"""跨图片一致性策略：按图片尺寸计算水印几何并检测批次漂移。"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from image_watermarking.core.config import ConsistencyConfig
from image_watermarking.core.models import ImageMetadata, PreservationResult

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class WatermarkDimensions:
    font_size: int
    width: int
    height: int
    text_width: float
    text_height: float
    font_size_ratio: float


@dataclass(slots=True)
class WatermarkPosition:
    left: int
    top: int
    padding: int
    padding_ratio: float
    corner: str = "bottom-right"


@dataclass(slots=True)
class BaseStyling:
    color: str
    shadow_color: str
    shadow_blur: int
    shadow_offset: tuple[int, int]
    scale_factor: float


@dataclass(slots=True)
class ConsistentConfig:
    """单张图片实际采用的水印几何与样式比例。"""

    path: Path
    dimensions: WatermarkDimensions
    position: WatermarkPosition
    styling: BaseStyling
    image_metadata: ImageMetadata
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "font_size": self.dimensions.font_size,
            "font_size_ratio": round(self.dimensions.font_size_ratio, 6),
            "box": [self.dimensions.width, self.dimensions.height],
            "position": [self.position.left, self.position.top],
            "padding": self.position.padding,
            "padding_ratio": round(self.position.padding_ratio, 6),
            "scale_factor": round(self.styling.scale_factor, 6),
            "shadow_blur": self.styling.shadow_blur,
            "image": [self.image_metadata.width, self.image_metadata.height],
            "format": self.image_metadata.format,
        }


@dataclass(slots=True)
class ConsistencyReport:
    is_consistent: bool
    inconsistencies: list[str]
    statistics: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_consistent": self.is_consistent,
            "inconsistencies": list(self.inconsistencies),
            "statistics": dict(self.statistics),
        }


class ConsistencyRegistry:
    """按路径保存已应用的配置，由编排器持有。"""

    def __init__(self) -> None:
        self._entries: dict[Path, ConsistentConfig] = {}
        self._lock = threading.Lock()

    def record(self, config: ConsistentConfig) -> None:
        with self._lock:
            self._entries[config.path] = config

    def get(self, path: Path) -> Optional[ConsistentConfig]:
        with self._lock:
            return self._entries.get(path)

    def values(self) -> list[ConsistentConfig]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ProcessingConsistency:
    """计算确定性的水印几何，并在批次结束后比较比例漂移。"""

    def __init__(self, config: Optional[ConsistencyConfig] = None, registry: Optional[ConsistencyRegistry] = None) -> None:
        self.config = config or ConsistencyConfig()
        self.registry = registry if registry is not None else ConsistencyRegistry()

    def calculate_dimensions(self, width: int, height: int) -> WatermarkDimensions:
        cfg = self.config
        if cfg.fixed_font_size is not None:
            font_size = cfg.fixed_font_size
        else:
            font_size = math.floor(width * cfg.font_size_ratio)
        font_size = max(cfg.min_font_size, min(font_size, cfg.max_font_size))

        text_width = font_size * cfg.char_width_ratio
        text_height = font_size * cfg.char_height_ratio
        return WatermarkDimensions(
            font_size=font_size,
            width=math.ceil(text_width + font_size * 0.4),
            height=math.ceil(text_height + font_size * 0.3),
            text_width=text_width,
            text_height=text_height,
            font_size_ratio=font_size / width if width else 0.0,
        )

    def calculate_position(self, width: int, height: int, dimensions: WatermarkDimensions) -> WatermarkPosition:
        cfg = self.config
        shorter = min(width, height)
        padding = max(cfg.padding, math.floor(shorter * cfg.padding_ratio))

        if cfg.position.endswith("right"):
            left = width - dimensions.width - padding
        else:
            left = padding
        if cfg.position.startswith("bottom"):
            top = height - dimensions.height - padding
        else:
            top = padding

        return WatermarkPosition(
            left=max(0, left),
            top=max(0, top),
            padding=padding,
            padding_ratio=padding / shorter if shorter else 0.0,
            corner=cfg.position,
        )

    def calculate_styling(self, width: int, height: int) -> BaseStyling:
        cfg = self.config
        scale_factor = math.sqrt(width * height / cfg.reference_area)
        offset_x, offset_y = cfg.base_shadow_offset
        return BaseStyling(
            color=cfg.base_color,
            shadow_color=cfg.base_shadow_color,
            shadow_blur=max(1, round(cfg.base_shadow_blur * scale_factor)),
            shadow_offset=(max(1, round(offset_x * scale_factor)), max(1, round(offset_y * scale_factor))),
            scale_factor=scale_factor,
        )

    def calculate_consistent_config(self, metadata: ImageMetadata, path: Path) -> ConsistentConfig:
        """计算并登记该图片的水印配置。"""

        dimensions = self.calculate_dimensions(metadata.width, metadata.height)
        config = ConsistentConfig(
            path=path,
            dimensions=dimensions,
            position=self.calculate_position(metadata.width, metadata.height, dimensions),
            styling=self.calculate_styling(metadata.width, metadata.height),
            image_metadata=metadata,
        )
        self.registry.record(config)
        LOGGER.debug(
            "一致性配置 %s：字号 %d (%.4f)，边距 %d (%.4f)",
            path.name,
            dimensions.font_size,
            dimensions.font_size_ratio,
            config.position.padding,
            config.position.padding_ratio,
        )
        return config

    def validate_processing_consistency(self, paths: Iterable[Path]) -> ConsistencyReport:
        """比较每张图片的比例与批次均值，偏差超过容差即记为不一致。"""

        requested = list(paths)
        configs: list[ConsistentConfig] = []
        path_issues = 0
        for path in requested:
            config = self.registry.get(path)
            if config is None:
                path_issues += 1
                continue
            if config.path != path:
                path_issues += 1
            configs.append(config)

        statistics: dict[str, Any] = {
            "total_images": len(requested),
            "position_variations": 0,
            "sizing_variations": 0,
            "styling_variations": 0,
            "path_issues": path_issues,
        }
        if len(configs) < 2:
            return ConsistencyReport(is_consistent=True, inconsistencies=[], statistics=statistics)

        tolerance = self.config.tolerance
        inconsistencies: list[str] = []
        checks = (
            ("position_variations", "边距比例", lambda c: c.position.padding_ratio),
            ("sizing_variations", "字号比例", lambda c: c.dimensions.font_size_ratio),
            ("styling_variations", "样式缩放系数", lambda c: c.styling.scale_factor),
        )
        for key, label, getter in checks:
            values = [getter(config) for config in configs]
            average = sum(values) / len(values)
            for config, value in zip(configs, values):
                if abs(value - average) > tolerance:
                    statistics[key] += 1
                    inconsistencies.append(
                        f"{config.path.name}: {label} {value:.4f} 偏离批次均值 {average:.4f}"
                    )

        if path_issues:
            inconsistencies.append(f"{path_issues} 张图片缺少一致性记录")

        is_consistent = not inconsistencies
        if not is_consistent:
            LOGGER.warning("一致性检查发现 %d 处偏差", len(inconsistencies))
        return ConsistencyReport(is_consistent=is_consistent, inconsistencies=inconsistencies, statistics=statistics)

    def validate_image_preservation(self, metadata: Optional[ImageMetadata], original: ImageMetadata) -> PreservationResult:
        """比较处理前后的宽高、通道数与格式（SVG 栅格化不比较格式）。"""

        if metadata is None:
            return PreservationResult(is_preserved=False, issues=["处理后无法读取图片元数据"], original=original)

        issues: list[str] = []
        if metadata.width != original.width:
            issues.append(f"宽度变化: {original.width} -> {metadata.width}")
        if metadata.height != original.height:
            issues.append(f"高度变化: {original.height} -> {metadata.height}")
        if metadata.channels != original.channels:
            issues.append(f"通道数变化: {original.channels} -> {metadata.channels}")
        if original.format != "svg" and metadata.format != original.format:
            issues.append(f"格式变化: {original.format} -> {metadata.format}")
        return PreservationResult(is_preserved=not issues, issues=issues, original=original, processed=metadata)

    def get_processing_statistics(self) -> dict[str, Any]:
        configs = self.registry.values()
        if not configs:
            return {"total_processed": 0}

        font_sizes = [c.dimensions.font_size for c in configs]
        paddings = [c.position.padding for c in configs]
        widths = [c.image_metadata.width for c in configs]
        heights = [c.image_metadata.height for c in configs]
        formats = Counter(c.image_metadata.format for c in configs)
        return {
            "total_processed": len(configs),
            "font_size_range": {"min": min(font_sizes), "max": max(font_sizes), "avg": sum(font_sizes) / len(font_sizes)},
            "padding_range": {"min": min(paddings), "max": max(paddings), "avg": sum(paddings) / len(paddings)},
            "dimension_ranges": {
                "width": {"min": min(widths), "max": max(widths)},
                "height": {"min": min(heights), "max": max(heights)},
            },
            "format_distribution": dict(formats),
        }
