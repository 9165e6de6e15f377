"""自适应样式：分析水印落点的背景亮度与对比度并调整文字样式。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from image_watermarking.processing.consistency import BaseStyling, WatermarkDimensions, WatermarkPosition
from image_watermarking.utils.colors import RGBA, parse_color

LOGGER = logging.getLogger(__name__)

DARK_THRESHOLD = 0.5
LIGHT_THRESHOLD = 0.7
LOW_CONTRAST_THRESHOLD = 0.1
HIGH_CONTRAST_THRESHOLD = 0.3


@dataclass(slots=True)
class BackgroundAnalysis:
    """水印区域的背景统计，亮度与对比度均归一化到 0~1。"""

    brightness: float
    contrast: float
    is_dark: bool
    is_light: bool
    low_contrast: bool
    high_contrast: bool
    fallback: bool = False

    @classmethod
    def from_values(cls, brightness: float, contrast: float, *, fallback: bool = False) -> "BackgroundAnalysis":
        return cls(
            brightness=brightness,
            contrast=contrast,
            is_dark=brightness < DARK_THRESHOLD,
            is_light=brightness > LIGHT_THRESHOLD,
            low_contrast=contrast < LOW_CONTRAST_THRESHOLD,
            high_contrast=contrast > HIGH_CONTRAST_THRESHOLD,
            fallback=fallback,
        )


@dataclass(slots=True)
class AdaptiveStyle:
    text_color: RGBA
    shadow_color: RGBA
    shadow_blur: int
    shadow_offset: tuple[int, int]
    use_outline: bool = False
    outline_color: RGBA = (0, 0, 0, 204)
    outline_width: float = 1.0
    analysis: Optional[BackgroundAnalysis] = None


def analyze_background(image: Image.Image, position: WatermarkPosition, dimensions: WatermarkDimensions) -> BackgroundAnalysis:
    """统计水印落点区域的平均亮度（ITU-R 601 权重）与标准差。"""

    try:
        right = min(image.width, position.left + dimensions.width)
        bottom = min(image.height, position.top + dimensions.height)
        if right <= position.left or bottom <= position.top:
            raise ValueError("水印区域超出图片范围")
        region = image.crop((position.left, position.top, right, bottom)).convert("RGB")
        gray = cv2.cvtColor(np.asarray(region, dtype=np.uint8), cv2.COLOR_RGB2GRAY)
        mean, stddev = cv2.meanStdDev(gray)
        brightness = float(mean[0][0]) / 255.0
        contrast = float(stddev[0][0]) / 255.0
    except (ValueError, cv2.error) as exc:
        LOGGER.warning("背景分析失败，使用默认值：%s", exc)
        return BackgroundAnalysis.from_values(0.5, 0.2, fallback=True)
    return BackgroundAnalysis.from_values(brightness, contrast)


def calculate_adaptive_style(analysis: BackgroundAnalysis, base: BaseStyling) -> AdaptiveStyle:
    """以一致性策略的基础样式为起点，根据背景特征增强可读性。"""

    style = AdaptiveStyle(
        text_color=parse_color(base.color),
        shadow_color=parse_color(base.shadow_color),
        shadow_blur=base.shadow_blur,
        shadow_offset=base.shadow_offset,
        analysis=analysis,
    )

    if analysis.is_dark:
        style.text_color = (255, 255, 255, 242)
        style.shadow_color = (0, 0, 0, 204)
        style.shadow_blur = 3
        style.shadow_offset = (2, 2)

    if analysis.is_light:
        style.text_color = (255, 255, 255, 230)
        style.shadow_color = (0, 0, 0, 230)
        style.shadow_blur = 4
        style.shadow_offset = (3, 3)
        style.use_outline = True
        style.outline_color = (0, 0, 0, 178)
        style.outline_width = 1.5

    if analysis.low_contrast:
        style.use_outline = True
        style.outline_width = 2
        style.shadow_blur = max(style.shadow_blur, 4)
        style.text_color = (255, 255, 255, 242)
        if analysis.brightness > 0.5:
            style.outline_color = (0, 0, 0, 204)
        else:
            style.outline_color = (255, 255, 255, 76)

    if analysis.high_contrast:
        style.shadow_blur = max(style.shadow_blur, 5)
        style.shadow_offset = (4, 4)
        style.use_outline = True
        style.outline_width = 2

    LOGGER.debug(
        "自适应样式：亮度 %.2f 对比度 %.2f 描边=%s 阴影模糊=%d",
        analysis.brightness,
        analysis.contrast,
        style.use_outline,
        style.shadow_blur,
    )
    return style
