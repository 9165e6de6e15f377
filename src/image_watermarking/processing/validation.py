"""图片完整性校验与水印存在性检测。"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence, Union

import cv2
import numpy as np
from PIL import Image, ImageOps

from image_watermarking.core.config import DetectionConfig, DuplicateDetectionConfig
from image_watermarking.core.exceptions import ImageLoadingError, WatermarkingError
from image_watermarking.core.models import ImageMetadata, ValidationResult, WatermarkCheck
from image_watermarking.core.scanner import IMAGE_EXTENSIONS
from image_watermarking.processing.image_loader import (
    load_image,
    open_raster,
    raster_metadata,
    read_header,
    read_svg_size,
    sniff_format,
)
from image_watermarking.processing.marker import read_marker

LOGGER = logging.getLogger(__name__)

CORNERS = ("bottom-right", "bottom-left", "top-right", "top-left")
DETECTION_THRESHOLD = 0.5
CornerConfig = Union[DetectionConfig, DuplicateDetectionConfig]


class WatermarkDetector(Protocol):
    """可替换的水印检测器：返回 0~1 的置信度。"""

    name: str

    def detect(self, image: Image.Image) -> float:
        ...


class MarkerDetector:
    """检查处理时写入容器元数据的隐形标记。"""

    name = "marker"

    def detect(self, image: Image.Image) -> float:
        return 1.0 if read_marker(image) else 0.0


class CornerBrightnessDetector:
    """统计角落区域近白像素比例的启发式检测器。"""

    name = "corner-brightness"

    def __init__(self, config: Optional[DetectionConfig] = None, corner: str = "bottom-right") -> None:
        self.config = config or DetectionConfig()
        self.corner = corner

    def detect(self, image: Image.Image) -> float:
        if is_watermark_like(image, self.config, self.corner):
            return self.config.detected_confidence
        return self.config.absent_confidence


def bright_pixel_ratio(image: Image.Image, corner: str, corner_ratio: float, threshold: int) -> float:
    """计算指定角落中 RGB 三通道均大于阈值的像素比例。"""

    width, height = image.size
    corner_w = max(1, math.floor(width * corner_ratio))
    corner_h = max(1, math.floor(height * corner_ratio))
    left = width - corner_w if corner.endswith("right") else 0
    top = height - corner_h if corner.startswith("bottom") else 0

    region = image.crop((left, top, left + corner_w, top + corner_h))
    if region.mode in {"RGBA", "LA", "PA"} or (region.mode == "P" and "transparency" in region.info):
        # 透明区域按黑色背景计算，避免被误认为亮像素
        rgba = region.convert("RGBA")
        backdrop = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
        region = Image.alpha_composite(backdrop, rgba)
    pixels = np.asarray(region.convert("RGB"), dtype=np.uint8)
    if pixels.size == 0:
        return 0.0
    mask = np.all(pixels > threshold, axis=2)
    return float(mask.mean())


def is_watermark_like(image: Image.Image, config: CornerConfig, corner: str) -> bool:
    ratio = bright_pixel_ratio(image, corner, config.corner_ratio, config.brightness_threshold)
    return config.min_ratio < ratio < config.max_ratio


def compute_phash_distance(original: Image.Image, processed: Image.Image) -> float:
    """计算两张图片的感知哈希距离（pHash）。"""

    hash_a = _phash(original)
    hash_b = _phash(processed)
    distance = np.count_nonzero(hash_a != hash_b)
    return float(distance)


def compute_ssim(original: Image.Image, processed: Image.Image) -> float:
    """计算两张图片的结构相似度（SSIM，全局近似）。"""

    size = processed.size
    if size[0] <= 0 or size[1] <= 0:
        return 0.0

    img_a = _to_gray_array(original, size)
    img_b = _to_gray_array(processed, size)

    mu_a = img_a.mean()
    mu_b = img_b.mean()
    sigma_a_sq = ((img_a - mu_a) ** 2).mean()
    sigma_b_sq = ((img_b - mu_b) ** 2).mean()
    sigma_ab = ((img_a - mu_a) * (img_b - mu_b)).mean()

    c1 = (0.01 * 255) ** 2
    c2 = (0.03 * 255) ** 2

    numerator = (2 * mu_a * mu_b + c1) * (2 * sigma_ab + c2)
    denominator = (mu_a**2 + mu_b**2 + c1) * (sigma_a_sq + sigma_b_sq + c2)
    if denominator == 0:
        return 0.0
    return float(max(min(numerator / denominator, 1.0), -1.0))


def _phash(image: Image.Image) -> np.ndarray:
    resized = image.convert("L").resize((32, 32), Image.LANCZOS)
    array = np.asarray(resized, dtype=np.float32)
    dct = cv2.dct(array)
    low_freq = dct[:8, :8]
    median = np.median(low_freq[1:, 1:])
    return low_freq > median


def _to_gray_array(image: Image.Image, size: tuple[int, int]) -> np.ndarray:
    gray = image.convert("L")
    if gray.size != size:
        gray = gray.resize(size, Image.LANCZOS)
    return np.asarray(gray, dtype=np.float64)


@dataclass(slots=True)
class DuplicateCheck:
    has_duplicates: bool
    details: Optional[str] = None
    corners: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ImageComparison:
    """两张图片的元数据与视觉差异。"""

    dimensions_match: bool
    format_match: bool
    channels_match: bool
    ssim: Optional[float] = None
    phash_distance: Optional[float] = None
    error: Optional[str] = None

    @property
    def identical_layout(self) -> bool:
        return self.dimensions_match and self.channels_match


class ValidationEngine:
    """文件完整性校验与水印检测入口。"""

    def __init__(
        self,
        detection: Optional[DetectionConfig] = None,
        duplicate_detection: Optional[DuplicateDetectionConfig] = None,
        detectors: Optional[Sequence[WatermarkDetector]] = None,
    ) -> None:
        self.detection = detection or DetectionConfig()
        self.duplicate_detection = duplicate_detection or DuplicateDetectionConfig()
        if detectors is None:
            detectors = (MarkerDetector(), CornerBrightnessDetector(self.detection))
        self.detectors = list(detectors)

    def validate_file_format(self, path: Path) -> Optional[str]:
        """检查文件存在、可读、非空且扩展名受支持，返回错误描述或 None。"""

        if not path.exists():
            return "文件不存在"
        if not path.is_file():
            return "路径不是普通文件"
        if path.suffix.lower() not in IMAGE_EXTENSIONS:
            return f"不支持的格式: {path.suffix or '(无扩展名)'}"
        if path.stat().st_size == 0:
            return "文件为空"
        return None

    def validate_image(self, path: Path) -> ValidationResult:
        """校验单个图片文件，栅格图需完整解码，SVG 只检查根元素标签。"""

        try:
            error = self.validate_file_format(path)
            if error:
                return ValidationResult(is_valid=False, error=error)

            header = read_header(path)
            if path.suffix.lower() == ".svg" and sniff_format(header) != "png":
                return self._validate_svg(path)

            with open_raster(path) as img:
                metadata = raster_metadata(img, (img.format or "").lower())
            if metadata.width <= 0 or metadata.height <= 0:
                return ValidationResult(is_valid=False, error="图片尺寸无效", metadata=metadata)
            if not metadata.format:
                return ValidationResult(is_valid=False, error="无法识别图片编码格式", metadata=metadata)
            return ValidationResult(is_valid=True, metadata=metadata)
        except PermissionError as exc:
            return ValidationResult(is_valid=False, error=f"文件不可读: {exc}")
        except (ImageLoadingError, OSError) as exc:
            return ValidationResult(is_valid=False, error=f"图片已损坏或无法解码: {exc}")

    def _validate_svg(self, path: Path) -> ValidationResult:
        content = path.read_text(encoding="utf-8", errors="replace")
        if "<svg" not in content or "</svg>" not in content:
            return ValidationResult(is_valid=False, error="SVG 结构不完整")
        size = read_svg_size(content)
        metadata = None
        if size is not None:
            metadata = ImageMetadata(width=size[0], height=size[1], format="svg", channels=4, mode="RGBA", has_alpha=True)
        return ValidationResult(is_valid=True, metadata=metadata)

    def check_watermark_exists(self, path: Path) -> WatermarkCheck:
        """检测图片是否已带有水印（矢量图查文本，位图依次询问检测器）。"""

        try:
            if path.suffix.lower() == ".svg" and sniff_format(read_header(path)) != "png":
                content = path.read_text(encoding="utf-8", errors="replace")
                found = any(variant in content for variant in self.detection.text_variants)
                return WatermarkCheck(has_watermark=found, confidence=0.9 if found else 0.1, detector="svg-text")

            with open_raster(path) as img:
                image = ImageOps.exif_transpose(img)
                return self.detect(image)
        except (WatermarkingError, OSError) as exc:
            LOGGER.debug("水印检测失败 %s：%s", path, exc)
            return WatermarkCheck(has_watermark=False, confidence=0.0, error=str(exc))

    def detect(self, image: Image.Image) -> WatermarkCheck:
        confidence = 0.0
        name: Optional[str] = None
        for detector in self.detectors:
            confidence = detector.detect(image)
            name = detector.name
            if confidence >= DETECTION_THRESHOLD:
                return WatermarkCheck(has_watermark=True, confidence=confidence, detector=name)
        return WatermarkCheck(has_watermark=False, confidence=confidence, detector=name)

    def detect_duplicate_watermarks(self, path: Path) -> DuplicateCheck:
        """检查是否存在多重水印：矢量图统计文本出现次数，位图检查四个角落。"""

        if path.suffix.lower() == ".svg" and sniff_format(read_header(path)) != "png":
            content = path.read_text(encoding="utf-8", errors="replace")
            total = sum(content.count(variant) for variant in self.detection.text_variants)
            if total > 1:
                return DuplicateCheck(has_duplicates=True, details=f"SVG 中发现 {total} 处水印文本")
            return DuplicateCheck(has_duplicates=False)

        config = self.duplicate_detection
        with open_raster(path) as img:
            image = ImageOps.exif_transpose(img)
            corners = [corner for corner in CORNERS if is_watermark_like(image, config, corner)]
        if len(corners) >= config.min_corners:
            return DuplicateCheck(
                has_duplicates=True,
                details=f"{len(corners)} 个角落存在水印特征",
                corners=corners,
            )
        return DuplicateCheck(has_duplicates=False, corners=corners)

    def compare_images(self, original: Path, processed: Path) -> ImageComparison:
        """对比两张图片的尺寸、格式、通道数以及视觉相似度。"""

        first = self.validate_image(original)
        second = self.validate_image(processed)
        if not first.is_valid or not second.is_valid or not first.metadata or not second.metadata:
            return ImageComparison(
                dimensions_match=False,
                format_match=False,
                channels_match=False,
                error=first.error or second.error or "缺少元数据",
            )

        a, b = first.metadata, second.metadata
        comparison = ImageComparison(
            dimensions_match=(a.width, a.height) == (b.width, b.height),
            format_match=a.format == b.format,
            channels_match=a.channels == b.channels,
        )
        try:
            left = load_image(original).image
            right = load_image(processed).image
        except (WatermarkingError, OSError) as exc:
            comparison.error = str(exc)
            return comparison
        try:
            comparison.ssim = compute_ssim(left, right)
            comparison.phash_distance = compute_phash_distance(left, right)
        finally:
            left.close()
            right.close()
        return comparison

    def validate_image_batch(self, paths: Iterable[Path]) -> dict:
        results: dict[str, ValidationResult] = {}
        valid = 0
        for path in paths:
            result = self.validate_image(path)
            results[str(path)] = result
            if result.is_valid:
                valid += 1
        return {"valid": valid, "invalid": len(results) - valid, "results": results}
