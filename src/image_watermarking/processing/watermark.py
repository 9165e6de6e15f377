"""水印渲染、合成与按原格式写回。"""

from __future__ import annotations

import io
import logging
import os
import shutil
import tempfile
import time
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from image_watermarking.core.config import WatermarkStyle
from image_watermarking.core.exceptions import ImageWriteError, UnsupportedFormatError
from image_watermarking.core.models import FormatInfo, ImageMetadata, ProcessingResult
from image_watermarking.processing.consistency import (
    ConsistentConfig,
    ProcessingConsistency,
    WatermarkDimensions,
)
from image_watermarking.processing.image_loader import LoadedImage, load_image
from image_watermarking.processing.marker import marker_save_kwargs
from image_watermarking.processing.styling import AdaptiveStyle, analyze_background, calculate_adaptive_style
from image_watermarking.processing.validation import ValidationEngine

LOGGER = logging.getLogger(__name__)

JPEG_QUALITY = 92
WEBP_QUALITY = 90
FALLBACK_FONTS = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf")
MIN_RENDER_FONT_SIZE = 8
CHANNEL_MODES = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}


@lru_cache(maxsize=64)
def load_font(font_path: Optional[str], size: int) -> ImageFont.ImageFont:
    """按优先级加载字体：自定义字体、常见无衬线粗体、Pillow 内置字体。"""

    candidates = ([font_path] if font_path else []) + list(FALLBACK_FONTS)
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    LOGGER.debug("未找到 TrueType 字体，使用 Pillow 内置字体")
    return ImageFont.load_default(size=size)


def render_watermark_tile(
    text: str,
    dimensions: WatermarkDimensions,
    style: AdaptiveStyle,
    font_path: Optional[Path] = None,
) -> Image.Image:
    """在独立的透明图层上绘制水印文字（含阴影与描边）。"""

    size = (dimensions.width, dimensions.height)
    font_size = dimensions.font_size
    stroke = int(round(style.outline_width)) if style.use_outline else 0
    path_key = str(font_path) if font_path else None

    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    while True:
        font = load_font(path_key, font_size)
        bbox = measure.textbbox((0, 0), text, font=font, stroke_width=stroke)
        text_w, text_h = bbox[2] - bbox[0], bbox[3] - bbox[1]
        # 自定义长文本需缩小字号以放入固定比例的水印框
        if (text_w <= size[0] and text_h <= size[1]) or font_size <= MIN_RENDER_FONT_SIZE:
            break
        font_size -= 1

    x = (size[0] - text_w) / 2 - bbox[0]
    y = (size[1] - text_h) / 2 - bbox[1]

    shadow = Image.new("RGBA", size, (0, 0, 0, 0))
    ImageDraw.Draw(shadow).text(
        (x + style.shadow_offset[0], y + style.shadow_offset[1]),
        text,
        font=font,
        fill=style.shadow_color,
        stroke_width=stroke,
        stroke_fill=style.shadow_color,
    )
    if style.shadow_blur > 0:
        shadow = shadow.filter(ImageFilter.GaussianBlur(radius=style.shadow_blur))

    glyphs = Image.new("RGBA", size, (0, 0, 0, 0))
    ImageDraw.Draw(glyphs).text(
        (x, y),
        text,
        font=font,
        fill=style.text_color,
        stroke_width=stroke,
        stroke_fill=style.outline_color if stroke else None,
    )
    return Image.alpha_composite(shadow, glyphs)


def composite_tile(image: Image.Image, tile: Image.Image, left: int, top: int) -> Image.Image:
    """把水印图层合成到 RGBA 副本上，超出画布的部分裁掉。"""

    base = image.convert("RGBA")
    visible_w = min(tile.width, base.width - left)
    visible_h = min(tile.height, base.height - top)
    if visible_w <= 0 or visible_h <= 0:
        return base
    visible = tile if (visible_w, visible_h) == tile.size else tile.crop((0, 0, visible_w, visible_h))
    base.alpha_composite(visible, dest=(left, top))
    return base


def output_mode(metadata: ImageMetadata, output_format: str) -> str:
    """根据原始通道布局决定写回时的图像模式。"""

    if output_format == "jpeg":
        if metadata.mode == "CMYK":
            return "CMYK"
        return "L" if metadata.channels == 1 else "RGB"
    return CHANNEL_MODES.get(metadata.channels, "RGBA" if metadata.has_alpha else "RGB")


def encode_image(image: Image.Image, loaded: LoadedImage, text: str) -> tuple[bytes, FormatInfo]:
    """按原始容器格式编码，SVG 栅格化为无损 PNG。"""

    source_format = loaded.source_format
    info = loaded.info or {}
    buffer = io.BytesIO()
    params: dict[str, Any] = {}

    if source_format == "svg":
        output_format = "png"
        image = image.convert("RGBA")
        format_info = FormatInfo(source_format="svg", output_format="png", rasterized=True, lossless=True)
    elif source_format in {"jpeg", "png", "webp"}:
        output_format = source_format
        image = image.convert(output_mode(loaded.metadata, output_format))
        format_info = FormatInfo(source_format=source_format, output_format=output_format)
    else:
        raise UnsupportedFormatError(f"无法写回该格式: {source_format}")

    for key in ("icc_profile", "exif"):
        if info.get(key) and output_format in {"jpeg", "png", "webp"}:
            params[key] = info[key]

    if output_format == "jpeg":
        params.update(quality=JPEG_QUALITY, progressive=True, optimize=True)
        format_info.quality = JPEG_QUALITY
    elif output_format == "png":
        params.update(optimize=True)
        format_info.lossless = True
    elif output_format == "webp":
        if loaded.metadata.has_alpha:
            params.update(lossless=True)
            format_info.lossless = True
        else:
            params.update(quality=WEBP_QUALITY)
            format_info.quality = WEBP_QUALITY

    params.update(marker_save_kwargs(output_format, text, info if output_format == "png" else None))
    image.save(buffer, format=output_format.upper(), **params)
    return buffer.getvalue(), format_info


def write_in_place(path: Path, data: bytes) -> None:
    """通过同目录临时文件原子替换原文件，路径保持不变。"""

    handle = tempfile.NamedTemporaryFile(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False)
    temp_path = Path(handle.name)
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        shutil.copymode(path, temp_path)
        os.replace(temp_path, path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise ImageWriteError(f"写回图片失败 {path}: {exc}") from exc


class WatermarkProcessor:
    """对单张图片执行完整的加水印流程。"""

    def __init__(
        self,
        style: Optional[WatermarkStyle] = None,
        consistency: Optional[ProcessingConsistency] = None,
        validation_engine: Optional[ValidationEngine] = None,
    ) -> None:
        self.style = style or WatermarkStyle()
        self.consistency = consistency or ProcessingConsistency()
        self.validation_engine = validation_engine or ValidationEngine()

    def prepare(self, loaded: LoadedImage, path: Path) -> tuple[ConsistentConfig, AdaptiveStyle]:
        consistent = self.consistency.calculate_consistent_config(loaded.metadata, path)
        analysis = analyze_background(loaded.image, consistent.position, consistent.dimensions)
        return consistent, calculate_adaptive_style(analysis, consistent.styling)

    def render(self, loaded: LoadedImage, consistent: ConsistentConfig, style: AdaptiveStyle) -> Image.Image:
        tile = render_watermark_tile(self.style.text, consistent.dimensions, style, self.style.font_path)
        return composite_tile(loaded.image, tile, consistent.position.left, consistent.position.top)

    def apply_watermark(self, path: Path) -> ProcessingResult:
        """加水印并原地写回，随后重新校验并比对保真基线。"""

        started = time.perf_counter()
        loaded = load_image(path)
        try:
            baseline = loaded.metadata
            consistent, style = self.prepare(loaded, path)
            composed = self.render(loaded, consistent, style)
            data, format_info = encode_image(composed, loaded, self.style.text)
        finally:
            loaded.image.close()

        write_in_place(path, data)

        validation = self.validation_engine.validate_image(path)
        preservation = self.consistency.validate_image_preservation(validation.metadata, baseline)
        if not validation.is_valid:
            preservation.is_preserved = False
            preservation.issues.insert(0, f"处理后校验失败: {validation.error}")

        duration = time.perf_counter() - started
        LOGGER.debug("已处理 %s (%s -> %s)，耗时 %.3fs", path.name, format_info.source_format, format_info.output_format, duration)
        return ProcessingResult(
            success=preservation.is_preserved,
            image_path=path,
            format_info=format_info,
            consistent_config=consistent,
            preservation=preservation,
            original_metadata=baseline,
            duration=duration,
        )
