"""图片加载、格式嗅探与 SVG 栅格化。"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from image_watermarking.core.exceptions import ImageLoadingError, UnsupportedFormatError
from image_watermarking.core.models import ImageMetadata

LOGGER = logging.getLogger(__name__)

SNIFF_BYTES = 1000
RASTER_FORMATS = {"jpeg", "png", "webp"}
EXTENSION_FORMATS = {
    ".jpg": "jpeg",
    ".jpeg": "jpeg",
    ".png": "png",
    ".webp": "webp",
    ".svg": "svg",
}
# 模式 -> 展开后的通道数（调色板按 RGB/RGBA 计算）
MODE_CHANNELS = {"1": 1, "L": 1, "I": 1, "I;16": 1, "F": 1, "LA": 2, "La": 2, "RGB": 3, "YCbCr": 3, "RGBA": 4, "RGBa": 4, "CMYK": 4, "PA": 4}
# EXIF Orientation 5~8 会交换宽高
TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}

SVG_LENGTH_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(px)?\s*$")
SVG_ROOT_RE = re.compile(r"<svg\b[^>]*>", re.IGNORECASE | re.DOTALL)
SVG_ATTR_RE = r"\b{name}\s*=\s*[\"']([^\"']*)[\"']"


@dataclass(slots=True)
class LoadedImage:
    """解码后的图片及其基线元数据。"""

    image: Image.Image
    metadata: ImageMetadata
    source_format: str
    is_vector: bool = False
    info: Optional[dict] = None


def format_from_extension(path: Path) -> Optional[str]:
    return EXTENSION_FORMATS.get(path.suffix.lower())


def sniff_format(header: bytes) -> Optional[str]:
    """按魔数识别文件真实格式。"""

    if header.startswith(b"\xff\xd8"):
        return "jpeg"
    if header.startswith(b"\x89PNG"):
        return "png"
    if len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp"
    if header.startswith((b"GIF87a", b"GIF89a")):
        return "gif"
    head = header[:SNIFF_BYTES].lstrip().lower()
    if b"<svg" in head or head.startswith(b"<?xml"):
        return "svg"
    return None


def read_header(path: Path, size: int = SNIFF_BYTES) -> bytes:
    with path.open("rb") as handle:
        return handle.read(size)


def channels_for(image: Image.Image) -> int:
    if image.mode == "P":
        return 4 if "transparency" in image.info else 3
    return MODE_CHANNELS.get(image.mode, len(image.getbands()))


def has_alpha(image: Image.Image) -> bool:
    return image.mode in {"RGBA", "LA", "PA", "RGBa", "La"} or (image.mode == "P" and "transparency" in image.info)


def raster_metadata(image: Image.Image, fmt: str, *, oriented: bool = True) -> ImageMetadata:
    """读取栅格图元数据，宽高按 EXIF 方向校正后的显示尺寸计算。"""

    width, height = image.size
    if oriented:
        orientation = image.getexif().get(0x0112)
        if orientation in TRANSPOSED_ORIENTATIONS:
            width, height = height, width
    return ImageMetadata(
        width=width,
        height=height,
        format=fmt,
        channels=channels_for(image),
        mode=image.mode,
        has_alpha=has_alpha(image),
    )


def read_svg_size(content: str) -> Optional[tuple[int, int]]:
    """从 SVG 根元素的 width/height 或 viewBox 推断像素尺寸。"""

    root = SVG_ROOT_RE.search(content)
    if not root:
        return None
    tag = root.group(0)

    def attr(name: str) -> Optional[str]:
        match = re.search(SVG_ATTR_RE.format(name=name), tag)
        return match.group(1) if match else None

    width, height = attr("width"), attr("height")
    if width and height:
        w_match, h_match = SVG_LENGTH_RE.match(width), SVG_LENGTH_RE.match(height)
        if w_match and h_match:
            return max(1, round(float(w_match.group(1)))), max(1, round(float(h_match.group(1))))

    view_box = attr("viewBox")
    if view_box:
        parts = view_box.replace(",", " ").split()
        if len(parts) == 4:
            try:
                return max(1, round(float(parts[2]))), max(1, round(float(parts[3])))
            except ValueError:
                return None
    return None


def rasterize_svg(data: bytes, size: Optional[tuple[int, int]] = None) -> Image.Image:
    """使用 cairosvg 将 SVG 渲染为 RGBA 位图。"""

    import cairosvg  # 依赖系统 cairo 运行库，仅在处理 SVG 时导入

    kwargs = {}
    if size is not None:
        kwargs = {"output_width": size[0], "output_height": size[1]}
    try:
        png_bytes = cairosvg.svg2png(bytestring=data, **kwargs)
    except Exception as exc:  # noqa: BLE001
        raise ImageLoadingError(f"SVG 渲染失败: {exc}") from exc
    with Image.open(io.BytesIO(png_bytes)) as rendered:
        return rendered.convert("RGBA")


def open_raster(path: Path) -> Image.Image:
    """打开并完整解码栅格图片，保留原始模式，调用者负责关闭。"""

    image: Optional[Image.Image] = None
    try:
        image = Image.open(path)
        image.load()
    except (PermissionError, FileNotFoundError):
        raise
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        if image is not None:
            image.close()
        LOGGER.debug("无法识别图像文件 %s: %s", path, exc)
        raise ImageLoadingError(f"无法加载图像: {path}: {exc}") from exc
    return image


def load_image(path: Path) -> LoadedImage:
    """加载单张图片：栅格图执行 EXIF 旋转，SVG 栅格化为 RGBA。

    返回的 Image 对象为独立副本，调用者负责关闭。
    """

    fmt = format_from_extension(path)
    if fmt is None:
        raise UnsupportedFormatError(f"不支持的图片格式: {path.suffix}")

    actual = sniff_format(read_header(path))
    # 已栅格化写回的 .svg 文件按 PNG 处理
    if fmt == "svg" and actual != "png":
        data = path.read_bytes()
        content = data.decode("utf-8", errors="replace")
        image = rasterize_svg(data, read_svg_size(content))
        metadata = raster_metadata(image, "svg", oriented=False)
        return LoadedImage(image=image, metadata=metadata, source_format="svg", is_vector=True)

    with open_raster(path) as img:
        source_format = (img.format or actual or fmt).lower()
        # 相机输出的多图 JPEG 被 Pillow 识别为 MPO
        if source_format == "mpo":
            source_format = "jpeg"
        metadata = raster_metadata(img, source_format)
        oriented = ImageOps.exif_transpose(img)
        image = oriented.copy() if oriented is img else oriented
    return LoadedImage(image=image, metadata=metadata, source_format=source_format, info=dict(image.info))
