"""在容器元数据中写入/读取隐形水印标记。"""

from __future__ import annotations

from typing import Any, Optional

from PIL import Image, PngImagePlugin

MARKER_KEY = "Watermark"
MARKER_PREFIX = "image-watermarking:"
XMP_TEMPLATE = (
    '<x:xmpmeta xmlns:x="adobe:ns:meta/"><rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">'
    '<rdf:Description xmlns:iw="https://ns.image-watermarking/1.0/" iw:{key}="{value}"/>'
    "</rdf:RDF></x:xmpmeta>"
)


def marker_value(text: str) -> str:
    return f"{MARKER_PREFIX}{text}"


def marker_save_kwargs(fmt: str, text: str, info: Optional[dict] = None) -> dict[str, Any]:
    """返回 Image.save 所需的元数据参数，保留原有的 PNG 文本块。"""

    value = marker_value(text)
    if fmt == "png":
        pnginfo = PngImagePlugin.PngInfo()
        for key, existing in (info or {}).items():
            if isinstance(existing, str) and key != MARKER_KEY:
                pnginfo.add_text(key, existing)
        pnginfo.add_text(MARKER_KEY, value)
        return {"pnginfo": pnginfo}
    if fmt == "jpeg":
        return {"comment": value.encode("utf-8")}
    if fmt == "webp":
        return {"xmp": XMP_TEMPLATE.format(key=MARKER_KEY, value=value).encode("utf-8")}
    return {}


def read_marker(image: Image.Image) -> Optional[str]:
    """读取标记中的水印文本，没有标记时返回 None。"""

    candidates: list[Any] = [image.info.get(MARKER_KEY), image.info.get("comment"), image.info.get("xmp")]
    text_chunks = getattr(image, "text", None)
    if isinstance(text_chunks, dict):
        candidates.append(text_chunks.get(MARKER_KEY))

    for raw in candidates:
        if raw is None:
            continue
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        text = str(raw)
        index = text.find(MARKER_PREFIX)
        if index < 0:
            continue
        value = text[index + len(MARKER_PREFIX):]
        # XMP 中的值以引号结束
        return value.split('"', 1)[0]
    return None
