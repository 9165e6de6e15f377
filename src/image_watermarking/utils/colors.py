"""颜色工具函数。"""

from __future__ import annotations

import re
from typing import Tuple

from image_watermarking.core.exceptions import InvalidConfigurationError

HEX_COLOR_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
RGBA_COLOR_RE = re.compile(
    r"^rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*(?:,\s*([0-9]*\.?[0-9]+)\s*)?\)$",
    re.IGNORECASE,
)

RGBA = Tuple[int, int, int, int]


def parse_color(value: str) -> RGBA:
    """将 CSS 风格的颜色字符串解析为 0-255 的 RGBA 四元组。

    支持 ``#rgb``、``#rrggbb``、``#rrggbbaa``、``rgb(r, g, b)`` 与 ``rgba(r, g, b, a)``，
    其中 rgba 的 alpha 为 0.0~1.0 的小数。
    """

    if not value:
        raise InvalidConfigurationError("颜色值不能为空")

    text = value.strip()
    match = RGBA_COLOR_RE.match(text)
    if match:
        r, g, b = (int(match.group(i)) for i in range(1, 4))
        if any(channel > 255 for channel in (r, g, b)):
            raise InvalidConfigurationError(f"颜色通道超出范围: {value}")
        alpha = float(match.group(4)) if match.group(4) is not None else 1.0
        if not 0.0 <= alpha <= 1.0:
            raise InvalidConfigurationError(f"透明度必须位于 0~1 之间: {value}")
        return r, g, b, int(round(alpha * 255))

    r, g, b = parse_hex_color(text)
    hex_value = text.lstrip("#")
    alpha = int(hex_value[6:8], 16) if len(hex_value) == 8 else 255
    return r, g, b, alpha


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """将 HEX 字符串解析为 RGB 三元组。"""

    if not value:
        raise InvalidConfigurationError("颜色值不能为空")

    match = HEX_COLOR_RE.match(value.strip())
    if not match:
        raise InvalidConfigurationError(f"无法解析颜色值: {value}")

    hex_value = match.group(1)
    if len(hex_value) == 3:
        hex_value = "".join(ch * 2 for ch in hex_value)

    r = int(hex_value[0:2], 16)
    g = int(hex_value[2:4], 16)
    b = int(hex_value[4:6], 16)
    return r, g, b

