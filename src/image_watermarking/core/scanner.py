"""图片发现：扫描 projects/ 与 public/ 目录并汇总统计。"""

from __future__ import annotations

import logging
import os
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from image_watermarking.core.models import ImageRecord

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".svg"}
EXCLUDED_DIRECTORIES = {
    "node_modules",
    ".git",
    ".next",
    "dist",
    "build",
    ".vercel",
    ".vscode",
    "logs",
    "coverage",
    ".backups",
}
PROJECTS_DIRNAME = "projects"
PUBLIC_DIRNAME = "public"


def is_supported_image(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def should_skip_directory(name: str) -> bool:
    """排除依赖、构建产物与隐藏目录。"""

    return name in EXCLUDED_DIRECTORIES or name.startswith(".")


def _iter_image_files(directory: Path) -> Iterator[Path]:
    """递归遍历目录，单个目录读取失败只记录日志。"""

    try:
        with os.scandir(directory) as entries:
            children = sorted(entries, key=lambda entry: entry.name)
    except OSError as exc:
        LOGGER.warning("无法读取目录 %s：%s", directory, exc)
        return

    for entry in children:
        try:
            if entry.is_dir(follow_symlinks=False):
                if should_skip_directory(entry.name):
                    LOGGER.debug("跳过排除目录 %s", entry.path)
                    continue
                yield from _iter_image_files(Path(entry.path))
            elif entry.is_file() and is_supported_image(Path(entry.name)):
                yield Path(entry.path)
        except OSError as exc:
            LOGGER.warning("无法访问 %s：%s", entry.path, exc)


def build_image_record(path: Path, root: Path) -> ImageRecord:
    """根据文件路径构造 ImageRecord（会读取文件状态）。"""

    resolved = path.resolve()
    stat = resolved.stat()
    try:
        relative = resolved.relative_to(root.resolve()).as_posix()
    except ValueError:
        relative = resolved.name
    return ImageRecord(
        path=resolved,
        relative_path=relative,
        filename=resolved.name,
        format=resolved.suffix.lower().lstrip("."),
        size_bytes=stat.st_size,
        last_modified=datetime.fromtimestamp(stat.st_mtime),
    )


def find_all_images(root: Path) -> list[ImageRecord]:
    """扫描根目录下的 projects/<各项目> 与 public/，返回支持格式的图片列表。"""

    root = root.resolve()
    scan_roots: list[Path] = []

    projects_dir = root / PROJECTS_DIRNAME
    if projects_dir.is_dir():
        try:
            project_dirs = sorted(
                child for child in projects_dir.iterdir() if child.is_dir() and not should_skip_directory(child.name)
            )
        except OSError as exc:
            LOGGER.warning("无法读取项目目录 %s：%s", projects_dir, exc)
            project_dirs = []
        scan_roots.extend(project_dirs)
        LOGGER.info("发现 %d 个项目目录", len(project_dirs))
    else:
        LOGGER.info("未找到项目目录 %s", projects_dir)

    public_dir = root / PUBLIC_DIRNAME
    if public_dir.is_dir():
        scan_roots.append(public_dir)
    else:
        LOGGER.info("未找到公共资源目录 %s", public_dir)

    records: list[ImageRecord] = []
    seen: set[Path] = set()
    for scan_root in scan_roots:
        count = 0
        for candidate in _iter_image_files(scan_root):
            try:
                record = build_image_record(candidate, root)
            except OSError as exc:
                LOGGER.warning("读取文件信息失败 %s：%s", candidate, exc)
                continue
            if record.path in seen:
                continue
            seen.add(record.path)
            records.append(record)
            count += 1
        LOGGER.debug("%s：发现 %d 张图片", scan_root, count)

    LOGGER.info("共发现 %d 张图片", len(records))
    return records


def filter_by_format(records: Iterable[ImageRecord], formats: Sequence[str]) -> list[ImageRecord]:
    """按格式过滤，格式可带或不带点号，大小写不敏感。"""

    wanted = {fmt.lower().lstrip(".") for fmt in formats}
    if "jpg" in wanted or "jpeg" in wanted:
        wanted |= {"jpg", "jpeg"}
    return [record for record in records if record.format in wanted]


def get_image_statistics(records: Iterable[ImageRecord]) -> dict:
    """汇总图片数量、格式分布、总字节数与项目分布。"""

    by_format: Counter[str] = Counter()
    by_project: defaultdict[str, int] = defaultdict(int)
    total = 0
    total_size = 0
    for record in records:
        total += 1
        total_size += record.size_bytes
        by_format[record.format] += 1
        by_project[record.project] += 1
    return {
        "total": total,
        "by_format": dict(by_format),
        "total_size": total_size,
        "by_project": dict(by_project),
    }
