"""静态扫描源码中的图片引用，并在处理后确认引用仍可解析。"""

from __future__ import annotations

import logging
import os
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from image_watermarking.core.models import ImageReference
from image_watermarking.core.scanner import PUBLIC_DIRNAME, should_skip_directory

LOGGER = logging.getLogger(__name__)

SCRIPT_EXTENSIONS = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}
MARKUP_EXTENSIONS = {".html", ".htm"}
COMPONENT_EXTENSIONS = {".vue"}
STYLE_EXTENSIONS = {".css", ".scss", ".sass"}
DATA_EXTENSIONS = {".json"}
CODE_EXTENSIONS = SCRIPT_EXTENSIONS | MARKUP_EXTENSIONS | COMPONENT_EXTENSIONS | STYLE_EXTENSIONS | DATA_EXTENSIONS
MAX_SOURCE_BYTES = 2 * 1024 * 1024

_IMG = r"\.(?:jpg|jpeg|png|webp|svg|gif)"
_Q = "['\"`]"
_NQ = "[^'\"`]"


def _pattern(expr: str) -> re.Pattern[str]:
    return re.compile(expr, re.IGNORECASE)


SCRIPT_PATTERNS = (
    ("import", _pattern(rf"import\s+[^;]*?from\s+{_Q}({_NQ}+{_IMG}){_Q}")),
    ("require", _pattern(rf"require\(\s*{_Q}({_NQ}+{_IMG}){_Q}\s*\)")),
    ("src_attribute", _pattern(rf"src\s*=\s*\{{?\s*{_Q}({_NQ}+{_IMG}){_Q}")),
    ("string_literal", _pattern(rf"{_Q}({_NQ}*/{_NQ}*{_IMG}){_Q}")),
)
CSS_BACKGROUND = ("css_background", _pattern(rf"background(?:-image)?\s*:[^;{{}}]*?url\(\s*{_Q}?([^'\"`)]+{_IMG}){_Q}?\s*\)"))
MARKUP_PATTERNS = (
    ("img_tag", _pattern(rf"<img\b[^>]*?\bsrc\s*=\s*{_Q}({_NQ}+{_IMG}){_Q}")),
    ("source_tag", _pattern(rf"<source\b[^>]*?\bsrcset?\s*=\s*{_Q}({_NQ}+{_IMG}){_Q}")),
    CSS_BACKGROUND,
)
STYLE_PATTERNS = (
    CSS_BACKGROUND,
    ("css_url", _pattern(rf"url\(\s*{_Q}?([^'\"`)]+{_IMG}){_Q}?\s*\)")),
)
DATA_PATTERNS = (("json_value", _pattern(rf"{_Q}({_NQ}+{_IMG}){_Q}")),)

EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:")


def patterns_for(path: Path) -> Sequence[tuple[str, re.Pattern[str]]]:
    suffix = path.suffix.lower()
    if suffix in SCRIPT_EXTENSIONS:
        return SCRIPT_PATTERNS
    if suffix in MARKUP_EXTENSIONS:
        return MARKUP_PATTERNS
    if suffix in COMPONENT_EXTENSIONS:
        return MARKUP_PATTERNS + SCRIPT_PATTERNS
    if suffix in STYLE_EXTENSIONS:
        return STYLE_PATTERNS
    if suffix in DATA_EXTENSIONS:
        return DATA_PATTERNS
    return ()


def resolve_reference(reference: str, source_file: Path, root: Path) -> Path:
    """把引用解析为绝对路径：/ 开头与裸文件名指向 public，其余相对于引用文件所在目录。"""

    public = root / PUBLIC_DIRNAME
    if reference.startswith("/"):
        target = public / reference.lstrip("/")
    elif reference.startswith(("./", "../")):
        target = source_file.parent / reference
    elif "/" not in reference:
        target = public / reference
    else:
        target = source_file.parent / reference
    return Path(os.path.normpath(target)).resolve()


@dataclass(slots=True)
class BrokenReference:
    image_path: Path
    reference: ImageReference
    issue: str

    def to_dict(self) -> dict[str, Any]:
        return {"image_path": str(self.image_path), "reference": self.reference.to_dict(), "issue": self.issue}


@dataclass(slots=True)
class ReferenceCheck:
    valid: bool
    broken_references: list[BrokenReference] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "broken_references": [item.to_dict() for item in self.broken_references],
            "summary": dict(self.summary),
        }


@dataclass(slots=True)
class PathChange:
    path: str
    status: str  # missing | unexpected
    issue: str


@dataclass(slots=True)
class PathConsistency:
    paths_unchanged: bool
    changed_paths: list[PathChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "paths_unchanged": self.paths_unchanged,
            "changed_paths": [{"path": c.path, "status": c.status, "issue": c.issue} for c in self.changed_paths],
        }


class ReferenceValidator:
    """扫描脚本、页面、样式与 JSON 文件中的图片引用。"""

    def __init__(self) -> None:
        self.root: Optional[Path] = None
        self.image_references: dict[Path, list[ImageReference]] = {}
        self.scanned_files = 0

    def _iter_code_files(self, root: Path) -> Iterable[Path]:
        for current, dirnames, filenames in os.walk(root, onerror=self._walk_error):
            dirnames[:] = sorted(name for name in dirnames if not should_skip_directory(name))
            for filename in sorted(filenames):
                if Path(filename).suffix.lower() in CODE_EXTENSIONS:
                    yield Path(current) / filename

    @staticmethod
    def _walk_error(exc: OSError) -> None:
        LOGGER.warning("无法读取目录：%s", exc)

    def scan_code_files_for_image_references(self, root: Path) -> dict[Path, list[ImageReference]]:
        """扫描根目录下全部源码文件，返回 图片路径 -> 引用列表。"""

        root = root.resolve()
        references: defaultdict[Path, list[ImageReference]] = defaultdict(list)
        scanned = 0
        for source in self._iter_code_files(root):
            try:
                if source.stat().st_size > MAX_SOURCE_BYTES:
                    LOGGER.debug("文件过大，跳过引用扫描 %s", source)
                    continue
                content = source.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                LOGGER.warning("读取源码文件失败 %s：%s", source, exc)
                continue
            scanned += 1
            for reference in self.extract_references(content, source, root):
                references[reference.resolved_path].append(reference)

        self.root = root
        self.image_references = dict(references)
        self.scanned_files = scanned
        LOGGER.info(
            "引用扫描完成：%d 个源码文件，%d 张图片，%d 处引用",
            scanned,
            len(self.image_references),
            sum(len(items) for items in self.image_references.values()),
        )
        return self.image_references

    def extract_references(self, content: str, source: Path, root: Path) -> list[ImageReference]:
        """提取单个文件中的引用；同一位置被多个模式命中只记录一次。"""

        seen_offsets: set[int] = set()
        found: list[tuple[int, ImageReference]] = []
        relative_source = _relative(source, root)
        for ref_type, pattern in patterns_for(source):
            for match in pattern.finditer(content):
                offset = match.start(1)
                if offset in seen_offsets:
                    continue
                value = match.group(1).strip()
                if not value or value.lower().startswith(EXTERNAL_PREFIXES):
                    continue
                seen_offsets.add(offset)
                found.append(
                    (
                        offset,
                        ImageReference(
                            source_file=relative_source,
                            line=content.count("\n", 0, offset) + 1,
                            type=ref_type,
                            original_reference=value,
                            resolved_path=resolve_reference(value, source, root),
                        ),
                    )
                )
        found.sort(key=lambda item: item[0])
        return [reference for _, reference in found]

    def validate_processed_image_references(self, processed_paths: Iterable[Path], root: Path) -> ReferenceCheck:
        """确认已处理图片的所有既有引用在处理后仍指向存在的文件。"""

        if self.root is None or self.root != root.resolve():
            self.scan_code_files_for_image_references(root)

        processed = [Path(path).resolve() for path in processed_paths]
        broken: list[BrokenReference] = []
        total = 0
        for image_path in processed:
            for reference in self.image_references.get(image_path, []):
                total += 1
                if not reference.resolved_path.exists():
                    broken.append(
                        BrokenReference(
                            image_path=image_path,
                            reference=reference,
                            issue=f"引用的图片不存在: {reference.original_reference}",
                        )
                    )

        if broken:
            LOGGER.warning("发现 %d 处失效引用", len(broken))
        return ReferenceCheck(
            valid=not broken,
            broken_references=broken,
            summary={
                "total_references": total,
                "valid_references": total - len(broken),
                "broken_references": len(broken),
                "processed_images": len(processed),
            },
        )

    @staticmethod
    def validate_path_consistency(original_paths: Iterable[Path], processed_paths: Iterable[Path]) -> PathConsistency:
        """纯集合比较：列出只出现在一侧的路径。"""

        original = [os.path.normpath(str(path)) for path in original_paths]
        processed = [os.path.normpath(str(path)) for path in processed_paths]
        original_set, processed_set = set(original), set(processed)

        changes = [
            PathChange(path=path, status="missing", issue="处理后路径缺失")
            for path in dict.fromkeys(original)
            if path not in processed_set
        ]
        changes.extend(
            PathChange(path=path, status="unexpected", issue="处理后出现了原列表之外的路径")
            for path in dict.fromkeys(processed)
            if path not in original_set
        )
        return PathConsistency(paths_unchanged=not changes, changed_paths=changes)

    def get_reference_summary(self) -> dict[str, Any]:
        by_type: Counter[str] = Counter()
        by_project: Counter[str] = Counter()
        total = 0
        for image_path, references in self.image_references.items():
            total += len(references)
            for reference in references:
                by_type[reference.type] += 1
            by_project[_project_of(image_path, self.root)] += 1
        return {
            "total_images": len(self.image_references),
            "total_references": total,
            "references_by_type": dict(by_type),
            "images_by_project": dict(by_project),
        }


def _relative(path: Path, root: Path) -> str:
    try:
        return path.resolve().relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


def _project_of(image_path: Path, root: Optional[Path]) -> str:
    if root is None:
        return "unknown"
    parts = _relative(image_path, root).split("/")
    if len(parts) > 2 and parts[0] == "projects":
        return parts[1]
    return parts[0] if len(parts) > 1 else "root"
