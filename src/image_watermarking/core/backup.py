"""备份管理：按时间戳分代保存原图，失败时恢复。"""

from __future__ import annotations

import logging
import re
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from image_watermarking.core.exceptions import BackupError, RestoreError, category_from_os_error
from image_watermarking.core.scanner import IMAGE_EXTENSIONS

LOGGER = logging.getLogger(__name__)

GENERATION_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}")
GENERATION_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"


def generation_name(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime(GENERATION_FORMAT)


@dataclass(slots=True)
class BackupGeneration:
    name: str
    path: Path
    file_count: int
    created: Optional[datetime] = None


@dataclass(slots=True)
class CleanupSummary:
    deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class BackupRegistry:
    """原图路径到最近一次备份路径的映射，生命周期与本次运行一致。"""

    def __init__(self) -> None:
        self._entries: dict[Path, Path] = {}
        self._lock = threading.Lock()

    def register(self, original: Path, backup: Path) -> None:
        with self._lock:
            self._entries[original] = backup

    def get(self, original: Path) -> Optional[Path]:
        with self._lock:
            return self._entries.get(original)

    def items(self) -> list[tuple[Path, Path]]:
        with self._lock:
            return list(self._entries.items())

    def __contains__(self, original: object) -> bool:
        with self._lock:
            return original in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def verify_backup_file(path: Path, expected_size: Optional[int] = None) -> Optional[str]:
    """检查备份副本本身是一个可用的图片文件，返回错误描述或 None。"""

    if not path.exists():
        return "备份文件不存在"
    if not path.is_file():
        return "备份路径不是普通文件"
    if path.suffix.lower() not in IMAGE_EXTENSIONS:
        return f"备份文件格式不受支持: {path.suffix}"
    size = path.stat().st_size
    if size == 0:
        return "备份文件为空"
    if expected_size is not None and size != expected_size:
        return f"备份文件大小不一致: {size} != {expected_size}"
    return None


class BackupManager:
    """在根目录的 .backups 下创建备份代，每次运行一代，代内保留相对路径。"""

    def __init__(self, backup_dir: Path, root: Optional[Path] = None, registry: Optional[BackupRegistry] = None) -> None:
        self.backup_dir = backup_dir
        self.root = root.resolve() if root else None
        self.registry = registry if registry is not None else BackupRegistry()
        self._generation: Optional[Path] = None
        self._lock = threading.Lock()

    @property
    def generation_dir(self) -> Optional[Path]:
        return self._generation

    def start_generation(self) -> Path:
        """创建新的备份代目录（同一秒内重复调用也不会冲突）。"""

        with self._lock:
            return self._new_generation()

    def _new_generation(self) -> Path:
        generation = self.backup_dir / generation_name()
        generation.mkdir(parents=True, exist_ok=False)
        self._generation = generation
        LOGGER.info("创建备份目录 %s", generation)
        return generation

    def _current_generation(self) -> Path:
        # 并发任务共享同一代，检查与创建必须在同一把锁内完成
        with self._lock:
            if self._generation is None:
                return self._new_generation()
            return self._generation

    def _backup_target(self, generation: Path, original: Path) -> Path:
        if self.root is not None:
            try:
                return generation / original.resolve().relative_to(self.root)
            except ValueError:
                pass
        return generation / original.name

    def create_backup(self, original: Path) -> Path:
        """复制原图到当前备份代并校验，失败抛出 BackupError。"""

        if not original.is_file():
            raise BackupError(f"待备份文件不存在: {original}")

        generation = self._current_generation()
        target = self._backup_target(generation, original)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(original, target)
            error = verify_backup_file(target, original.stat().st_size)
        except OSError as exc:
            raise BackupError(f"备份失败 {original}: {exc}", category=category_from_os_error(exc)) from exc
        if error:
            raise BackupError(f"备份校验失败 {original}: {error}")

        self.registry.register(original, target)
        LOGGER.debug("已备份 %s -> %s", original, target)
        return target

    def get_backup_path(self, original: Path) -> Optional[Path]:
        return self.registry.get(original)

    def restore_from_backup(self, original: Path, backup: Optional[Path] = None) -> Path:
        """把备份复制回原路径（幂等），必要时重建目录，随后重新校验。"""

        source = backup or self.registry.get(original)
        if source is None:
            raise RestoreError(f"没有可用的备份: {original}")
        if not source.is_file():
            raise RestoreError(f"备份文件不存在: {source}")

        try:
            original.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, original)
        except OSError as exc:
            raise RestoreError(f"恢复失败 {original}: {exc}", category=category_from_os_error(exc)) from exc

        error = verify_backup_file(original, source.stat().st_size)
        if error:
            raise RestoreError(f"恢复后校验失败 {original}: {error}")
        LOGGER.info("已从备份恢复 %s", original)
        return original

    def list_backups(self) -> list[BackupGeneration]:
        """按时间倒序列出备份代。"""

        if not self.backup_dir.is_dir():
            return []
        generations: list[BackupGeneration] = []
        for entry in sorted(self.backup_dir.iterdir(), key=lambda p: p.name, reverse=True):
            if not entry.is_dir() or not GENERATION_RE.match(entry.name):
                continue
            generations.append(
                BackupGeneration(
                    name=entry.name,
                    path=entry,
                    file_count=sum(1 for item in entry.rglob("*") if item.is_file()),
                    created=_parse_generation(entry.name),
                )
            )
        return generations

    def cleanup_backups(self, keep: int = 5) -> CleanupSummary:
        """保留最近 keep 代备份，删除其余；没有备份时安全返回。"""

        summary = CleanupSummary()
        generations = self.list_backups()
        current = self._generation
        for index, generation in enumerate(generations):
            if index < keep or generation.path == current:
                summary.kept.append(generation.name)
                continue
            try:
                shutil.rmtree(generation.path)
                summary.deleted.append(generation.name)
            except OSError as exc:
                LOGGER.warning("删除备份目录失败 %s：%s", generation.path, exc)
                summary.errors.append(f"{generation.name}: {exc}")
        if summary.deleted:
            LOGGER.info("清理旧备份 %d 个，保留 %d 个", len(summary.deleted), len(summary.kept))
        return summary


def _parse_generation(name: str) -> Optional[datetime]:
    try:
        return datetime.strptime(name, GENERATION_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        match = GENERATION_RE.match(name)
        if not match:
            return None
        return datetime.strptime(match.group(0), "%Y-%m-%dT%H-%M-%S").replace(tzinfo=timezone.utc)
