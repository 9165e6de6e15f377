"""进度、取消令牌与断点续跑快照。"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressUpdate:
    """批处理过程中的进度信息。"""

    total: int
    completed: int
    message: Optional[str] = None
    status: str = "running"
    processed: int = 0
    skipped: int = 0
    errors: int = 0


class CancellationToken:
    """显式传递给编排器的取消令牌。

    编排器只在批次之间和并发派发之间检查该标记，信号处理由调用方负责。
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "用户中断") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class ProgressStats:
    processed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def completed(self) -> int:
        return self.processed + self.skipped + self.errors

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "skipped": self.skipped, "errors": self.errors}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressStats":
        return cls(
            processed=int(data.get("processed", 0)),
            skipped=int(data.get("skipped", 0)),
            errors=int(data.get("errors", 0)),
        )


@dataclass(slots=True)
class ResumeSnapshot:
    """中断时持久化的续跑状态。"""

    current_index: int
    stats: ProgressStats
    remaining_images: list[Path]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentIndex": self.current_index,
            "stats": self.stats.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "remainingImages": [str(path) for path in self.remaining_images],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResumeSnapshot":
        timestamp = data.get("timestamp")
        return cls(
            current_index=int(data.get("currentIndex", 0)),
            stats=ProgressStats.from_dict(data.get("stats") or {}),
            remaining_images=[Path(item) for item in data.get("remainingImages") or []],
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
        )


def save_resume_snapshot(snapshot: ResumeSnapshot, path: Path) -> Path:
    """写入续跑快照（先写临时文件再替换）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    temp_path.replace(path)
    LOGGER.info("已保存续跑快照：剩余 %d 张，文件 %s", len(snapshot.remaining_images), path)
    return path


def load_resume_snapshot(path: Path) -> Optional[ResumeSnapshot]:
    """读取续跑快照，文件不存在或损坏时返回 None。"""

    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        snapshot = ResumeSnapshot.from_dict(data)
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        LOGGER.warning("续跑快照无法读取 %s：%s，将从头开始", path, exc)
        return None
    LOGGER.info("读取续跑快照：已完成 %d 张，剩余 %d 张", snapshot.current_index, len(snapshot.remaining_images))
    return snapshot


def clear_resume_snapshot(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    LOGGER.debug("已删除续跑快照 %s", path)


class ProgressTracker:
    """维护计数器，只在编排线程中更新。"""

    def __init__(self, total: int = 0, stats: Optional[ProgressStats] = None) -> None:
        self.stats = stats or ProgressStats()
        self.total = total

    def record(self, status: str) -> None:
        if status == "processed":
            self.stats.processed += 1
        elif status == "skipped":
            self.stats.skipped += 1
        else:
            self.stats.errors += 1

    @property
    def completed(self) -> int:
        return self.stats.completed

    def snapshot(self, remaining: list[Path]) -> ResumeSnapshot:
        return ResumeSnapshot(
            current_index=self.completed,
            stats=ProgressStats.from_dict(self.stats.to_dict()),
            remaining_images=list(remaining),
        )

    def update(self, message: Optional[str] = None, status: str = "running") -> ProgressUpdate:
        return ProgressUpdate(
            total=self.total,
            completed=self.completed,
            message=message,
            status=status,
            processed=self.stats.processed,
            skipped=self.stats.skipped,
            errors=self.stats.errors,
        )
