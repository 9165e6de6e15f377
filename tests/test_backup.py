"""备份代的创建、恢复与清理。"""

from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image

from image_watermarking.core.backup import BackupManager, BackupRegistry, GENERATION_RE, verify_backup_file
from image_watermarking.core.exceptions import BackupError, ErrorCategory, RestoreError


def make_site(tmp_path: Path) -> tuple[Path, Path]:
    image = tmp_path / "projects" / "alpha" / "img" / "photo.png"
    image.parent.mkdir(parents=True)
    Image.new("RGB", (32, 24), (12, 34, 56)).save(image)
    return tmp_path, image


def test_backup_then_restore_is_byte_identical(tmp_path: Path) -> None:
    root, image = make_site(tmp_path)
    original = image.read_bytes()
    manager = BackupManager(root / ".backups", root)

    backup = manager.create_backup(image)

    assert GENERATION_RE.match(backup.relative_to(root / ".backups").parts[0])
    assert backup.relative_to(manager.generation_dir).as_posix() == "projects/alpha/img/photo.png"
    assert manager.get_backup_path(image) == backup

    image.write_bytes(b"clobbered")
    manager.restore_from_backup(image)
    assert image.read_bytes() == original


def test_restore_recreates_missing_directory(tmp_path: Path) -> None:
    root, image = make_site(tmp_path)
    original = image.read_bytes()
    manager = BackupManager(root / ".backups", root)
    backup = manager.create_backup(image)

    image.unlink()
    image.parent.rmdir()
    manager.restore_from_backup(image, backup)

    assert image.read_bytes() == original


def test_one_generation_per_run(tmp_path: Path) -> None:
    root, image = make_site(tmp_path)
    other = root / "public" / "logo.png"
    other.parent.mkdir()
    Image.new("RGB", (8, 8)).save(other)
    registry = BackupRegistry()
    manager = BackupManager(root / ".backups", root, registry)

    first = manager.create_backup(image)
    second = manager.create_backup(other)

    assert first.parents[3] == second.parents[1] == manager.generation_dir
    assert len(registry) == 2
    assert image in registry
    assert [g.file_count for g in manager.list_backups()] == [2]

    fresh = manager.start_generation()
    assert fresh != first.parents[3]
    assert manager.create_backup(image).parents[3] == fresh
    assert len(manager.list_backups()) == 2


def test_backup_errors(tmp_path: Path) -> None:
    manager = BackupManager(tmp_path / ".backups", tmp_path)
    with pytest.raises(BackupError) as excinfo:
        manager.create_backup(tmp_path / "missing.png")
    assert excinfo.value.category is ErrorCategory.STORAGE

    with pytest.raises(RestoreError):
        manager.restore_from_backup(tmp_path / "missing.png")


def test_verify_backup_file(tmp_path: Path) -> None:
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    text = tmp_path / "notes.txt"
    text.write_text("hi")
    good = tmp_path / "good.png"
    good.write_bytes(b"12345")

    assert verify_backup_file(tmp_path / "nope.png") == "备份文件不存在"
    assert verify_backup_file(empty) == "备份文件为空"
    assert "不受支持" in verify_backup_file(text)
    assert verify_backup_file(good, 5) is None
    assert "大小不一致" in verify_backup_file(good, 6)


def test_cleanup_keeps_most_recent(tmp_path: Path) -> None:
    backups = tmp_path / ".backups"
    names = [f"2024-01-0{day}T10-00-00-000000Z" for day in range(1, 8)]
    for name in names:
        (backups / name).mkdir(parents=True)
        (backups / name / "a.png").write_bytes(b"x")
    (backups / "not-a-generation").mkdir()
    manager = BackupManager(backups, tmp_path)

    listed = [generation.name for generation in manager.list_backups()]
    assert listed == sorted(names, reverse=True)

    summary = manager.cleanup_backups(keep=3)

    assert summary.kept == sorted(names, reverse=True)[:3]
    assert sorted(summary.deleted) == names[:4]
    assert summary.errors == []
    assert (backups / "not-a-generation").is_dir()
    assert len(manager.list_backups()) == 3


def test_cleanup_without_backups_is_safe(tmp_path: Path) -> None:
    summary = BackupManager(tmp_path / ".backups").cleanup_backups(keep=1)
    assert summary.deleted == [] and summary.kept == []


def test_cleanup_never_removes_current_generation(tmp_path: Path) -> None:
    root, image = make_site(tmp_path)
    backups = root / ".backups"
    (backups / "2999-01-01T00-00-00-000000Z").mkdir(parents=True)
    manager = BackupManager(backups, root)
    manager.create_backup(image)

    summary = manager.cleanup_backups(keep=1)

    assert manager.generation_dir.name in summary.kept
    assert manager.generation_dir.is_dir()
