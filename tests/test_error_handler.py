"""错误分类、恢复动作与重试计数。"""

from __future__ import annotations

import errno
from pathlib import Path

import pytest
from PIL import Image, UnidentifiedImageError

from image_watermarking.core.backup import BackupManager
from image_watermarking.core.exceptions import (
    BackupError,
    ErrorCategory,
    ImageLoadingError,
    PreservationError,
    UnsupportedFormatError,
)
from image_watermarking.processing.error_handler import (
    ErrorHandler,
    RecoveryAction,
    RecoveryLedger,
    SystemAction,
    classify_error,
)


@pytest.mark.parametrize(
    ("error", "category"),
    [
        (MemoryError(), ErrorCategory.MEMORY),
        (PermissionError(errno.EACCES, "denied"), ErrorCategory.PERMISSION),
        (OSError(errno.ENOSPC, "No space left on device"), ErrorCategory.STORAGE),
        (TimeoutError("timed out"), ErrorCategory.NETWORK),
        (UnsupportedFormatError("bmp"), ErrorCategory.FORMAT),
        (ImageLoadingError("bad"), ErrorCategory.CORRUPTION),
        (PreservationError("width changed"), ErrorCategory.PRESERVATION),
        (BackupError("copy failed", category=ErrorCategory.PERMISSION), ErrorCategory.PERMISSION),
        (UnidentifiedImageError("cannot identify image file"), ErrorCategory.CORRUPTION),
        (RuntimeError("image file is truncated"), ErrorCategory.CORRUPTION),
        (RuntimeError("something odd"), ErrorCategory.UNKNOWN),
    ],
)
def test_classify_error(error: BaseException, category: ErrorCategory) -> None:
    assert classify_error(error) is category


def make_handler(tmp_path: Path, **kwargs) -> tuple[ErrorHandler, BackupManager, Path, list]:
    image = tmp_path / "public" / "a.png"
    image.parent.mkdir(parents=True)
    Image.new("RGB", (16, 16), (1, 2, 3)).save(image)
    manager = BackupManager(tmp_path / ".backups", tmp_path)
    events: list = []
    handler = ErrorHandler(
        manager,
        RecoveryLedger(),
        retry_base_delay=0.5,
        disk_root=tmp_path,
        event_sink=lambda event, details: events.append((event, details)),
        **kwargs,
    )
    return handler, manager, image, events


def test_memory_errors_retry_with_backoff(tmp_path: Path) -> None:
    handler, _, image, _ = make_handler(tmp_path, max_retries=3)

    first = handler.handle_processing_failure(image, MemoryError())
    second = handler.handle_processing_failure(image, MemoryError())
    third = handler.handle_processing_failure(image, MemoryError())

    assert first.should_retry and first.delay == 0.5
    assert second.should_retry and second.delay == 1.0
    assert third.action is RecoveryAction.GIVE_UP
    assert handler.ledger.get(image) == 3

    handler.clear_recovery_attempts(image)
    assert handler.ledger.get(image) == 0


def test_failure_restores_from_backup(tmp_path: Path) -> None:
    handler, manager, image, events = make_handler(tmp_path)
    original = image.read_bytes()
    backup = manager.create_backup(image)
    image.write_bytes(b"half written")

    result = handler.handle_processing_failure(image, ImageLoadingError("decode failed"), backup)

    assert result.action is RecoveryAction.RESTORE_AND_SKIP
    assert result.restored
    assert image.read_bytes() == original
    assert events[-1][0] == "processing_failure"
    assert events[-1][1]["category"] == "corruption"


def test_format_errors_are_skipped(tmp_path: Path) -> None:
    handler, _, image, _ = make_handler(tmp_path)
    result = handler.handle_processing_failure(image, UnsupportedFormatError("tiff"))
    assert result.action is RecoveryAction.SKIP_UNSUPPORTED
    assert not result.restored


def test_system_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    handler, _, _, events = make_handler(tmp_path, min_free_space_mb=100)

    memory = handler.handle_system_error(MemoryError(), "batch_1")
    assert memory.can_continue and memory.action is SystemAction.REDUCE_BATCH_SIZE

    permission = handler.handle_system_error(PermissionError("denied"), "batch_2")
    assert not permission.can_continue and permission.action is SystemAction.ABORT

    monkeypatch.setattr(handler, "free_space_mb", lambda: 5000.0)
    assert handler.handle_system_error(OSError(errno.ENOSPC, "full"), "batch_3").can_continue
    monkeypatch.setattr(handler, "free_space_mb", lambda: 10.0)
    storage = handler.handle_system_error(OSError(errno.ENOSPC, "full"), "batch_4")
    assert not storage.can_continue

    assert handler.handle_system_error(ValueError("boom"), "batch_5").action is SystemAction.CONTINUE
    assert [event for event, _ in events].count("system_error") == 5


def test_corrupted_image_distinguishes_mislabeled_format(tmp_path: Path) -> None:
    handler, _, _, _ = make_handler(tmp_path)
    mislabeled = tmp_path / "photo.png"
    Image.new("RGB", (8, 8)).save(mislabeled, format="JPEG")
    garbage = tmp_path / "garbage.jpg"
    garbage.write_bytes(b"\x00\x01\x02\x03")
    truncated = tmp_path / "cut.png"
    truncated.write_bytes(b"\x89PNG\r\n\x1a\n")

    result = handler.handle_corrupted_image(mislabeled)
    assert result.action is RecoveryAction.SKIP
    assert (result.detected_format, result.expected_format) == ("jpeg", "png")

    assert handler.handle_corrupted_image(garbage).detected_format is None
    assert handler.handle_corrupted_image(truncated).detected_format == "png"


def test_detailed_error_report(tmp_path: Path) -> None:
    handler, _, _, _ = make_handler(tmp_path)
    report = handler.generate_detailed_error_report(OSError(errno.ENOSPC, "disk full"), {"file": "a.png"})

    assert report["category"] == "storage"
    assert report["context"] == {"file": "a.png"}
    assert set(report["troubleshooting"]) == {"immediate", "preventive", "escalation"}
