"""报告计数、最终报告与续跑快照。"""

from __future__ import annotations

import csv
import json
from pathlib import Path

from rich.console import Console

from image_watermarking.core.exceptions import ErrorCategory
from image_watermarking.core.final_report import (
    FinalReportGenerator,
    calculate_quality_score,
    efficiency_rating,
)
from image_watermarking.core.models import FileOutcome, ImageMetadata
from image_watermarking.core.progress import (
    ProgressStats,
    ProgressTracker,
    ResumeSnapshot,
    clear_resume_snapshot,
    load_resume_snapshot,
    save_resume_snapshot,
)
from image_watermarking.core.report import (
    ReportGenerator,
    category_label,
    format_duration,
    size_category,
)


def build_report(tmp_path: Path) -> ReportGenerator:
    report = ReportGenerator(tmp_path / "reports")
    report.start_timing()
    report.set_total_images(4)
    report.record_outcome(
        FileOutcome(path=tmp_path / "a.png", status="processed", duration=0.2, metadata=ImageMetadata(800, 600, "png", 3))
    )
    report.record_outcome(
        FileOutcome(path=tmp_path / "b.jpg", status="processed", duration=0.4, metadata=ImageMetadata(10, 10, "jpeg", 3))
    )
    report.record_outcome(FileOutcome(path=tmp_path / "c.png", status="skipped", message="已有水印"))
    report.record_outcome(
        FileOutcome(path=tmp_path / "d.png", status="error", message="denied", category=ErrorCategory.PERMISSION, attempts=1)
    )
    report.end_timing()
    return report


def test_report_counts_each_outcome_once(tmp_path: Path) -> None:
    report = build_report(tmp_path)
    data = report.generate_report()
    summary = data["summary"]

    assert (summary["processed"], summary["skipped"], summary["errors"]) == (2, 1, 1)
    assert summary["completed"] == 4
    assert summary["success_rate"] == round(2 / 3 * 100, 1)
    assert data["statistics"]["format_breakdown"] == {"png": 1, "jpg": 1}
    assert data["statistics"]["error_categories"] == {"Permission": 1}
    assert data["statistics"]["skipped_reasons"] == {"已有水印": 1}
    assert data["statistics"]["largest_image"]["width"] == 800
    assert data["statistics"]["smallest_image"]["pixels"] == 100
    assert "Permission" in data["troubleshooting"]
    assert data["errors"][0]["label"] == "Permission"
    assert report.get_processed_images() == [str(tmp_path / "a.png"), str(tmp_path / "b.jpg")]


def test_report_export_all(tmp_path: Path) -> None:
    report = build_report(tmp_path)
    report.log_event("system_error", {"context": "batch_1"})

    written = report.export_all()

    assert [path.name for path in written] == [
        "watermarking-report.json",
        "watermarking-detailed-logs.json",
        "watermarking-outcomes.csv",
    ]
    logs = json.loads(written[1].read_text(encoding="utf-8"))
    assert "system_error" in [entry["event"] for entry in logs["entries"]]
    with written[2].open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["status"] for row in rows] == ["processed", "processed", "skipped", "error"]
    assert rows[3]["category"] == "permission"

    error_files = report.export_all(error=True)
    assert error_files[0].name == "watermarking-error-report.json"


def test_report_helpers() -> None:
    assert category_label(ErrorCategory.CORRUPTION) == "Corrupted File"
    assert category_label(ErrorCategory.PRESERVATION) == "Processing Error"
    assert category_label(None) == "Processing Error"
    assert size_category(99_999) == "Small (<100K px)"
    assert size_category(5_000_000) == "Very Large (>=5M px)"
    assert format_duration(3.4) == "3.4s"
    assert format_duration(125) == "2m 5s"
    assert format_duration(3723) == "1h 2m 3s"


def test_quality_score_and_efficiency() -> None:
    assert calculate_quality_score(0.0, 0, 0) == 100
    assert calculate_quality_score(0.1, 1, 2) == 81
    assert calculate_quality_score(1.0, 10, 10) == 0
    assert efficiency_rating(0.95) == "Excellent"
    assert efficiency_rating(0.9) == "Good"
    assert efficiency_rating(0.7) == "Fair"
    assert efficiency_rating(0.5) == "Poor"


def test_final_report_status_and_readiness(tmp_path: Path) -> None:
    generator = FinalReportGenerator(tmp_path)
    clean = {"summary": {"total_images": 3, "processed": 2, "skipped": 1, "errors": 0, "processing_time": 1.5}}

    report = generator.generate(clean)
    assert report["executive_summary"]["overall_status"] == "SUCCESS"
    assert report["executive_summary"]["quality_score"] == 100
    assert report["executive_summary"]["processing_efficiency"] == "Excellent"
    assert report["deployment_readiness"]["ready"] is True
    assert report["deployment_readiness"]["confidence"] == "HIGH"
    assert report["processing_results"]["throughput"] == "120.0 images/min"

    validation = {"overall": {"status": "WARNING", "critical_issues": 0, "warnings": 1}}
    warned = generator.generate(clean, validation)
    assert warned["executive_summary"]["overall_status"] == "SUCCESS_WITH_WARNINGS"
    assert warned["deployment_readiness"]["confidence"] == "MEDIUM"

    failing = {"summary": {"total_images": 4, "processed": 2, "skipped": 0, "errors": 2, "processing_time": 1.0}}
    critical = {"overall": {"status": "FAIL", "critical_issues": 1, "warnings": 0}}
    bad = generator.generate(failing, critical)
    assert bad["executive_summary"]["overall_status"] == "CRITICAL_ISSUES"
    assert bad["executive_summary"]["quality_score"] == 65
    assert bad["deployment_readiness"]["ready"] is False
    assert len(bad["deployment_readiness"]["blockers"]) == 2
    assert bad["recommendations"]["priority"]

    interrupted = generator.generate(clean, interrupted=True)
    assert interrupted["executive_summary"]["overall_status"] == "INTERRUPTED"
    assert not interrupted["deployment_readiness"]["ready"]


def test_final_report_export(tmp_path: Path) -> None:
    base = build_report(tmp_path).generate_report()
    generator = FinalReportGenerator(tmp_path / "final")
    report = generator.generate(base)

    written = generator.export(report)

    assert [path.name for path in written] == [
        "watermarking-final-report.json",
        "watermarking-final-report-summary.json",
        "watermarking-final-report-readable.txt",
    ]
    summary = json.loads(written[1].read_text(encoding="utf-8"))
    assert summary["key_metrics"]["errors"] == 1
    text = written[2].read_text(encoding="utf-8")
    assert "d.png" in text and "Permission" in text

    console = Console(record=True, width=100)
    generator.print_final_summary(report, console)
    assert "SUCCESS_WITH_WARNINGS" in console.export_text()

    assert generator.export(report, error=True)[0].name == "watermarking-error-final-report.json"


def test_resume_snapshot_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "resume.json"
    tracker = ProgressTracker(total=5, stats=ProgressStats(processed=2, skipped=1))
    snapshot = tracker.snapshot([tmp_path / "d.png", tmp_path / "e.png"])

    save_resume_snapshot(snapshot, path)
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"currentIndex", "stats", "timestamp", "remainingImages"}
    assert raw["currentIndex"] == 3

    loaded = load_resume_snapshot(path)
    assert loaded is not None
    assert loaded.stats == ProgressStats(processed=2, skipped=1)
    assert loaded.remaining_images == [tmp_path / "d.png", tmp_path / "e.png"]

    clear_resume_snapshot(path)
    assert not path.exists()
    clear_resume_snapshot(path)
    assert load_resume_snapshot(path) is None


def test_corrupt_snapshot_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "resume.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_resume_snapshot(path) is None

    path.write_text(json.dumps({"currentIndex": "x"}), encoding="utf-8")
    assert load_resume_snapshot(path) is None

    snapshot = ResumeSnapshot.from_dict({"currentIndex": 1, "remainingImages": ["a.png"]})
    assert snapshot.stats.completed == 0
