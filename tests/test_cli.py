"""命令行：配置文件、试运行、执行、检查与备份管理。"""

from __future__ import annotations

import json
from pathlib import Path

from PIL import Image
from typer.testing import CliRunner

from image_watermarking.cli.main import app

runner = CliRunner()


def make_site(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    (root / "public").mkdir(parents=True)
    for name in ("a.png", "b.jpg"):
        Image.new("RGB", (320, 240), (20, 30, 40)).save(root / "public" / name)
    return root


def test_config_init_and_show(tmp_path: Path) -> None:
    path = tmp_path / "watermark-config.json"

    result = runner.invoke(app, ["config", "init", str(path)])
    assert result.exit_code == 0, result.output
    assert json.loads(path.read_text(encoding="utf-8"))["text"] == "P.F.O"

    assert runner.invoke(app, ["config", "init", str(path)]).exit_code == 1
    assert runner.invoke(app, ["config", "init", str(path), "--force"]).exit_code == 0

    shown = runner.invoke(app, ["config", "show", str(path)])
    assert shown.exit_code == 0, shown.output
    assert "配置有效" in shown.output

    path.write_text(json.dumps({"text": "", "position": "center"}), encoding="utf-8")
    invalid = runner.invoke(app, ["config", "show", str(path)])
    assert invalid.exit_code == 1
    assert "水印文本不能为空" in invalid.output


def test_run_dry_run(tmp_path: Path) -> None:
    root = make_site(tmp_path)
    before = (root / "public" / "a.png").read_bytes()

    result = runner.invoke(app, ["run", str(root), "--dry-run", "--report-dir", str(tmp_path / "reports")])

    assert result.exit_code == 0, result.output
    assert "试运行结果" in result.output
    assert (root / "public" / "a.png").read_bytes() == before
    assert not (root / ".backups").exists()


def test_run_then_validate(tmp_path: Path) -> None:
    root = make_site(tmp_path)
    reports = tmp_path / "reports"
    (root / "watermark-config.json").write_text(json.dumps({"text": "ACME", "position": "top-left"}), encoding="utf-8")

    result = runner.invoke(app, ["run", str(root), "--report-dir", str(reports), "--batch-size", "1"])

    assert result.exit_code == 0, result.output
    assert (reports / "watermarking-final-report.json").exists()
    assert "最终报告" in result.output

    checked = runner.invoke(app, ["validate", str(root), "--json"])
    assert checked.exit_code == 0, checked.output
    data = json.loads(checked.stdout)
    assert data["valid"] == 2
    assert len(data["watermarked"]) == 2


def test_validate_reports_invalid_files(tmp_path: Path) -> None:
    root = make_site(tmp_path)
    (root / "public" / "broken.webp").write_bytes(b"RIFF")

    result = runner.invoke(app, ["validate", str(root)])

    assert result.exit_code == 1
    assert "无效" in result.output

    data = json.loads(runner.invoke(app, ["validate", str(root), "--json"]).stdout)
    assert [Path(item["path"]).name for item in data["invalid"]] == ["broken.webp"]


def test_validate_uses_site_watermark_text(tmp_path: Path) -> None:
    root = make_site(tmp_path)
    (root / "public" / "logo.svg").write_text(
        '<svg xmlns="http://www.w3.org/2000/svg" width="100" height="50"><text>ACME</text></svg>',
        encoding="utf-8",
    )
    (root / "watermark-config.json").write_text(json.dumps({"text": "ACME"}), encoding="utf-8")

    result = runner.invoke(app, ["validate", str(root), "--json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert [Path(item).name for item in data["watermarked"]] == ["logo.svg"]


def test_run_rejects_missing_root(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", str(tmp_path / "missing")])
    assert result.exit_code != 0


def test_backups_list_and_cleanup(tmp_path: Path) -> None:
    root = make_site(tmp_path)
    assert "没有备份" in runner.invoke(app, ["backups", "list", str(root)]).output

    names = [f"2026-01-0{day}T10-00-00-000000Z" for day in (1, 2, 3)]
    for name in names:
        (root / ".backups" / name / "public").mkdir(parents=True)
        (root / ".backups" / name / "public" / "a.png").write_bytes(b"x")

    listed = runner.invoke(app, ["backups", "list", str(root)])
    assert listed.exit_code == 0
    assert names[2] in listed.output

    cleaned = runner.invoke(app, ["backups", "cleanup", str(root), "--keep", "1"])
    assert cleaned.exit_code == 0, cleaned.output
    assert sorted(path.name for path in (root / ".backups").iterdir()) == [names[2]]
