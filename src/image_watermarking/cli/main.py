"""命令行入口。"""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from image_watermarking.core.backup import BackupManager
from image_watermarking.core.config import (
    BACKUP_DIRNAME,
    DEFAULT_STYLE_FILENAME,
    JobConfig,
    ProcessingOptions,
    WatermarkStyle,
    load_style_config,
    save_style_config,
    validate_style,
)
from image_watermarking.core.exceptions import WatermarkingError
from image_watermarking.core.final_report import FinalReportGenerator
from image_watermarking.core.progress import CancellationToken, ProgressUpdate
from image_watermarking.processing.pipeline import WatermarkingSystem, validate_tree
from image_watermarking.utils.logging import setup_logging

app = typer.Typer(help="为项目图片批量添加文字水印（原地写回，自动备份）。")
config_app = typer.Typer(help="水印样式配置文件。")
backups_app = typer.Typer(help="备份目录管理。")
app.add_typer(config_app, name="config")
app.add_typer(backups_app, name="backups")

console = Console()


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("添加水印", total=update.total)
        progress.update(
            task_id,
            completed=update.completed,
            description=f"添加水印 [green]{update.processed}[/] [yellow]{update.skipped}[/] [red]{update.errors}[/]",
        )

    return callback


def _install_interrupt(token: CancellationToken):
    """第一次 Ctrl+C 请求优雅停止，第二次恢复默认行为。"""

    def handler(signum, frame) -> None:  # noqa: ARG001
        console.print("[yellow]收到中断信号，当前文件完成后停止并保存续跑快照……[/yellow]")
        token.cancel("收到中断信号")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    return signal.signal(signal.SIGINT, handler)


@app.command("run")
def run_cli(  # noqa: PLR0913
    root: Path = typer.Argument(..., help="站点根目录（包含 projects/ 与 public/）"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="水印样式配置文件"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只检查并列出将要执行的动作，不修改文件"),
    parallel: bool = typer.Option(False, "--parallel", help="批次内并发处理"),
    concurrency: int = typer.Option(4, "--concurrency", help="并发处理的文件数上限"),
    batch_size: int = typer.Option(10, "--batch-size", help="每批处理的图片数量"),
    max_retries: int = typer.Option(3, "--max-retries", help="单个文件的最大尝试次数"),
    stop_on_error: bool = typer.Option(False, "--stop-on-error", help="遇到第一个错误即停止"),
    resume: Optional[Path] = typer.Option(None, "--resume", help="续跑快照文件"),
    report_dir: Optional[Path] = typer.Option(None, "--report-dir", help="报告输出目录，默认当前目录"),
    allow_unprotected: bool = typer.Option(False, "--allow-unprotected", help="备份失败时仍继续处理"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """执行批量加水印。"""

    setup_logging(verbose=verbose)
    root = root.expanduser().resolve()
    if not root.is_dir():
        raise typer.BadParameter(f"目录不存在: {root}", param_hint="ROOT")

    style_path = config_file or root / DEFAULT_STYLE_FILENAME
    options = ProcessingOptions(
        continue_on_error=not stop_on_error,
        max_retries=max_retries,
        batch_size=batch_size,
        parallel=parallel,
        max_concurrency=concurrency,
        dry_run=dry_run,
        verbose=verbose,
        resume_file=resume.expanduser().resolve() if resume else None,
        allow_unprotected=allow_unprotected,
        report_dir=(report_dir or Path.cwd()).expanduser().resolve(),
    )
    job = JobConfig(root=root, options=options, style=load_style_config(style_path))

    token = CancellationToken()
    previous = _install_interrupt(token)
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
    )
    try:
        system = WatermarkingSystem(job, cancel_token=token, progress_callback=_build_progress_callback(progress))
        with progress:
            summary = system.run()
    except WatermarkingError as exc:
        console.print(f"[red]处理失败：{exc}[/red]")
        console.print(f"错误报告已写入 {options.report_dir}")
        raise typer.Exit(code=1) from exc
    finally:
        signal.signal(signal.SIGINT, previous)

    if summary.status == "dry_run":
        plan = summary.plan or {}
        table = Table(title="试运行结果")
        table.add_column("动作")
        table.add_column("数量", justify="right")
        table.add_row("待处理", str(len(plan.get("would_process", []))))
        table.add_row("将跳过", str(len(plan.get("would_skip", []))))
        table.add_row("无效", str(len(plan.get("invalid", []))))
        console.print(table)
        for item in plan.get("invalid", []):
            console.print(f"[red]无效[/red] {item['path']}: {item['reason']}")
        return

    system.report.print_summary(console)
    if summary.final_report is not None:
        FinalReportGenerator().print_final_summary(summary.final_report, console)
    for path in summary.report_files:
        console.print(f"报告文件：{path}")
    if summary.status == "interrupted":
        console.print(f"[yellow]已中断，续跑快照：{summary.resume_file}[/yellow]")
        raise typer.Exit(code=130)


@app.command("validate")
def validate_cli(
    root: Path = typer.Argument(..., help="站点根目录"),
    as_json: bool = typer.Option(False, "--json", help="以 JSON 输出结果"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="水印样式配置文件"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """只读检查：图片完整性、已有水印与引用统计。"""

    setup_logging(verbose=verbose)
    root = root.expanduser().resolve()
    style = load_style_config(config_file or root / DEFAULT_STYLE_FILENAME)
    result = validate_tree(JobConfig(root=root, style=style))
    if as_json:
        typer.echo(json.dumps(result, ensure_ascii=False, indent=2))
        return

    stats = result["statistics"]
    table = Table(title="图片检查")
    table.add_column("项目", style="bold")
    table.add_column("数值", justify="right")
    table.add_row("图片总数", str(stats["total"]))
    table.add_row("有效", str(result["valid"]))
    table.add_row("无效", str(len(result["invalid"])))
    table.add_row("已有水印", str(len(result["watermarked"])))
    table.add_row("引用总数", str(result["references"]["total_references"]))
    console.print(table)
    for item in result["invalid"]:
        console.print(f"[red]无效[/red] {item['path']}: {item['reason']}")
    if result["invalid"]:
        raise typer.Exit(code=1)


@config_app.command("init")
def config_init(
    path: Path = typer.Argument(Path(DEFAULT_STYLE_FILENAME), help="配置文件路径"),
    force: bool = typer.Option(False, "--force", help="覆盖已存在的文件"),
) -> None:
    """写出默认水印样式配置。"""

    if path.exists() and not force:
        console.print(f"[yellow]{path} 已存在，使用 --force 覆盖[/yellow]")
        raise typer.Exit(code=1)
    save_style_config(WatermarkStyle(), path)
    console.print(f"已写入默认配置 {path}")


@config_app.command("show")
def config_show(path: Path = typer.Argument(Path(DEFAULT_STYLE_FILENAME), help="配置文件路径")) -> None:
    """显示并校验水印样式配置。"""

    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            style = WatermarkStyle.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            console.print(f"[red]无法读取配置 {path}：{exc}[/red]")
            raise typer.Exit(code=1) from exc
    else:
        console.print(f"[yellow]{path} 不存在，显示默认样式[/yellow]")
        style = WatermarkStyle()

    table = Table(title=str(path))
    table.add_column("字段", style="bold")
    table.add_column("值")
    for key, value in style.to_dict().items():
        table.add_row(key, json.dumps(value, ensure_ascii=False))
    console.print(table)

    errors = validate_style(style)
    for error in errors:
        console.print(f"[red]✗[/red] {error}")
    if errors:
        raise typer.Exit(code=1)
    console.print("[green]配置有效[/green]")


def _backup_manager(root: Path) -> BackupManager:
    root = root.expanduser().resolve()
    return BackupManager(root / BACKUP_DIRNAME, root)


@backups_app.command("list")
def backups_list(root: Path = typer.Argument(..., help="站点根目录")) -> None:
    """按时间倒序列出备份代。"""

    generations = _backup_manager(root).list_backups()
    if not generations:
        console.print("没有备份")
        return
    table = Table(title="备份")
    table.add_column("名称")
    table.add_column("文件数", justify="right")
    table.add_column("时间")
    for generation in generations:
        created = generation.created.isoformat() if generation.created else "-"
        table.add_row(generation.name, str(generation.file_count), created)
    console.print(table)


@backups_app.command("cleanup")
def backups_cleanup(
    root: Path = typer.Argument(..., help="站点根目录"),
    keep: int = typer.Option(5, "--keep", help="保留最近的备份代数量"),
) -> None:
    """删除较旧的备份代。"""

    setup_logging()
    summary = _backup_manager(root).cleanup_backups(keep)
    console.print(f"已删除 {len(summary.deleted)} 个，保留 {len(summary.kept)} 个")
    for error in summary.errors:
        console.print(f"[red]{error}[/red]")
    if summary.errors:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
