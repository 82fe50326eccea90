"""
sysaidmin.cli — Typer-based CLI entry-point.

This is what runs when a user types ``sysaidmin`` in their terminal.
Sub-commands:

    sysaidmin run plan.json            → classify, execute, record
    sysaidmin run - --dry-run          → read the plan from stdin, simulate
    sysaidmin check plan.json          → classification only, nothing runs
    sysaidmin info                     → print current config summary
    sysaidmin sessions                 → list recorded session snapshots
    sysaidmin show <snapshot>          → replay a recorded session
    sysaidmin restore /etc/foo.conf    → put a file back from its backup
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sysaidmin import __version__
from sysaidmin.config import SysaidminSettings, config_path, get_settings
from sysaidmin.errors import (
    BackupError,
    ConfigError,
    PlanParseError,
    PlanRejectedError,
    PolicyConfigError,
)
from sysaidmin.logging import configure_logging
from sysaidmin.plan.models import CommandTask, Plan, Task, TaskOutcome, TaskStatus
from sysaidmin.plan.parser import parse_plan

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="sysaidmin",
    help="sysaidmin — allowlist-gated execution of LLM-proposed sysadmin plans.",
    no_args_is_help=True,
    add_completion=True,
)
console = Console()

_STATUS_STYLES: dict[TaskStatus, str] = {
    TaskStatus.PROPOSED: "dim",
    TaskStatus.ALLOWED: "cyan",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.RUNNING: "blue",
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "bold red",
    TaskStatus.CANCELLED: "magenta",
}

# Characters of command output shown per outcome
_OUTPUT_PREVIEW = 400


# ---------------------------------------------------------------------------
# Callbacks (version flag)
# ---------------------------------------------------------------------------

def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold cyan]sysaidmin[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """sysaidmin — plan execution and safety gate for sysadmin automation."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(label: str | None, exc: BaseException) -> None:
    prefix = f"✗ {label}: " if label else "✗ "
    console.print(Text.assemble((prefix, "red"), str(exc)))


def _settings_or_exit() -> SysaidminSettings:
    try:
        settings = get_settings()
    except ConfigError as exc:
        _error("Configuration error", exc)
        raise typer.Exit(code=2)
    configure_logging(settings.log_level, settings.log_file)
    return settings


def _read_plan_or_exit(plan_file: str, request_id: str | None) -> Plan:
    try:
        raw = sys.stdin.read() if plan_file == "-" else Path(plan_file).read_text(encoding="utf-8")
    except OSError as exc:
        _error("Cannot read plan", exc)
        raise typer.Exit(code=2)
    try:
        return parse_plan(raw, request_id=request_id)
    except PlanParseError as exc:
        _error("Plan rejected", exc)
        raise typer.Exit(code=2)


def _target(task: Task) -> str:
    if isinstance(task, CommandTask):
        return task.command
    return f"{task.path} ({len(task.new_content)} bytes)"


def _status_text(status: TaskStatus) -> Text:
    return Text(status.value, style=_STATUS_STYLES[status])


def _print_outcome(outcome: TaskOutcome) -> None:
    label = "simulated " if outcome.simulated else ""
    console.print(
        Text.assemble(
            (f"  #{outcome.task_id} ", "bold"),
            (f"{label}{outcome.status.value}", _STATUS_STYLES[outcome.status]),
            "  ",
            outcome.detail,
        )
    )
    for name, text in (("stdout", outcome.stdout), ("stderr", outcome.stderr)):
        if text.strip():
            preview = text if len(text) <= _OUTPUT_PREVIEW else text[:_OUTPUT_PREVIEW] + "…"
            console.print(Text.assemble((f"     {name}: ", "dim"), preview.rstrip()), highlight=False)
    if outcome.diff:
        console.print(outcome.diff.rstrip(), markup=False, highlight=False)


def _print_summary(statuses: list[TaskStatus], *, dry_run: bool, title: str) -> None:
    counts = {s: statuses.count(s) for s in TaskStatus if statuses.count(s)}
    body = Text()
    for status, n in counts.items():
        body.append(f"{status.value}: ", style="bold")
        body.append(f"{n}\n", style=_STATUS_STYLES[status])
    if dry_run:
        body.append("dry-run: nothing on this machine was changed\n", style="dim")
    console.print(Panel(body, title=title, border_style="bright_blue"))


# ---------------------------------------------------------------------------
# sysaidmin run
# ---------------------------------------------------------------------------

@app.command()
def run(
    plan_file: str = typer.Argument(..., help="Plan JSON file, or '-' to read from stdin."),
    dry_run: Optional[bool] = typer.Option(  # noqa: UP007
        None, "--dry-run/--live", help="Simulate instead of executing (default from config)."
    ),
    request_id: Optional[str] = typer.Option(None, "--request-id", help="Identifier recorded with the session."),  # noqa: UP007
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Tasks run concurrently per group."),  # noqa: UP007
) -> None:
    """Classify and execute a plan, then record the session."""
    from sysaidmin.orchestrator import create_orchestrator  # lazy import to keep startup fast

    settings = _settings_or_exit()
    if workers is not None:
        settings = settings.model_copy(update={"max_workers": workers})
    plan = _read_plan_or_exit(plan_file, request_id)

    try:
        orchestrator = create_orchestrator(settings)
    except PolicyConfigError as exc:
        _error("Allowlist error", exc)
        raise typer.Exit(code=2)

    mode = "dry-run" if (settings.dry_run if dry_run is None else dry_run) else "live"
    console.print(f"[bold]Plan {plan.request_id}[/bold] — {len(plan)} task(s), [cyan]{mode}[/cyan]")
    if plan.summary:
        console.print(Text(plan.summary, style="dim"))

    orchestrator.subscribe(_print_outcome)
    try:
        handle = orchestrator.run(plan, dry_run=dry_run)
    except PlanRejectedError as exc:
        _error(None, exc)
        raise typer.Exit(code=1)

    _print_summary(
        [handle.status_of(t.id) for t in plan.tasks],
        dry_run=handle.dry_run,
        title=f"[bold]Plan {plan.request_id}[/bold]",
    )
    if handle.snapshot_path:
        console.print(f"[dim]Session recorded: {handle.snapshot_path}[/dim]")
    if handle.audit_degraded:
        for err in handle.audit_errors:
            console.print(f"[bold red]⚠  AUDIT DEGRADED:[/bold red] {err}")
    if handle.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# sysaidmin check
# ---------------------------------------------------------------------------

@app.command()
def check(
    plan_file: str = typer.Argument(..., help="Plan JSON file, or '-' to read from stdin."),
) -> None:
    """Show how the allowlist would classify a plan.  Nothing is executed."""
    from sysaidmin.safety.allowlist import Allowlist

    settings = _settings_or_exit()
    plan = _read_plan_or_exit(plan_file, None)
    try:
        allowlist = Allowlist.from_settings(settings.allowlist)
    except PolicyConfigError as exc:
        _error("Allowlist error", exc)
        raise typer.Exit(code=2)

    table = Table(title=f"Plan {plan.request_id}", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Verdict")
    table.add_column("Reason")
    for task in plan.tasks:
        verdict = allowlist.classify(task)
        table.add_row(
            str(task.id),
            task.kind,
            Text(_target(task)),
            _status_text(verdict.status),
            Text(verdict.reason or ""),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# sysaidmin info
# ---------------------------------------------------------------------------

@app.command()
def info() -> None:
    """Print the current configuration summary."""
    settings = _settings_or_exit()
    allowlist = settings.allowlist

    body = Text.assemble(
        ("Config:    ", "bold"),
        (str(config_path()), "cyan"),
        "\n",
        ("Mode:      ", "bold"),
        ("dry-run" if settings.dry_run else "live", "yellow" if settings.dry_run else "green"),
        "\n",
        ("Shell:     ", "bold"),
        (settings.default_shell, "green"),
        "\n",
        ("Allowlist: ", "bold"),
        (
            f"{len(allowlist.command_patterns)} command / {len(allowlist.file_patterns)} file patterns, "
            f"edits ≤ {allowlist.max_edit_size_kb} KiB",
            "red" if not (allowlist.command_patterns or allowlist.file_patterns) else "cyan",
        ),
        "\n",
        ("Sessions:  ", "bold"),
        (settings.session_dir, "cyan"),
        "\n",
    )

    console.print(
        Panel(body, title=f"[bold]sysaidmin v{__version__}[/bold]", border_style="bright_blue")
    )


# ---------------------------------------------------------------------------
# sysaidmin sessions / show
# ---------------------------------------------------------------------------

@app.command()
def sessions(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="How many recent sessions to list."),
) -> None:
    """List recorded session snapshots, newest last."""
    from sysaidmin.session.recorder import SessionRecorder

    settings = _settings_or_exit()
    paths = SessionRecorder(settings.session_dir).list_snapshots()
    if not paths:
        console.print(f"[dim]No sessions recorded in {settings.session_dir}.[/dim]")
        return
    for path in paths[-limit:]:
        console.print(str(path), soft_wrap=True, highlight=False)


@app.command()
def show(
    snapshot: Path = typer.Argument(..., help="Path to a recorded plan-*.json snapshot."),
) -> None:
    """Replay a recorded session: the plan and what happened to each task."""
    from sysaidmin.session.recorder import SessionRecorder

    settings = _settings_or_exit()
    try:
        recorded = SessionRecorder(settings.session_dir).load(snapshot)
    except (OSError, ValueError, KeyError) as exc:
        _error("Cannot load snapshot", exc)
        raise typer.Exit(code=2)

    console.print(
        f"[bold]Plan {recorded.plan.request_id}[/bold] — "
        f"{recorded.started_at:%Y-%m-%d %H:%M:%S} → {recorded.finished_at:%H:%M:%S} UTC"
    )
    for task, outcome in zip(recorded.plan.tasks, recorded.outcomes):
        console.print(Text.assemble(("  ", ""), (task.kind, "dim"), " ", _target(task)), highlight=False)
        _print_outcome(outcome)
    _print_summary(
        [o.status for o in recorded.outcomes],
        dry_run=recorded.dry_run,
        title=f"[bold]Plan {recorded.plan.request_id}[/bold]",
    )


# ---------------------------------------------------------------------------
# sysaidmin restore
# ---------------------------------------------------------------------------

@app.command()
def restore(
    path: Path = typer.Argument(..., help="The original file (not the .sysaidmin.bak copy)."),
    discard: bool = typer.Option(False, "--discard", help="Delete the backup after restoring."),
) -> None:
    """Restore a file from its sysaidmin backup."""
    from sysaidmin.executor.backup import BackupManager

    _settings_or_exit()
    manager = BackupManager()
    record = manager.find(path)
    if record is None:
        console.print(f"[red]✗ No backup found for {path}[/red]")
        raise typer.Exit(code=1)
    try:
        manager.restore(record)
        if discard:
            manager.discard(record)
    except BackupError as exc:
        _error(None, exc)
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Restored {path} from {record.backup_path}")


# ---------------------------------------------------------------------------
# Entry-point (for `python -m sysaidmin.cli`)
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
