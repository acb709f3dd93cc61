"""Rich live dashboard with low overhead for real-time metrics."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import MetricsSnapshot

if TYPE_CHECKING:
    from .runner import LoadRun

logger = get_logger("dashboard")


def _safe_snapshot(run: "LoadRun") -> MetricsSnapshot | None:
    try:
        return run.aggregator.snapshot()
    except Exception as e:  # noqa: BLE001
        logger.debug("Failed to read metrics snapshot: %s", e)
        return None


def format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def build_metrics_table(run: "LoadRun") -> Table:
    """Build a single Rich table with current metrics."""
    snap = _safe_snapshot(run)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    table.add_row("Target users", str(run.current_target))
    table.add_row("Live users", str(run.live_users))
    if snap is not None:
        table.add_row("Requests", str(snap.total_requests))
        table.add_row("Failed", str(snap.failed_requests))
        table.add_row("Req/s", f"{snap.request_rate:.1f}")
        table.add_row("Avg (ms)", f"{snap.avg_latency_ms:.1f}")
        table.add_row("P95 (ms)", f"{snap.percentile(95):.1f}")
        table.add_row("Error rate", f"{snap.error_rate * 100:.2f}%")
    else:
        for label in ("Requests", "Failed", "Req/s", "Avg (ms)", "P95 (ms)", "Error rate"):
            table.add_row(label, "-")
    return table


def create_live_panel(run: "LoadRun") -> Panel:
    """Create Rich Panel for live display."""
    elapsed = run.elapsed
    total = run.scenario.total_duration_seconds
    remaining = max(0.0, total - elapsed)
    table = build_metrics_table(run)
    table.add_row("Elapsed", f"{elapsed:.1f}s / {total:g}s")
    title = Text()
    title.append("loadstage ", style="bold magenta")
    title.append(f"| {run.scenario.name} | {elapsed:.1f}s / {total:g}s", style="dim")
    title.append(f" | ETA: {format_remaining(remaining)}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


def progress_line(run: "LoadRun") -> str:
    """One-line progress for non-TTY output (CI logs, docker without -t)."""
    snap = _safe_snapshot(run)
    total = run.scenario.total_duration_seconds
    requests = snap.total_requests if snap else 0
    err = snap.error_rate * 100 if snap else 0.0
    return (
        f"loadstage | {run.elapsed:.1f}s/{total:g}s | remaining: {format_remaining(total - run.elapsed)} "
        f"| vus={run.live_users}/{run.current_target} requests={requests} err%={err:.2f}\n"
    )
