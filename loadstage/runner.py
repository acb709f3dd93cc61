"""Execution runner: tick loop, cancellation, live view, reports.

LoadRun wires the components for one run:
scheduler target -> pool.reconcile -> workers -> aggregator -> evaluate.
run_scenario_file is the front door used by the CLI.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console
from rich.live import Live

from .clock import ClockSource, MonotonicClock
from .config import load_scenario
from .dashboard import create_live_panel, progress_line
from .engine import RequestExecutor, create_client, run_virtual_user, sleep_unless_set
from .exceptions import LoadstageRunnerError
from .logging_config import get_logger
from .metrics import MetricsAggregator
from .models import RunResult, Scenario, VirtualUser
from .pool import VirtualUserPool
from .report import default_report_path, generate_html_report, generate_json_report, print_text_summary
from .scheduler import StageScheduler
from .thresholds import evaluate

logger = get_logger("runner")

LIVE_REFRESH_PER_SEC = 2
LIVE_REFRESH_SEC = 0.5
# When stdout is not a TTY (CI, pipes), interval between progress lines
STREAMING_FALLBACK_INTERVAL_SEC = 5.0


class LoadRun:
    """One execution of a Scenario. Not reusable: create a new LoadRun per run."""

    def __init__(
        self,
        scenario: Scenario,
        *,
        clock: ClockSource | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        aggregator: MetricsAggregator | None = None,
    ) -> None:
        self.scenario = scenario
        self.scheduler = StageScheduler(scenario.stages, scenario.start_target)
        self.clock = clock or MonotonicClock()
        self.aggregator = aggregator or MetricsAggregator(max_results=scenario.max_retained_samples)
        self._transport = transport
        self._pool: VirtualUserPool | None = None
        self._abort_event = asyncio.Event()
        self._abort_reason: str | None = None
        self._start: float | None = None
        self._current_target = scenario.start_target
        self._started = False
        self.result: RunResult | None = None

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return self.clock.now() - self._start

    @property
    def current_target(self) -> int:
        return self._current_target

    @property
    def live_users(self) -> int:
        return self._pool.live_count if self._pool is not None else 0

    @property
    def pool(self) -> VirtualUserPool | None:
        return self._pool

    @property
    def running(self) -> bool:
        return self._started and self.result is None

    def abort(self, reason: str = "aborted by user") -> None:
        """Stop the run early. Workers finish their in-flight request first."""
        if self._abort_reason is None:
            self._abort_reason = reason
            logger.info("Abort requested: %s", reason)
        self._abort_event.set()

    async def run(self) -> RunResult:
        """Drive the schedule to completion (or abort) and evaluate thresholds."""
        if self._started:
            raise LoadstageRunnerError("LoadRun can only be started once", context={"scenario": self.scenario.name})
        self._started = True
        scenario = self.scenario
        clock = self.clock
        scheduler = self.scheduler
        abort_reason: str | None = None

        log_ctx = {"scenario": scenario.name}
        logger.info(
            "Starting run: stages=%d, duration=%.1fs, peak_users=%d, url=%s",
            len(scenario.stages), scheduler.total_duration, scenario.peak_target, scenario.request.url,
            extra=log_ctx,
        )
        async with create_client(transport=self._transport) as client:
            executor = RequestExecutor(
                client,
                scenario.request,
                self.aggregator.record,
                checks=scenario.checks,
                pause_seconds=scenario.pause_seconds,
                clock=clock,
            )

            async def user_loop(user: VirtualUser) -> None:
                await run_virtual_user(user, executor)

            pool = VirtualUserPool(user_loop)
            self._pool = pool
            self._start = clock.now()
            self.aggregator.mark_start(self._start)

            while True:
                elapsed = clock.now() - self._start
                if pool.fatal_error is not None:
                    abort_reason = f"worker failure: {pool.fatal_error}"
                    break
                if self._abort_reason is not None:
                    abort_reason = self._abort_reason
                    break
                if scheduler.is_complete(elapsed):
                    break
                self._current_target = scheduler.target_at(elapsed)
                pool.reconcile(self._current_target)
                await sleep_unless_set(clock, scenario.tick_seconds, self._abort_event)

            pool.stop_all()
            await pool.drain()
            self._current_target = 0
            self.aggregator.mark_end(clock.now())

        if abort_reason is None and pool.fatal_error is not None:
            abort_reason = f"worker failure: {pool.fatal_error}"
        snapshot = self.aggregator.snapshot()
        self.result = evaluate(
            snapshot, scenario.thresholds, completed=abort_reason is None, abort_reason=abort_reason
        )
        logger.info(
            "Run finished: status=%s, requests=%d, failed=%d, p95_ms=%.1f, users_spawned=%d",
            self.result.status.value, snapshot.total_requests, snapshot.failed_requests,
            snapshot.percentile(95), pool.spawned_total,
            extra=log_ctx,
        )
        return self.result


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _setup_signal_handlers(run: LoadRun) -> dict[int, Any]:
    """Route SIGINT/SIGTERM to run.abort(). Returns the previous handlers."""
    loop = asyncio.get_running_loop()
    previous: dict[int, Any] = {}

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received (signal %d), finishing in-flight requests...", signum)
        loop.call_soon_threadsafe(run.abort, f"signal {signum}")

    signals = [signal.SIGINT]
    # Only set up SIGTERM on Unix-like systems
    if hasattr(signal, "SIGTERM"):
        signals.append(signal.SIGTERM)
    for sig in signals:
        previous[sig] = signal.signal(sig, _signal_handler)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


async def _live_view(run: LoadRun, console: Console) -> None:
    if _stdout_is_tty():
        with Live(create_live_panel(run), console=console, refresh_per_second=LIVE_REFRESH_PER_SEC) as live:
            while run.running:
                live.update(create_live_panel(run))
                await asyncio.sleep(LIVE_REFRESH_SEC)
            live.update(create_live_panel(run))
    else:
        while run.running:
            sys.stdout.write(progress_line(run))
            sys.stdout.flush()
            await asyncio.sleep(STREAMING_FALLBACK_INTERVAL_SEC)


async def run_with_live_view(run: LoadRun, console: Console | None = None, live: bool = True) -> RunResult:
    """Run with signal handling and an optional live view alongside."""
    previous = _setup_signal_handlers(run)
    try:
        if not live:
            return await run.run()
        run_task = asyncio.create_task(run.run())
        view_task = asyncio.create_task(_live_view(run, console or Console()))
        try:
            return await run_task
        finally:
            view_task.cancel()
            try:
                await view_task
            except asyncio.CancelledError:
                pass
    finally:
        _restore_signal_handlers(previous)


async def run_scenario_file(
    scenario_path: str | Path,
    report_path: str | Path | None = None,
    json_path: str | Path | None = None,
    live: bool = True,
    write_report: bool = True,
    scenario_override: Scenario | None = None,
) -> RunResult:
    """Load a scenario, run it, print the text summary and write reports."""
    scenario = scenario_override or await asyncio.to_thread(load_scenario, scenario_path)
    console = Console()
    run = LoadRun(scenario)
    start_dt = datetime.now(timezone.utc)
    result = await run_with_live_view(run, console=console, live=live)
    end_dt = datetime.now(timezone.utc)

    print_text_summary(result, scenario, console=console)
    if write_report:
        html_path = Path(report_path) if report_path else default_report_path(scenario.name, start_dt)
        generate_html_report(html_path, result, scenario, run.aggregator, start_dt=start_dt, end_dt=end_dt)
        console.print(f"[green]Report written to[/green] {html_path}")
    if json_path:
        generate_json_report(json_path, result, scenario, start_dt=start_dt, end_dt=end_dt)
        console.print(f"[dim]JSON report:[/dim] {json_path}")
    return result
