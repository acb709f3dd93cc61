"""Integration tests for the run loop (mocked HTTP, fake clock)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import httpx
import orjson
import pytest

from loadstage.clock import FakeClock
from loadstage.exceptions import LoadstageRunnerError
from loadstage.metrics import MetricsAggregator
from loadstage.models import RunStatus, Stage
from loadstage.runner import LoadRun, run_scenario_file, run_with_live_view
from loadstage.scheduler import StageScheduler


def _mock_client(**kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")))


def test_ramp_against_healthy_target_passes(signup_scenario, transport_factory, clock_driver) -> None:
    live_seen: list[int] = []

    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(), clock=clock, transport=transport_factory(201))
        result = await clock_driver(run, clock, on_tick=lambda now: live_seen.append(run.live_users))
        return run, result

    run, result = asyncio.run(scenario())
    snap = result.snapshot
    assert result.overall_pass is True
    assert result.status is RunStatus.PASSED
    assert snap.total_requests > 50
    assert snap.failed_requests == 0
    assert snap.check_counts["is status 201"] == (snap.total_requests, 0)
    assert 8 <= max(live_seen) <= 10
    assert run.live_users == 0
    assert run.current_target == 0
    assert run.pool is not None and run.pool.spawned_total >= max(live_seen)


def test_ramp_against_failing_target_fails_thresholds(signup_scenario, transport_factory, clock_driver) -> None:
    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(), clock=clock, transport=transport_factory(500))
        return await clock_driver(run, clock)

    result = asyncio.run(scenario())
    snap = result.snapshot
    assert result.overall_pass is False
    assert result.completed is True
    assert result.status is RunStatus.THRESHOLDS_FAILED
    assert snap.total_requests > 0
    assert snap.failed_requests == snap.total_requests
    assert snap.error_rate == 1.0
    failed = [r for r in result.threshold_results if not r.passed]
    assert [r.threshold.describe() for r in failed] == ["http_req_failed: rate<0.01"]


def test_live_users_follow_schedule(signup_scenario, transport_factory, clock_driver) -> None:
    stages = (Stage(5, 6), Stage(5, 6), Stage(5, 0))
    scheduler = StageScheduler(stages)
    gaps: list[int] = []

    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(stages=stages), clock=clock, transport=transport_factory(201))

        def observe(now: float) -> None:
            if run.pool is not None and run.running:
                gaps.append(abs(run.live_users - scheduler.target_at(run.elapsed)))

        return await clock_driver(run, clock, on_tick=observe)

    result = asyncio.run(scenario())
    assert result.overall_pass
    # One tick of lag at most between the schedule and the pool
    assert gaps and max(gaps) <= 1


def test_abort_stops_run_and_marks_incomplete(signup_scenario, transport_factory, clock_driver) -> None:
    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(), clock=clock, transport=transport_factory(201))

        def maybe_abort(now: float) -> None:
            if now >= 5.0:
                run.abort("test abort")

        return run, await clock_driver(run, clock, on_tick=maybe_abort)

    run, result = asyncio.run(scenario())
    assert result.completed is False
    assert result.overall_pass is False
    assert result.status is RunStatus.ABORTED
    assert result.abort_reason == "test abort"
    assert result.snapshot.elapsed_seconds < 10
    assert all(r.passed for r in result.threshold_results)
    assert run.live_users == 0


class _FlakyAggregator(MetricsAggregator):
    __slots__ = ("calls",)

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def _add_locked(self, outcome) -> None:
        self.calls += 1
        if self.calls == 5:
            raise RuntimeError("counter corrupted")
        super()._add_locked(outcome)


def test_aggregator_failure_aborts_run(signup_scenario, transport_factory, clock_driver) -> None:
    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(), clock=clock, transport=transport_factory(201), aggregator=_FlakyAggregator())
        return await clock_driver(run, clock)

    result = asyncio.run(scenario())
    assert result.status is RunStatus.ABORTED
    assert result.overall_pass is False
    assert result.abort_reason is not None
    assert result.abort_reason.startswith("worker failure")
    assert result.snapshot.total_requests == 4


def test_run_cannot_start_twice(signup_scenario, transport_factory, clock_driver) -> None:
    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(stages=(Stage(1, 1),)), clock=clock, transport=transport_factory(201))
        await clock_driver(run, clock)
        with pytest.raises(LoadstageRunnerError):
            await run.run()

    asyncio.run(scenario())


def test_run_with_live_view_streams_progress_when_not_a_tty(signup_scenario, transport_factory, capsys) -> None:
    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(stages=(Stage(2, 2),)), clock=clock, transport=transport_factory(201))
        task = asyncio.create_task(run_with_live_view(run, live=True))
        while not task.done():
            await asyncio.sleep(0.001)
            clock.advance(0.1)
        return task.result()

    with patch("loadstage.runner._stdout_is_tty", return_value=False):
        result = asyncio.run(scenario())
    assert result.overall_pass
    assert "loadstage | " in capsys.readouterr().out


def test_run_scenario_file_writes_reports(minimal_scenario_path: Path, tmp_path: Path) -> None:
    report = tmp_path / "out" / "report.html"
    json_out = tmp_path / "out" / "report.json"
    with patch("loadstage.runner.create_client", side_effect=_mock_client):
        result = asyncio.run(
            run_scenario_file(minimal_scenario_path, report_path=report, json_path=json_out, live=False)
        )
    assert result.status is RunStatus.PASSED
    assert result.snapshot.total_requests >= 1
    assert "quick" in report.read_text(encoding="utf-8")
    data = orjson.loads(json_out.read_bytes())
    assert data["status"] == "passed"
    assert data["total_requests"] == result.snapshot.total_requests


def test_run_scenario_file_default_report_path(
    minimal_scenario_path: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    with patch("loadstage.runner.create_client", side_effect=_mock_client):
        asyncio.run(run_scenario_file(minimal_scenario_path, live=False))
    reports = list((tmp_path / "reports").glob("quick-*.html"))
    assert [p.name for p in reports] == [f"quick-{datetime.now(timezone.utc):%Y-%m-%d}.html"]


def test_run_scenario_file_no_report(minimal_scenario_path: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    with patch("loadstage.runner.create_client", side_effect=_mock_client):
        asyncio.run(run_scenario_file(minimal_scenario_path, live=False, write_report=False))
    assert not (tmp_path / "reports").exists()


def test_unexpected_request_errors_do_not_abort_run(signup_scenario, clock_driver) -> None:
    def reset(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("stream reset by peer")

    async def scenario():
        clock = FakeClock()
        run = LoadRun(signup_scenario(stages=(Stage(10.0, 3),)), clock=clock, transport=httpx.MockTransport(reset))
        return await clock_driver(run, clock)

    result = asyncio.run(scenario())
    snap = result.snapshot
    assert result.completed is True
    assert result.status is RunStatus.THRESHOLDS_FAILED
    assert snap.total_requests > 0
    assert snap.failed_requests == snap.total_requests
    assert snap.top_errors == {"stream reset by peer": snap.total_requests}
