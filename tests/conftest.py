"""Pytest fixtures for loadstage tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from loadstage.clock import FakeClock
from loadstage.models import (
    Check,
    Comparator,
    MetricSelector,
    RequestTemplate,
    Scenario,
    Stage,
    Threshold,
)
from loadstage.runner import LoadRun


@pytest.fixture
def signup_scenario_path(tmp_path: Path) -> Path:
    """Ramp-hold-ramp signup scenario, as shipped under scenarios/."""
    path = tmp_path / "signup-load.yaml"
    path.write_text(
        """
name: signup-load
stages:
  - duration: 1m
    target: 100
  - duration: 2m
    target: 100
  - duration: 1m
    target: 0
pause: 1s
request:
  method: POST
  url: http://localhost:3333/signup
  json:
    email: "${uid}@qa.com.br"
    password: securePassword123
checks:
  - name: is status 201
    status: 201
thresholds:
  http_req_duration:
    - p(95)<2000
  http_req_failed:
    - rate<0.01
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def minimal_scenario_path(tmp_path: Path) -> Path:
    """Sub-second scenario for runs on the real clock."""
    path = tmp_path / "quick.yaml"
    path.write_text(
        """
name: quick
stages:
  - duration: 300ms
    target: 2
pause: 50ms
tick: 50ms
request:
  url: http://localhost:3333/health
checks:
  - status: 200
thresholds:
  http_req_failed:
    - rate<0.01
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def signup_scenario() -> Callable[..., Scenario]:
    """Factory for an in-memory signup scenario with k6-style thresholds."""

    def build(
        stages: tuple[Stage, ...] = (Stage(30.0, 10),),
        pause_seconds: float = 1.0,
        expect_status: int = 201,
    ) -> Scenario:
        return Scenario(
            name="signup",
            stages=stages,
            request=RequestTemplate(
                url="http://localhost:3333/signup",
                method="POST",
                name="signup",
                body_factory=lambda: {"email": "u@qa.com.br", "password": "securePassword123"},
            ),
            checks=(Check(f"is status {expect_status}", lambda r: r.status_code == expect_status),),
            thresholds=(
                Threshold(MetricSelector.LATENCY_P95, Comparator.LT, 2000.0, "http_req_duration: p(95)<2000"),
                Threshold(MetricSelector.ERROR_RATE, Comparator.LT, 0.01, "http_req_failed: rate<0.01"),
            ),
            pause_seconds=pause_seconds,
        )

    return build


def status_transport(status: int) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status, json={"ok": status < 400}))


@pytest.fixture
def transport_factory() -> Callable[[int], httpx.MockTransport]:
    return status_transport


async def drive(run: LoadRun, clock: FakeClock, step: float = 0.1, on_tick: Callable[[float], None] | None = None):
    """Run `run` to completion, advancing the fake clock by `step` per loop turn."""
    task = asyncio.create_task(run.run())
    while not task.done():
        await asyncio.sleep(0.001)
        clock.advance(step)
        if on_tick is not None:
            on_tick(clock.now())
    return task.result()


@pytest.fixture
def clock_driver():
    return drive
