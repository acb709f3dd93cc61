"""Request execution: one HTTP request per iteration, checks, outcome, pause.

This module provides the per-user hot path:
- RequestExecutor.run_once: build, send, check, record, pause
- run_virtual_user: loop run_once until the user is told to stop
- create_client: shared async HTTP client factory

Network failures never raise out of run_once; they become failed outcomes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import httpx

from .clock import ClockSource, MonotonicClock
from .logging_config import get_logger
from .models import Check, RequestOutcome, RequestTemplate, VirtualUser

logger = get_logger("engine")

# Tuned for throughput: high connection limits, shared client.
DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_KEEPALIVE = 200
DEFAULT_KEEPALIVE_EXPIRY = 30.0
MAX_ERROR_LENGTH = 200

OutcomeSink = Callable[[RequestOutcome], None]


def create_client(
    http2: bool = True,
    limits: httpx.Limits | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client for a run.

    Args:
        http2: Enable HTTP/2 (multiplexing when the target supports it)
        limits: Custom connection limits (uses high defaults if not specified)
        transport: Replacement transport, e.g. httpx.MockTransport in tests

    Returns:
        AsyncClient to be used as an async context manager
    """
    limits = limits or httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    if transport is not None:
        return httpx.AsyncClient(transport=transport, limits=limits)
    return httpx.AsyncClient(http2=http2, limits=limits)


async def sleep_unless_set(clock: ClockSource, seconds: float, stop_event: asyncio.Event | None) -> None:
    """Pause for `seconds`, returning early once stop_event is set."""
    if seconds <= 0:
        # Always yield: a transport that never suspends would otherwise starve the loop.
        await asyncio.sleep(0)
        return
    if stop_event is None:
        await clock.sleep(seconds)
        return
    if stop_event.is_set():
        return
    sleeper = asyncio.ensure_future(clock.sleep(seconds))
    waiter = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait((sleeper, waiter), return_when=asyncio.FIRST_COMPLETED)
    finally:
        for fut in (sleeper, waiter):
            if not fut.done():
                fut.cancel()


class RequestExecutor:
    """Runs one iteration of the request template for a virtual user.

    The sink (normally MetricsAggregator.record) receives exactly one
    outcome per run_once call, including failures.
    """

    __slots__ = ("_client", "_template", "_checks", "_sink", "_pause", "_clock", "_warned_checks")

    def __init__(
        self,
        client: httpx.AsyncClient,
        template: RequestTemplate,
        sink: OutcomeSink,
        checks: Sequence[Check] = (),
        pause_seconds: float = 0.0,
        clock: ClockSource | None = None,
    ) -> None:
        self._client = client
        self._template = template
        self._checks = tuple(checks)
        self._sink = sink
        self._pause = pause_seconds
        self._clock = clock or MonotonicClock()
        self._warned_checks: set[str] = set()

    async def run_once(self, user_id: int, stop_event: asyncio.Event | None = None) -> RequestOutcome:
        outcome = await self._execute(user_id)
        self._sink(outcome)
        await sleep_unless_set(self._clock, self._pause, stop_event)
        return outcome

    async def _execute(self, user_id: int) -> RequestOutcome:
        tpl = self._template
        clock = self._clock
        try:
            content, headers = tpl.build_body()
        except Exception as e:  # noqa: BLE001 - a broken body factory fails the iteration, not the run
            logger.warning("Body factory for %s raised %s: %s", tpl.name, type(e).__name__, e)
            return RequestOutcome(
                status_code=None,
                latency_ms=0.0,
                checks_passed=False,
                timestamp=clock.now(),
                user_id=user_id,
                error=f"body factory error: {e}"[:MAX_ERROR_LENGTH],
                status_ok=False,
            )

        start = clock.now()
        try:
            response = await self._client.request(
                tpl.method,
                tpl.url,
                headers=headers,
                content=content,
                timeout=tpl.timeout_seconds,
            )
        except Exception as e:  # noqa: BLE001 - any transport failure is one failed outcome
            elapsed_ms = (clock.now() - start) * 1000.0
            error = str(e) or type(e).__name__
            return RequestOutcome(
                status_code=None,
                latency_ms=elapsed_ms,
                checks_passed=False,
                timestamp=start,
                user_id=user_id,
                error=error[:MAX_ERROR_LENGTH],
                status_ok=False,
            )
        elapsed_ms = (clock.now() - start) * 1000.0

        passed, failed = self._apply_checks(response)
        return RequestOutcome(
            status_code=response.status_code,
            latency_ms=elapsed_ms,
            checks_passed=not failed,
            timestamp=start,
            user_id=user_id,
            failed_checks=failed,
            passed_checks=passed,
            status_ok=response.status_code in tpl.expected_statuses,
        )

    def _apply_checks(self, response: httpx.Response) -> tuple[tuple[str, ...], tuple[str, ...]]:
        passed: list[str] = []
        failed: list[str] = []
        for check in self._checks:
            try:
                ok = bool(check.predicate(response))
            except Exception as e:  # noqa: BLE001 - predicate errors count as failures
                ok = False
                if check.name not in self._warned_checks:
                    self._warned_checks.add(check.name)
                    logger.warning("Check %r raised %s: %s", check.name, type(e).__name__, e)
            (passed if ok else failed).append(check.name)
        return tuple(passed), tuple(failed)


async def run_virtual_user(user: VirtualUser, executor: RequestExecutor) -> None:
    """Worker loop: iterate until the user is marked Stopping.

    The stop flag is read only between iterations, so a request that has
    started always completes and is recorded.
    """
    stop_event = user.stop_event
    is_set = stop_event.is_set
    while not is_set():
        await executor.run_once(user.id, stop_event)
        user.iterations += 1
