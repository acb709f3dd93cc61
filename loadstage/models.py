"""Data models for the loadstage engine.

Optimized for high-throughput, low-memory load testing:
- slots on hot-path classes to reduce memory and improve access speed
- Frozen dataclasses for everything that is declared once and read many times
- str Enums so values round-trip through YAML and JSON unchanged
"""

from __future__ import annotations

import asyncio
import operator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import orjson

if TYPE_CHECKING:
    import httpx

DEFAULT_PAUSE_SECONDS = 1.0
DEFAULT_TICK_SECONDS = 0.1
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETAINED_SAMPLES = 100_000
# k6 http_req_failed: anything outside 200-399 is a failed request
DEFAULT_EXPECTED_STATUSES = frozenset(range(200, 400))
REPORTED_PERCENTILES = (50.0, 90.0, 95.0, 99.0)


@dataclass(frozen=True, slots=True)
class Stage:
    """One leg of the schedule: reach `target` users over `duration_seconds`."""

    duration_seconds: float
    target: int


class VirtualUserState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


class VirtualUser:
    """A logical user owned by the pool. Mutable state, one asyncio task."""

    __slots__ = ("id", "state", "stop_event", "task", "iterations")

    def __init__(self, user_id: int) -> None:
        self.id = user_id
        self.state = VirtualUserState.IDLE
        self.stop_event = asyncio.Event()
        self.task: asyncio.Task[None] | None = None
        self.iterations = 0

    @property
    def is_live(self) -> bool:
        return self.state is not VirtualUserState.STOPPING

    def request_stop(self) -> None:
        self.state = VirtualUserState.STOPPING
        self.stop_event.set()

    def __repr__(self) -> str:
        return f"VirtualUser(id={self.id}, state={self.state.value}, iterations={self.iterations})"


@dataclass(frozen=True, slots=True)
class Check:
    """Named response predicate. A raising predicate counts as a failed check."""

    name: str
    predicate: Callable[["httpx.Response"], bool]


@dataclass(frozen=True)
class RequestTemplate:
    """What every iteration sends.

    body_factory is called once per request. It may return None, str, bytes,
    or a JSON-serializable dict/list (encoded with orjson and sent as JSON).
    """

    url: str
    method: str = "GET"
    name: str = "request"
    headers: dict[str, str] = field(default_factory=dict)
    body_factory: Callable[[], Any] | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    expected_statuses: frozenset[int] = DEFAULT_EXPECTED_STATUSES

    def build_body(self) -> tuple[bytes | None, dict[str, str]]:
        """Produce a fresh body and the headers to send with it."""
        if self.body_factory is None:
            return None, self.headers
        raw = self.body_factory()
        if raw is None:
            return None, self.headers
        if isinstance(raw, bytes):
            content = raw
        elif isinstance(raw, str):
            content = raw.encode("utf-8")
        else:
            content = orjson.dumps(raw)
        if "content-type" in {k.lower() for k in self.headers}:
            return content, self.headers
        return content, {**self.headers, "Content-Type": "application/json"}


@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """Result of a single request execution. Produced once, recorded once."""

    status_code: int | None
    latency_ms: float
    checks_passed: bool
    timestamp: float
    user_id: int = 0
    error: str | None = None
    failed_checks: tuple[str, ...] = ()
    passed_checks: tuple[str, ...] = ()
    status_ok: bool = True

    @property
    def failed(self) -> bool:
        return self.status_code is None or not self.status_ok or not self.checks_passed


class MetricSelector(str, Enum):
    """Which snapshot value a threshold reads."""

    LATENCY_P50 = "latency_p50"
    LATENCY_P90 = "latency_p90"
    LATENCY_P95 = "latency_p95"
    LATENCY_P99 = "latency_p99"
    LATENCY_AVG = "latency_avg"
    LATENCY_MIN = "latency_min"
    LATENCY_MAX = "latency_max"
    ERROR_RATE = "error_rate"
    CHECK_FAILURE_RATE = "check_failure_rate"
    CHECK_PASS_RATE = "check_pass_rate"
    REQUEST_RATE = "request_rate"


_COMPARATOR_FUNCS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


class Comparator(str, Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    def apply(self, observed: float, bound: float) -> bool:
        return _COMPARATOR_FUNCS[self.value](observed, bound)


@dataclass(frozen=True, slots=True)
class Threshold:
    """Pass/fail rule: `metric comparator bound`, e.g. latency_p95 < 2000."""

    metric: MetricSelector
    comparator: Comparator
    bound: float
    source: str = ""

    def describe(self) -> str:
        return self.source or f"{self.metric.value} {self.comparator.value} {self.bound:g}"


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    """Point-in-time aggregate. Latencies are milliseconds."""

    total_requests: int
    failed_requests: int
    latency_percentiles: dict[float, float] = field(default_factory=dict)
    avg_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    checks_passed: int = 0
    checks_failed: int = 0
    check_counts: dict[str, tuple[int, int]] = field(default_factory=dict)
    status_code_counts: dict[str, int] = field(default_factory=dict)
    top_errors: dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def successful_requests(self) -> int:
        return self.total_requests - self.failed_requests

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    @property
    def check_failure_rate(self) -> float:
        evaluated = self.checks_passed + self.checks_failed
        if evaluated == 0:
            return 0.0
        return self.checks_failed / evaluated

    @property
    def check_pass_rate(self) -> float:
        evaluated = self.checks_passed + self.checks_failed
        if evaluated == 0:
            return 1.0
        return self.checks_passed / evaluated

    @property
    def request_rate(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.total_requests / self.elapsed_seconds

    def percentile(self, rank: float) -> float:
        return self.latency_percentiles.get(float(rank), 0.0)


@dataclass(frozen=True, slots=True)
class ThresholdResult:
    threshold: Threshold
    passed: bool
    observed: float


class RunStatus(str, Enum):
    PASSED = "passed"
    THRESHOLDS_FAILED = "thresholds_failed"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class RunResult:
    """Created once at run end. overall_pass is false if a threshold failed or the run aborted."""

    snapshot: MetricsSnapshot
    threshold_results: tuple[ThresholdResult, ...]
    overall_pass: bool
    completed: bool = True
    abort_reason: str | None = None

    @property
    def status(self) -> RunStatus:
        if not self.completed:
            return RunStatus.ABORTED
        if not self.overall_pass:
            return RunStatus.THRESHOLDS_FAILED
        return RunStatus.PASSED


@dataclass(frozen=True)
class Scenario:
    """Everything a run needs, validated at load time."""

    name: str
    stages: tuple[Stage, ...]
    request: RequestTemplate
    checks: tuple[Check, ...] = ()
    thresholds: tuple[Threshold, ...] = ()
    pause_seconds: float = DEFAULT_PAUSE_SECONDS
    tick_seconds: float = DEFAULT_TICK_SECONDS
    start_target: int = 0
    max_retained_samples: int = DEFAULT_MAX_RETAINED_SAMPLES

    @property
    def total_duration_seconds(self) -> float:
        return sum(s.duration_seconds for s in self.stages)

    @property
    def peak_target(self) -> int:
        return max([self.start_target, *(s.target for s in self.stages)])
