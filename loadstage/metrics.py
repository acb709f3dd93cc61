"""Metrics aggregation with a bounded memory footprint.

Ring-buffer storage (deque) for recent outcomes, T-Digest for streaming
percentiles, plain counters for everything else. All mutation goes through
record()/record_batch() under one lock, so snapshot() never sees half of an
outcome.

Percentiles: while every outcome is still in the ring buffer the snapshot
reports exact nearest-rank values; after the first eviction it switches to
the digest, which covers the whole run.
"""

from __future__ import annotations

import math
import threading
from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass
from itertools import islice

from tdigest import TDigest

from .exceptions import MetricsIntegrityError
from .logging_config import get_logger
from .models import (
    DEFAULT_MAX_RETAINED_SAMPLES,
    REPORTED_PERCENTILES,
    MetricsSnapshot,
    RequestOutcome,
)

logger = get_logger("metrics")

# Log warning threshold for overflow (fraction of max capacity)
OVERFLOW_WARNING_THRESHOLD_PCT = 0.95
MAX_ERROR_KEY_LENGTH = 200
TOP_ERRORS_LIMIT = 5


@dataclass
class TimeSeriesPoint:
    """Single one-second bucket for report charts."""

    second: int
    requests: int
    avg_ms: float
    p95_ms: float
    error_rate: float


def nearest_rank(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile of an ascending list. 0.0 for an empty list."""
    if not sorted_values:
        return 0.0
    rank = math.ceil(p / 100.0 * len(sorted_values))
    return sorted_values[min(max(rank, 1), len(sorted_values)) - 1]


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


class MetricsAggregator:
    """Thread- and task-safe streaming collector of RequestOutcomes.

    Overflow behavior: when the ring buffer is full the oldest outcomes are
    dropped from the buffer only; counters and the digest still include them.
    """

    __slots__ = (
        "_lock", "_results", "_max_results", "_digest", "_total", "_failed",
        "_sum_ms", "_min_ms", "_max_ms", "_status_counts", "_error_counts",
        "_check_pass", "_check_fail", "_start_time", "_end_time",
        "_overflow_count", "_overflow_warned", "_broken",
        "_sorted_ms", "_unsorted_ms",
    )

    def __init__(self, max_results: int = DEFAULT_MAX_RETAINED_SAMPLES) -> None:
        if max_results < 1:
            raise ValueError("max_results must be >= 1")
        self._lock = threading.Lock()
        self._results: deque[RequestOutcome] = deque(maxlen=max_results)
        self._max_results = max_results
        self._digest = TDigest()
        self._total = 0
        self._failed = 0
        self._sum_ms = 0.0
        self._min_ms = math.inf
        self._max_ms = 0.0
        self._status_counts: dict[str, int] = defaultdict(int)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._check_pass: dict[str, int] = defaultdict(int)
        self._check_fail: dict[str, int] = defaultdict(int)
        self._start_time: float | None = None
        # Exact-percentile inputs while nothing has been evicted: a sorted
        # prefix plus latencies recorded since the last snapshot
        self._sorted_ms: list[float] = []
        self._unsorted_ms: list[float] = []
        self._end_time: float | None = None
        self._overflow_count = 0
        self._overflow_warned = False
        self._broken: BaseException | None = None

    @property
    def overflow_count(self) -> int:
        """Outcomes evicted from the ring buffer (still counted in totals)."""
        return self._overflow_count

    @property
    def total_recorded(self) -> int:
        return self._total

    def record(self, outcome: RequestOutcome) -> None:
        """Record one outcome atomically."""
        with self._lock:
            self._guarded_add(outcome)

    def record_batch(self, outcomes: Iterable[RequestOutcome]) -> None:
        """Record several outcomes under a single lock acquisition."""
        with self._lock:
            for outcome in outcomes:
                self._guarded_add(outcome)

    def _guarded_add(self, outcome: RequestOutcome) -> None:
        if self._broken is not None:
            raise MetricsIntegrityError(
                "metrics aggregator is no longer consistent", original_error=self._broken
            )
        try:
            self._add_locked(outcome)
        except Exception as e:
            self._broken = e
            logger.exception("Metrics aggregation failed; totals can no longer be trusted")
            raise MetricsIntegrityError("failed to record request outcome", original_error=e) from e

    def _add_locked(self, outcome: RequestOutcome) -> None:
        if self._start_time is None:
            self._start_time = outcome.timestamp
        if len(self._results) >= self._max_results:
            self._overflow_count += 1
            if not self._overflow_warned:
                logger.warning(
                    "Outcome buffer full (%d); switching to digest percentiles for the rest of the run",
                    self._max_results,
                )
                self._overflow_warned = True
            self._sorted_ms.clear()
            self._unsorted_ms.clear()
        self._results.append(outcome)

        latency = outcome.latency_ms
        self._digest.update(latency)
        if self._overflow_count == 0:
            self._unsorted_ms.append(latency)
        self._total += 1
        self._sum_ms += latency
        if latency < self._min_ms:
            self._min_ms = latency
        if latency > self._max_ms:
            self._max_ms = latency

        key = str(outcome.status_code) if outcome.status_code is not None else "Error"
        self._status_counts[key] += 1

        if outcome.failed:
            self._failed += 1
            if outcome.error:
                self._error_counts[outcome.error[:MAX_ERROR_KEY_LENGTH]] += 1
            elif outcome.failed_checks:
                self._error_counts[f"check failed: {outcome.failed_checks[0]}"] += 1
            else:
                self._error_counts[f"HTTP {outcome.status_code}"] += 1

        for name in outcome.passed_checks:
            self._check_pass[name] += 1
        for name in outcome.failed_checks:
            self._check_fail[name] += 1

    def mark_start(self, t: float) -> None:
        with self._lock:
            self._start_time = t

    def mark_end(self, t: float) -> None:
        with self._lock:
            self._end_time = t

    def merge(self, other: "MetricsAggregator") -> None:
        """Fold another aggregator's totals into this one (e.g. per-phase collectors)."""
        if other is self:
            raise ValueError("cannot merge an aggregator into itself")
        with other._lock:
            results = list(other._results)
            digest = other._digest
            counters = (other._total, other._failed, other._sum_ms, other._min_ms, other._max_ms)
            maps = (
                dict(other._status_counts), dict(other._error_counts),
                dict(other._check_pass), dict(other._check_fail),
            )
            start, end = other._start_time, other._end_time
        with self._lock:
            self._digest = self._digest + digest
            total, failed, sum_ms, min_ms, max_ms = counters
            self._results.extend(results)
            self._total += total
            self._overflow_count = self._total - len(self._results)
            if self._overflow_count == 0:
                self._unsorted_ms.extend(r.latency_ms for r in results)
            else:
                self._sorted_ms.clear()
                self._unsorted_ms.clear()
            self._failed += failed
            self._sum_ms += sum_ms
            self._min_ms = min(self._min_ms, min_ms)
            self._max_ms = max(self._max_ms, max_ms)
            for mine, theirs in zip(
                (self._status_counts, self._error_counts, self._check_pass, self._check_fail), maps
            ):
                for k, v in theirs.items():
                    mine[k] += v
            if start is not None and (self._start_time is None or start < self._start_time):
                self._start_time = start
            if end is not None and (self._end_time is None or end > self._end_time):
                self._end_time = end

    def snapshot(self) -> MetricsSnapshot:
        """Point-in-time aggregate consistent with every record() that returned before it."""
        with self._lock:
            total = self._total
            if total and self._overflow_count == 0:
                ordered = self._sorted_latencies_locked()
                percentiles = {p: nearest_rank(ordered, p) for p in REPORTED_PERCENTILES}
            elif total:
                percentiles = {p: _percentile_from_digest(self._digest, p) for p in REPORTED_PERCENTILES}
            else:
                percentiles = {p: 0.0 for p in REPORTED_PERCENTILES}

            names = set(self._check_pass) | set(self._check_fail)
            check_counts = {n: (self._check_pass.get(n, 0), self._check_fail.get(n, 0)) for n in sorted(names)}
            top_errors = dict(sorted(self._error_counts.items(), key=lambda x: x[1], reverse=True)[:TOP_ERRORS_LIMIT])

            end = self._end_time
            if end is None and self._results:
                end = self._results[-1].timestamp
            elapsed = (end - self._start_time) if (end is not None and self._start_time is not None) else 0.0

            return MetricsSnapshot(
                total_requests=total,
                failed_requests=self._failed,
                latency_percentiles=percentiles,
                avg_latency_ms=self._sum_ms / total if total else 0.0,
                min_latency_ms=self._min_ms if total else 0.0,
                max_latency_ms=self._max_ms,
                checks_passed=sum(self._check_pass.values()),
                checks_failed=sum(self._check_fail.values()),
                check_counts=check_counts,
                status_code_counts=dict(self._status_counts),
                top_errors=top_errors,
                elapsed_seconds=max(0.0, elapsed),
            )

    def _sorted_latencies_locked(self) -> list[float]:
        # Timsort merges the sorted prefix with the new tail in near-linear time
        if self._unsorted_ms:
            self._sorted_ms.extend(self._unsorted_ms)
            self._sorted_ms.sort()
            self._unsorted_ms.clear()
        return self._sorted_ms

    def recent_outcomes(self, n: int) -> list[RequestOutcome]:
        """Last n outcomes still held in the ring buffer (newest last)."""
        with self._lock:
            total = len(self._results)
            if total <= n:
                return list(self._results)
            return list(islice(self._results, total - n, None))

    def latencies(self) -> list[float]:
        """Latencies still held in the ring buffer (for histograms)."""
        with self._lock:
            return [r.latency_ms for r in self._results]

    def time_series_1s(self) -> list[TimeSeriesPoint]:
        """Bucket retained outcomes by whole seconds since the run start."""
        with self._lock:
            results = list(self._results)
            start = self._start_time or 0.0
        if not results:
            return []

        buckets: dict[int, list[RequestOutcome]] = defaultdict(list)
        for r in results:
            buckets[max(0, int(r.timestamp - start))].append(r)

        out: list[TimeSeriesPoint] = []
        for sec in sorted(buckets):
            bucket = buckets[sec]
            times = sorted(r.latency_ms for r in bucket)
            failed = sum(1 for r in bucket if r.failed)
            out.append(
                TimeSeriesPoint(
                    second=sec,
                    requests=len(bucket),
                    avg_ms=sum(times) / len(times),
                    p95_ms=nearest_rank(times, 95),
                    error_rate=failed / len(bucket),
                )
            )
        return out
