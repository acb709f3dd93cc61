"""Threshold parsing and evaluation.

evaluate() is pure: it reads a MetricsSnapshot and returns a RunResult.
parse_threshold() turns the k6-style expressions used in scenario files
(`http_req_duration: ["p(95)<2000"]`) into Threshold objects.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

from .exceptions import LoadstageConfigError
from .models import (
    Comparator,
    MetricSelector,
    MetricsSnapshot,
    RunResult,
    Threshold,
    ThresholdResult,
)

_RESOLVERS: dict[MetricSelector, Callable[[MetricsSnapshot], float]] = {
    MetricSelector.LATENCY_P50: lambda s: s.percentile(50),
    MetricSelector.LATENCY_P90: lambda s: s.percentile(90),
    MetricSelector.LATENCY_P95: lambda s: s.percentile(95),
    MetricSelector.LATENCY_P99: lambda s: s.percentile(99),
    MetricSelector.LATENCY_AVG: lambda s: s.avg_latency_ms,
    MetricSelector.LATENCY_MIN: lambda s: s.min_latency_ms,
    MetricSelector.LATENCY_MAX: lambda s: s.max_latency_ms,
    MetricSelector.ERROR_RATE: lambda s: s.error_rate,
    MetricSelector.CHECK_FAILURE_RATE: lambda s: s.check_failure_rate,
    MetricSelector.CHECK_PASS_RATE: lambda s: s.check_pass_rate,
    MetricSelector.REQUEST_RATE: lambda s: s.request_rate,
}


def resolve_metric(snapshot: MetricsSnapshot, selector: MetricSelector) -> float:
    return _RESOLVERS[selector](snapshot)


def evaluate(
    snapshot: MetricsSnapshot,
    thresholds: Iterable[Threshold],
    *,
    completed: bool = True,
    abort_reason: str | None = None,
) -> RunResult:
    """Check every threshold against the snapshot, in declaration order.

    overall_pass is the AND of all results (true when there are none) and
    is forced false for a run that did not complete.
    """
    results = tuple(
        ThresholdResult(threshold=t, passed=t.comparator.apply(observed, t.bound), observed=observed)
        for t in thresholds
        for observed in (resolve_metric(snapshot, t.metric),)
    )
    return RunResult(
        snapshot=snapshot,
        threshold_results=results,
        overall_pass=completed and all(r.passed for r in results),
        completed=completed,
        abort_reason=abort_reason,
    )


def failed_thresholds(result: RunResult) -> list[ThresholdResult]:
    return [r for r in result.threshold_results if not r.passed]


# --- Scenario file expressions ---

_EXPR_RE = re.compile(
    r"^\s*(?P<agg>[a-z_]+(?:\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))?)?\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*(?P<bound>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_LATENCY_AGGREGATES = {
    "avg": MetricSelector.LATENCY_AVG,
    "min": MetricSelector.LATENCY_MIN,
    "max": MetricSelector.LATENCY_MAX,
    "med": MetricSelector.LATENCY_P50,
}
_PERCENTILE_SELECTORS = {
    50.0: MetricSelector.LATENCY_P50,
    90.0: MetricSelector.LATENCY_P90,
    95.0: MetricSelector.LATENCY_P95,
    99.0: MetricSelector.LATENCY_P99,
}
# metric name -> {aggregate -> selector}; rates only
_RATE_METRICS = {
    "http_req_failed": MetricSelector.ERROR_RATE,
    "checks": MetricSelector.CHECK_PASS_RATE,
    "http_reqs": MetricSelector.REQUEST_RATE,
}


def _latency_selector(agg: str, pct: str | None, source: str) -> MetricSelector:
    if agg.startswith("p("):
        selector = _PERCENTILE_SELECTORS.get(float(pct or 0))
        if selector is None:
            supported = ", ".join(f"p({p:g})" for p in _PERCENTILE_SELECTORS)
            raise LoadstageConfigError(
                f"Unsupported percentile in threshold {source!r}; supported: {supported}"
            )
        return selector
    selector = _LATENCY_AGGREGATES.get(agg)
    if selector is None:
        raise LoadstageConfigError(f"Unknown latency aggregate {agg!r} in threshold {source!r}")
    return selector


def parse_threshold(metric: str, expression: str) -> Threshold:
    """Parse one threshold expression for a metric name.

    Accepts k6 names (http_req_duration, http_req_failed, checks, http_reqs)
    and loadstage selector names (e.g. `latency_p95: ["<2000"]`).

    Raises:
        LoadstageConfigError: unknown metric, aggregate or malformed expression
    """
    source = f"{metric}: {expression}"
    m = _EXPR_RE.match(str(expression))
    if m is None:
        raise LoadstageConfigError(f"Malformed threshold expression {source!r}")
    agg = (m.group("agg") or "").replace(" ", "")
    comparator = Comparator(m.group("op"))
    bound = float(m.group("bound"))

    if metric == "http_req_duration":
        if not agg:
            raise LoadstageConfigError(f"Threshold {source!r} needs an aggregate such as p(95) or avg")
        selector = _latency_selector(agg, m.group("pct"), source)
    elif metric in _RATE_METRICS:
        if agg not in ("", "rate"):
            raise LoadstageConfigError(f"Metric {metric!r} only supports 'rate' in threshold {source!r}")
        selector = _RATE_METRICS[metric]
    else:
        try:
            selector = MetricSelector(metric)
        except ValueError:
            raise LoadstageConfigError(f"Unknown threshold metric {metric!r}") from None
        if agg:
            raise LoadstageConfigError(f"Selector metric {metric!r} takes a bare comparison, got {source!r}")
    return Threshold(metric=selector, comparator=comparator, bound=bound, source=source)
