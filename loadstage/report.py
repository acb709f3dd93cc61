"""Run reports: rich text summary, self-contained HTML (jinja2), JSON (orjson).

Reports only read a RunResult (plus the aggregator's retained samples for
charts); nothing here feeds back into pass/fail.
"""

from __future__ import annotations

import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape
from rich.console import Console
from rich.markup import escape

from . import __version__ as loadstage_version
from .metrics import MetricsAggregator
from .models import REPORTED_PERCENTILES, RunResult, RunStatus, Scenario

DEFAULT_REPORT_DIR = Path("reports")
REDACTED_PLACEHOLDER = "[REDACTED]"
HISTOGRAM_BUCKETS = 20

_STATUS_LABELS = {
    RunStatus.PASSED: "PASSED",
    RunStatus.THRESHOLDS_FAILED: "THRESHOLDS FAILED",
    RunStatus.ABORTED: "ABORTED",
}
_STATUS_STYLES = {
    RunStatus.PASSED: "bold green",
    RunStatus.THRESHOLDS_FAILED: "bold red",
    RunStatus.ABORTED: "bold yellow",
}


def mask_url(url: str, max_path_length: int = 120) -> str:
    """Remove query string and fragment from URL to avoid leaking tokens in reports."""
    if not url or not url.strip():
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return url[:max_path_length] + ("..." if len(url) > max_path_length else "")
    clean = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "", "", "", ""))
    if len(clean) > max_path_length:
        clean = clean[: max_path_length - 3] + "..."
    return clean


def mask_error_message(msg: str | None, max_length: int = 200) -> str:
    """Truncate error message and redact URLs to avoid leaking sensitive data."""
    if not msg:
        return ""
    msg = re.sub(r"https?://[^\s]+", REDACTED_PLACEHOLDER, msg)
    if len(msg) > max_length:
        return msg[: max_length - 3] + "..."
    return msg


def status_label(result: RunResult) -> str:
    return _STATUS_LABELS[result.status]


def default_report_path(scenario_name: str, when: datetime | None = None) -> Path:
    """reports/<scenario>-<YYYY-MM-DD>.html"""
    when = when or datetime.now(timezone.utc)
    return DEFAULT_REPORT_DIR / f"{scenario_name}-{when.strftime('%Y-%m-%d')}.html"


def _fmt_ms(v: float) -> str:
    if v >= 1000:
        return f"{v / 1000:.2f}s"
    return f"{v:.2f}ms"


def _dots(label: str, width: int = 28) -> str:
    return label + " " + "." * max(2, width - len(label)) + ":"


def print_text_summary(result: RunResult, scenario: Scenario, console: Console | None = None) -> None:
    """Print the end-of-run summary: checks, request metrics, thresholds, verdict."""
    console = console or Console()
    snap = result.snapshot
    console.print()
    console.print(
        f"  [bold]scenario[/bold]: {escape(scenario.name)} "
        f"({scenario.total_duration_seconds:g}s, peak {scenario.peak_target} users)"
    )
    console.print(f"  [bold]target[/bold]:   {escape(scenario.request.method)} {escape(mask_url(scenario.request.url))}")
    console.print()

    for name, (passes, fails) in snap.check_counts.items():
        total = passes + fails
        pct = 100.0 * passes / total if total else 0.0
        mark = "[green]✓[/green]" if fails == 0 else "[red]✗[/red]"
        console.print(f"  {mark} {escape(name)}  {pct:.0f}%  ✓ {passes} ✗ {fails}")
    if snap.check_counts:
        console.print()

    pct_text = " ".join(f"p({p:g})={_fmt_ms(snap.percentile(p))}" for p in REPORTED_PERCENTILES)
    console.print(f"  {_dots('http_req_duration')} avg={_fmt_ms(snap.avg_latency_ms)} "
                  f"min={_fmt_ms(snap.min_latency_ms)} max={_fmt_ms(snap.max_latency_ms)} {pct_text}")
    console.print(f"  {_dots('http_req_failed')} {snap.error_rate * 100:.2f}%  "
                  f"✓ {snap.failed_requests} ✗ {snap.successful_requests}")
    console.print(f"  {_dots('http_reqs')} {snap.total_requests}  {snap.request_rate:.2f}/s")
    if snap.top_errors:
        console.print()
        console.print("  [bold]top errors[/bold]")
        for msg, count in snap.top_errors.items():
            console.print(f"    {count:>6}  {escape(mask_error_message(msg))}")

    if result.threshold_results:
        console.print()
        console.print("  [bold]thresholds[/bold]")
        for tr in result.threshold_results:
            mark = "[green]✓[/green]" if tr.passed else "[red]✗[/red]"
            console.print(f"    {mark} {escape(tr.threshold.describe())}  (observed {tr.observed:.4g})")

    console.print()
    verdict = f"[{_STATUS_STYLES[result.status]}]{status_label(result)}[/]"
    if result.abort_reason:
        verdict += f" ({escape(result.abort_reason)})"
    console.print(f"  result: {verdict}")
    console.print()


def _histogram(times: list[float]) -> list[dict[str, Any]]:
    if not times:
        return []
    lo, hi = min(times), max(times)
    if hi <= lo:
        return [{"label": f"{lo:.0f}", "count": len(times), "pct": 100.0}]
    step = (hi - lo) / HISTOGRAM_BUCKETS
    counts = [0] * HISTOGRAM_BUCKETS
    for t in times:
        counts[min(HISTOGRAM_BUCKETS - 1, int((t - lo) / step))] += 1
    peak = max(counts)
    return [
        {"label": f"{lo + i * step:.0f}", "count": c, "pct": round(100.0 * c / peak, 1)}
        for i, c in enumerate(counts)
    ]


def generate_html_report(
    output_path: str | Path,
    result: RunResult,
    scenario: Scenario,
    aggregator: MetricsAggregator | None = None,
    start_dt: datetime | None = None,
    end_dt: datetime | None = None,
) -> None:
    """Render a single self-contained HTML report (no external assets)."""
    snap = result.snapshot
    series = aggregator.time_series_1s() if aggregator is not None else []
    peak_requests = max((p.requests for p in series), default=0)
    timeline = [
        {
            "second": p.second,
            "requests": p.requests,
            "avg_ms": round(p.avg_ms, 2),
            "p95_ms": round(p.p95_ms, 2),
            "error_pct": round(p.error_rate * 100, 2),
            "bar_pct": round(100.0 * p.requests / peak_requests, 1) if peak_requests else 0.0,
        }
        for p in series
    ]
    histogram = _histogram(aggregator.latencies()) if aggregator is not None else []

    env = Environment(
        loader=PackageLoader("loadstage", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    html = template.render(
        scenario_name=scenario.name,
        method=scenario.request.method,
        url=mask_url(scenario.request.url),
        stages=[{"duration": s.duration_seconds, "target": s.target} for s in scenario.stages],
        pause_seconds=scenario.pause_seconds,
        status=result.status.value,
        status_label=status_label(result),
        abort_reason=result.abort_reason,
        total_requests=snap.total_requests,
        failed_requests=snap.failed_requests,
        error_rate_pct=round(snap.error_rate * 100, 2),
        request_rate=round(snap.request_rate, 2),
        avg_ms=round(snap.avg_latency_ms, 2),
        min_ms=round(snap.min_latency_ms, 2),
        max_ms=round(snap.max_latency_ms, 2),
        percentiles=[{"name": f"p({p:g})", "value": round(snap.percentile(p), 2)} for p in REPORTED_PERCENTILES],
        checks=[
            {"name": n, "passes": ok, "fails": bad, "pct": round(100.0 * ok / (ok + bad), 2) if ok + bad else 0.0}
            for n, (ok, bad) in snap.check_counts.items()
        ],
        thresholds=[
            {"expr": tr.threshold.describe(), "observed": round(tr.observed, 4), "passed": tr.passed}
            for tr in result.threshold_results
        ],
        status_codes=sorted(snap.status_code_counts.items(), key=lambda x: -x[1]),
        top_errors=[(mask_error_message(m), c) for m, c in snap.top_errors.items()],
        timeline=timeline,
        histogram=histogram,
        start_datetime=start_dt.strftime("%Y-%m-%d %H:%M:%S UTC") if start_dt else "",
        end_datetime=end_dt.strftime("%Y-%m-%d %H:%M:%S UTC") if end_dt else "",
        generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        loadstage_version=loadstage_version,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
    )
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(html, encoding="utf-8")


def result_to_dict(
    result: RunResult,
    scenario: Scenario,
    start_dt: datetime | None = None,
    end_dt: datetime | None = None,
) -> dict[str, Any]:
    snap = result.snapshot
    return {
        "scenario": scenario.name,
        "url": mask_url(scenario.request.url),
        "status": result.status.value,
        "passed": result.overall_pass,
        "completed": result.completed,
        "abort_reason": result.abort_reason,
        "start_datetime": start_dt.strftime("%Y-%m-%dT%H:%M:%SZ") if start_dt else None,
        "end_datetime": end_dt.strftime("%Y-%m-%dT%H:%M:%SZ") if end_dt else None,
        "total_requests": snap.total_requests,
        "failed_requests": snap.failed_requests,
        "error_rate": round(snap.error_rate, 6),
        "request_rate": round(snap.request_rate, 4),
        "latency_ms": {
            "avg": round(snap.avg_latency_ms, 4),
            "min": round(snap.min_latency_ms, 4),
            "max": round(snap.max_latency_ms, 4),
            **{f"p{p:g}": round(snap.percentile(p), 4) for p in REPORTED_PERCENTILES},
        },
        "checks": {n: {"passes": ok, "fails": bad} for n, (ok, bad) in snap.check_counts.items()},
        "status_codes": snap.status_code_counts,
        "thresholds": [
            {"threshold": tr.threshold.describe(), "observed": tr.observed, "passed": tr.passed}
            for tr in result.threshold_results
        ],
    }


def generate_json_report(
    output_path: str | Path,
    result: RunResult,
    scenario: Scenario,
    start_dt: datetime | None = None,
    end_dt: datetime | None = None,
) -> None:
    """Write machine-readable JSON with aggregate metrics and threshold results."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(orjson.dumps(result_to_dict(result, scenario, start_dt, end_dt), option=orjson.OPT_INDENT_2))
