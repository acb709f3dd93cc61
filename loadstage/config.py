"""YAML scenario loader for loadstage runs.

Everything is validated here, before a run exists: a malformed stage list
raises InvalidScheduleError, any other problem LoadstageConfigError.
"""

from __future__ import annotations

import dataclasses
import math
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from .exceptions import InvalidScheduleError, LoadstageConfigError
from .generators import DEFAULT_EMAIL_DOMAIN, ValueGenerator, body_factory, default_values
from .logging_config import get_logger
from .models import (
    DEFAULT_EXPECTED_STATUSES,
    DEFAULT_MAX_RETAINED_SAMPLES,
    DEFAULT_PAUSE_SECONDS,
    DEFAULT_TICK_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    Check,
    RequestTemplate,
    Scenario,
    Stage,
    Threshold,
)
from .scheduler import validate_stages
from .thresholds import parse_threshold

logger = get_logger("config")

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


def parse_duration(value: Any) -> float:
    """Seconds from a number or a k6-style string (`500ms`, `30s`, `1m30s`, `2h`).

    Raises:
        LoadstageConfigError: unparseable, infinite, NaN or negative value
    """
    if isinstance(value, bool):
        raise LoadstageConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower().replace(" ", "")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART_RE.finditer(text):
                if m.start() != pos:
                    break
                seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
                pos = m.end()
            if pos == 0 or pos != len(text):
                raise LoadstageConfigError(f"Invalid duration: {value!r}") from None
    else:
        raise LoadstageConfigError(f"Invalid duration: {value!r}")
    if not math.isfinite(seconds):
        raise LoadstageConfigError(f"Duration must be finite: {value!r}")
    if seconds < 0:
        raise LoadstageConfigError(f"Duration must be >= 0: {value!r}")
    return seconds


def _parse_stages(raw: Any) -> tuple[Stage, ...]:
    if not isinstance(raw, list) or not raw:
        raise InvalidScheduleError("'stages' must be a non-empty list of {duration, target}")
    stages: list[Stage] = []
    for i, item in enumerate(raw):
        if not isinstance(item, Mapping) or "duration" not in item or "target" not in item:
            raise InvalidScheduleError("each stage needs 'duration' and 'target'", context={"stage": i})
        try:
            seconds = parse_duration(item["duration"])
            target = int(item["target"])
        except (LoadstageConfigError, TypeError, ValueError) as e:
            raise InvalidScheduleError(f"invalid stage: {e}", context={"stage": i}, original_error=e) from e
        stages.append(Stage(duration_seconds=seconds, target=target))
    return tuple(stages)


def _status_set(value: Any, where: str) -> frozenset[int]:
    items = value if isinstance(value, list) else [value]
    try:
        return frozenset(int(v) for v in items)
    except (TypeError, ValueError) as e:
        raise LoadstageConfigError(f"Invalid status code list in {where}: {value!r}") from e


def _status_check(name: str, statuses: frozenset[int]) -> Check:
    return Check(name=name, predicate=lambda r: r.status_code in statuses)


def _body_contains_check(name: str, needle: str) -> Check:
    return Check(name=name, predicate=lambda r: needle in r.text)


def _parse_checks(raw: Any) -> tuple[Check, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise LoadstageConfigError("'checks' must be a list")
    checks: list[Check] = []
    for i, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise LoadstageConfigError("each check must be a mapping", context={"check": i})
        if "status" in item:
            statuses = _status_set(item["status"], f"check {i}")
            label = " or ".join(str(s) for s in sorted(statuses))
            checks.append(_status_check(str(item.get("name") or f"is status {label}"), statuses))
        elif "body_contains" in item:
            needle = str(item["body_contains"])
            checks.append(_body_contains_check(str(item.get("name") or f"body contains {needle!r}"), needle))
        else:
            raise LoadstageConfigError("check needs 'status' or 'body_contains'", context={"check": i})
    names = [c.name for c in checks]
    if len(set(names)) != len(names):
        raise LoadstageConfigError("check names must be unique", context={"names": names})
    return tuple(checks)


def _parse_thresholds(raw: Any) -> tuple[Threshold, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise LoadstageConfigError("'thresholds' must map metric names to lists of expressions")
    out: list[Threshold] = []
    for metric, exprs in raw.items():
        for expr in exprs if isinstance(exprs, list) else [exprs]:
            out.append(parse_threshold(str(metric), str(expr)))
    return tuple(out)


def _parse_request(raw: Any, values: ValueGenerator) -> RequestTemplate:
    if not isinstance(raw, Mapping):
        raise LoadstageConfigError("'request' must be a mapping with at least 'url'")
    url = str(raw.get("url") or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise LoadstageConfigError(f"Invalid request url: {url!r}")
    method = str(raw.get("method") or "GET").strip().upper()
    if method not in ALLOWED_METHODS:
        raise LoadstageConfigError(f"Unsupported HTTP method: {method}")
    headers = raw.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise LoadstageConfigError("'request.headers' must be a mapping")
    headers = {str(k): str(v) for k, v in headers.items()}
    for key, val in headers.items():
        if not (key + val).isascii():
            raise LoadstageConfigError(f"Header {key!r} must be ASCII", context={"value": val})
    if "json" in raw and "body" in raw:
        raise LoadstageConfigError("use either 'request.json' or 'request.body', not both")
    template = raw["json"] if "json" in raw else raw.get("body")
    if template is not None and "body" in raw and not isinstance(template, str):
        raise LoadstageConfigError("'request.body' must be a string; use 'request.json' for structured bodies")
    factory = body_factory(template, values) if template is not None else None
    expected = raw.get("expected_statuses")
    return RequestTemplate(
        url=url,
        method=method,
        name=str(raw.get("name") or f"{method} {parsed.path or '/'}"),
        headers=headers,
        body_factory=factory,
        timeout_seconds=parse_duration(raw.get("timeout", DEFAULT_TIMEOUT_SECONDS)),
        expected_statuses=_status_set(expected, "request.expected_statuses") if expected is not None else DEFAULT_EXPECTED_STATUSES,
    )


def validate_scenario(s: Scenario) -> None:
    """Validate Scenario bounds. Raises InvalidScheduleError or LoadstageConfigError."""
    validate_stages(s.stages, s.start_target)
    timings = (("pause", s.pause_seconds), ("tick", s.tick_seconds), ("request timeout", s.request.timeout_seconds))
    for label, seconds in timings:
        if not math.isfinite(seconds):
            raise LoadstageConfigError(f"{label} must be a finite number of seconds")
    if s.pause_seconds < 0:
        raise LoadstageConfigError("pause must be >= 0")
    if s.tick_seconds <= 0:
        raise LoadstageConfigError("tick must be > 0")
    if s.request.timeout_seconds <= 0:
        raise LoadstageConfigError("request timeout must be > 0")
    if s.max_retained_samples < 1:
        raise LoadstageConfigError("max_retained_samples must be >= 1")


def scenario_from_dict(raw: Any, name: str = "scenario", values: ValueGenerator | None = None) -> Scenario:
    """Build and validate a Scenario from already-parsed YAML data."""
    if not isinstance(raw, Mapping):
        raise LoadstageConfigError(
            "Scenario must be a YAML object/dictionary", context={"actual_type": type(raw).__name__}
        )
    values = values or default_values(str(raw.get("email_domain") or DEFAULT_EMAIL_DOMAIN))
    stages = _parse_stages(raw.get("stages"))
    try:
        scenario = Scenario(
            name=str(raw.get("name") or name),
            stages=stages,
            request=_parse_request(raw.get("request"), values),
            checks=_parse_checks(raw.get("checks")),
            thresholds=_parse_thresholds(raw.get("thresholds")),
            pause_seconds=parse_duration(raw.get("pause", DEFAULT_PAUSE_SECONDS)),
            tick_seconds=parse_duration(raw.get("tick", DEFAULT_TICK_SECONDS)),
            start_target=int(raw.get("start_target", 0)),
            max_retained_samples=int(raw.get("max_retained_samples", DEFAULT_MAX_RETAINED_SAMPLES)),
        )
    except (TypeError, ValueError) as e:
        raise LoadstageConfigError(f"Invalid scenario value: {e}", original_error=e) from e
    validate_scenario(scenario)
    return scenario


def load_scenario(path: str | Path, values: ValueGenerator | None = None) -> Scenario:
    """Load a scenario from a YAML file.

    Args:
        path: Path to YAML scenario file
        values: Optional per-call value generator for body placeholders

    Returns:
        Validated Scenario instance

    Raises:
        InvalidScheduleError: If the stage list is malformed
        LoadstageConfigError: If file not found, invalid YAML, or validation fails
    """
    p = Path(path)
    if not p.exists():
        raise LoadstageConfigError("Scenario file not found", context={"path": str(path)})

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML scenario file")
        raise LoadstageConfigError(
            f"Invalid YAML syntax in scenario file: {e}", context={"path": str(path)}, original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read scenario file")
        raise LoadstageConfigError(
            f"Cannot read scenario file: {e}", context={"path": str(path)}, original_error=e
        ) from e

    try:
        scenario = scenario_from_dict(raw, name=p.stem, values=values)
    except LoadstageConfigError as e:
        e.with_context(path=str(path))
        raise
    logger.debug(
        "Loaded scenario %s: %d stages, %.1fs, peak %d users",
        scenario.name, len(scenario.stages), scenario.total_duration_seconds, scenario.peak_target,
    )
    return scenario


def apply_overrides(
    scenario: Scenario,
    *,
    url: str | None = None,
    pause_seconds: float | None = None,
    timeout_seconds: float | None = None,
    tick_seconds: float | None = None,
    max_target: int | None = None,
) -> Scenario:
    """Return a copy of the scenario with CLI overrides applied, re-validated."""
    request = scenario.request
    if url is not None or timeout_seconds is not None:
        if url is not None:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise LoadstageConfigError(f"Invalid request url: {url!r}")
        request = dataclasses.replace(
            request,
            url=url if url is not None else request.url,
            timeout_seconds=timeout_seconds if timeout_seconds is not None else request.timeout_seconds,
        )
    stages = scenario.stages
    if max_target is not None:
        if max_target < 0:
            raise InvalidScheduleError("max target must be >= 0")
        stages = tuple(dataclasses.replace(s, target=min(s.target, max_target)) for s in stages)
    merged = dataclasses.replace(
        scenario,
        request=request,
        stages=stages,
        pause_seconds=pause_seconds if pause_seconds is not None else scenario.pause_seconds,
        tick_seconds=tick_seconds if tick_seconds is not None else scenario.tick_seconds,
        start_target=min(scenario.start_target, max_target) if max_target is not None else scenario.start_target,
    )
    validate_scenario(merged)
    return merged
