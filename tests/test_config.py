"""Unit tests for scenario loader, duration parsing and overrides."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from loadstage.config import apply_overrides, load_scenario, parse_duration, scenario_from_dict
from loadstage.exceptions import InvalidScheduleError, LoadstageConfigError
from loadstage.generators import sequential_values
from loadstage.models import DEFAULT_EXPECTED_STATUSES, MetricSelector, Stage


def _raw(**overrides) -> dict:
    raw = {
        "stages": [{"duration": "10s", "target": 5}],
        "request": {"url": "http://localhost:3333/signup"},
    }
    raw.update(overrides)
    return raw


@pytest.mark.parametrize(
    "value,seconds",
    [(30, 30.0), (1.5, 1.5), ("45", 45.0), ("500ms", 0.5), ("30s", 30.0), ("1m", 60.0), ("1m30s", 90.0), ("2h", 7200.0)],
)
def test_parse_duration(value, seconds: float) -> None:
    assert parse_duration(value) == seconds


@pytest.mark.parametrize(
    "value", ["", "abc", "10x", "m1", "-5", -1, True, None, [1], "inf", "nan", "-inf", float("inf"), float("nan")]
)
def test_parse_duration_rejects(value) -> None:
    with pytest.raises(LoadstageConfigError):
        parse_duration(value)


def test_load_scenario_file_not_found() -> None:
    with pytest.raises(LoadstageConfigError, match="Scenario file not found"):
        load_scenario("/nonexistent/scenario.yaml")


def test_load_scenario_invalid_yaml(tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("stages: [")
    with pytest.raises(LoadstageConfigError, match="Invalid YAML syntax"):
        load_scenario(bad)


def test_load_scenario_not_a_mapping(tmp_path: Path) -> None:
    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n")
    with pytest.raises(LoadstageConfigError, match="YAML object"):
        load_scenario(bad)


def test_load_signup_scenario(signup_scenario_path: Path) -> None:
    scenario = load_scenario(signup_scenario_path, values=sequential_values())
    assert scenario.name == "signup-load"
    assert scenario.stages == (Stage(60.0, 100), Stage(120.0, 100), Stage(60.0, 0))
    assert scenario.total_duration_seconds == 240
    assert scenario.peak_target == 100
    assert scenario.pause_seconds == 1.0
    assert scenario.request.method == "POST"
    assert scenario.request.expected_statuses == DEFAULT_EXPECTED_STATUSES
    assert scenario.request.body_factory() == {"email": "user-1@qa.com.br", "password": "securePassword123"}
    assert [c.name for c in scenario.checks] == ["is status 201"]
    assert [t.metric for t in scenario.thresholds] == [MetricSelector.LATENCY_P95, MetricSelector.ERROR_RATE]


def test_shipped_scenarios_load() -> None:
    root = Path(__file__).resolve().parent.parent / "scenarios"
    for name in ("signup-load.yaml", "signup-spike.yaml"):
        scenario = load_scenario(root / name)
        assert scenario.thresholds
    assert load_scenario(root / "signup-spike.yaml").peak_target == 2000


def test_name_defaults_to_file_stem(tmp_path: Path) -> None:
    path = tmp_path / "smoke.yaml"
    path.write_text("stages:\n  - {duration: 5s, target: 1}\nrequest:\n  url: https://example.com/\n")
    assert load_scenario(path).name == "smoke"


def test_checks_built_from_yaml() -> None:
    scenario = scenario_from_dict(
        _raw(checks=[{"status": [200, 201]}, {"name": "has id", "body_contains": '"id"'}])
    )
    status_check, body_check = scenario.checks
    assert status_check.name == "is status 200 or 201"
    ok = httpx.Response(201, text='{"id": 1}')
    assert status_check.predicate(ok) and body_check.predicate(ok)
    assert not body_check.predicate(httpx.Response(201, text="{}"))


def test_duplicate_check_names_rejected() -> None:
    with pytest.raises(LoadstageConfigError, match="unique"):
        scenario_from_dict(_raw(checks=[{"status": 201}, {"status": 201}]))


def test_check_needs_kind() -> None:
    with pytest.raises(LoadstageConfigError):
        scenario_from_dict(_raw(checks=[{"name": "empty"}]))


@pytest.mark.parametrize(
    "stages",
    [
        None,
        [],
        [{"duration": "10s"}],
        [{"duration": "-1s", "target": 5}],
        [{"duration": "soon", "target": 5}],
        [{"duration": "10s", "target": -5}],
        [{"duration": 0, "target": 5}],
    ],
)
def test_invalid_stages_raise_invalid_schedule(stages) -> None:
    with pytest.raises(InvalidScheduleError):
        scenario_from_dict(_raw(stages=stages))


@pytest.mark.parametrize(
    "request_raw",
    [
        None,
        {"url": "localhost:3333"},
        {"url": "ftp://example.com"},
        {"url": "http://example.com", "method": "BREW"},
        {"url": "http://example.com", "json": {}, "body": "x"},
        {"url": "http://example.com", "body": {"a": 1}},
        {"url": "http://example.com", "headers": ["x"]},
        {"url": "http://example.com", "json": {"id": "${nope}"}},
        {"url": "http://example.com", "timeout": 0},
        {"url": "http://example.com", "timeout": "nan"},
        {"url": "http://example.com", "headers": {"X-User": "José"}},
    ],
)
def test_invalid_request_rejected(request_raw) -> None:
    with pytest.raises(LoadstageConfigError):
        scenario_from_dict(_raw(request=request_raw))


@pytest.mark.parametrize(
    "extra", [{"pause": "-1s"}, {"tick": 0}, {"tick": "inf"}, {"pause": float("nan")}, {"max_retained_samples": 0}, {"start_target": -1}]
)
def test_invalid_scenario_values(extra: dict) -> None:
    with pytest.raises(LoadstageConfigError):
        scenario_from_dict(_raw(**extra))


def test_thresholds_must_be_mapping() -> None:
    with pytest.raises(LoadstageConfigError):
        scenario_from_dict(_raw(thresholds=["p(95)<2000"]))


def test_single_threshold_expression_accepted() -> None:
    scenario = scenario_from_dict(_raw(thresholds={"http_req_failed": "rate<0.05"}))
    assert scenario.thresholds[0].bound == 0.05


def test_expected_statuses_and_timeout() -> None:
    scenario = scenario_from_dict(
        _raw(request={"url": "http://example.com/x", "expected_statuses": [201], "timeout": "5s"})
    )
    assert scenario.request.expected_statuses == frozenset({201})
    assert scenario.request.timeout_seconds == 5.0
    assert scenario.request.name == "GET /x"


def test_apply_overrides(signup_scenario_path: Path) -> None:
    base = load_scenario(signup_scenario_path)
    merged = apply_overrides(base, url="http://staging:8080/signup", pause_seconds=0.5, max_target=20, tick_seconds=0.2)
    assert merged.request.url == "http://staging:8080/signup"
    assert merged.pause_seconds == 0.5
    assert merged.tick_seconds == 0.2
    assert merged.peak_target == 20
    assert [s.target for s in merged.stages] == [20, 20, 0]
    assert base.peak_target == 100


def test_apply_overrides_without_changes_is_equal(signup_scenario_path: Path) -> None:
    base = load_scenario(signup_scenario_path)
    assert apply_overrides(base) == base


@pytest.mark.parametrize(
    "kwargs,error",
    [
        ({"url": "not a url"}, LoadstageConfigError),
        ({"timeout_seconds": 0}, LoadstageConfigError),
        ({"tick_seconds": float("inf")}, LoadstageConfigError),
        ({"max_target": -1}, InvalidScheduleError),
    ],
)
def test_apply_overrides_revalidates(signup_scenario_path: Path, kwargs: dict, error: type) -> None:
    with pytest.raises(error):
        apply_overrides(load_scenario(signup_scenario_path), **kwargs)


def test_ascii_headers_kept_as_strings() -> None:
    scenario = scenario_from_dict(_raw(request={"url": "http://example.com", "headers": {"X-Run": 7}}))
    assert scenario.request.headers == {"X-Run": "7"}


def test_literal_dollar_in_body_loads_and_renders_verbatim() -> None:
    scenario = scenario_from_dict(
        _raw(request={"url": "http://example.com", "json": {"email": "${uid}@x", "price": "$5", "password": "pa$$word"}}),
        values=sequential_values(),
    )
    assert scenario.request.body_factory() == {"email": "user-1@x", "price": "$5", "password": "pa$$word"}
