"""Unit tests for per-call unique value generators."""

from __future__ import annotations

import re

import pytest

from loadstage.exceptions import LoadstageConfigError
from loadstage.generators import (
    SequenceCounter,
    body_factory,
    default_values,
    sequential_values,
    uuid_hex,
)


def test_uuid_hex_is_full_length_and_unique() -> None:
    ids = {uuid_hex() for _ in range(10_000)}
    assert len(ids) == 10_000
    assert all(re.fullmatch(r"[0-9a-f]{32}", i) for i in ids)


def test_default_values_shape() -> None:
    values = default_values(email_domain="qa.com.br")()
    assert set(values) == {"uid", "seq", "email"}
    assert values["email"] == f"{values['uid']}@qa.com.br"
    assert values["seq"] == "1"


def test_sequential_values_are_deterministic() -> None:
    gen = sequential_values()
    assert gen()["uid"] == "user-1"
    assert gen()["email"] == "user-2@example.com"


def test_sequence_counter() -> None:
    counter = SequenceCounter(start=5)
    assert [counter(), counter(), counter()] == [5, 6, 7]


def test_body_factory_renders_fresh_values_per_call() -> None:
    factory = body_factory({"email": "${uid}@qa.com.br", "password": "securePassword123"})
    first, second = factory(), factory()
    assert first["password"] == "securePassword123"
    assert first["email"].endswith("@qa.com.br")
    assert first["email"] != second["email"]


def test_repeated_placeholder_shares_one_value() -> None:
    factory = body_factory({"a": "${uid}", "b": ["x-${uid}"]}, sequential_values())
    body = factory()
    assert body == {"a": "user-1", "b": ["x-user-1"]}


def test_string_template() -> None:
    factory = body_factory("name=${seq}&mail=${email}", sequential_values(prefix="qa"))
    assert factory() == "name=1&mail=qa-1@example.com"


def test_injected_generator_is_used() -> None:
    factory = body_factory({"id": "${uid}"}, default_values(id_factory=lambda: "fixed"))
    assert factory() == {"id": "fixed"}


def test_template_without_placeholders_is_copied() -> None:
    template = {"nested": {"k": [1, 2]}, "n": 3}
    factory = body_factory(template)
    body = factory()
    body["nested"]["k"].append(99)
    assert template == {"nested": {"k": [1, 2]}, "n": 3}
    assert factory() == template


def test_unknown_placeholder_rejected() -> None:
    with pytest.raises(LoadstageConfigError, match="token"):
        body_factory({"auth": "${token}"})


def test_dollar_signs_outside_placeholders_are_verbatim() -> None:
    factory = body_factory(
        {"email": "${uid}@qa.com.br", "password": "pa$$word", "price": "$5", "note": "$email ${ not closed"},
        sequential_values(),
    )
    assert factory() == {"email": "user-1@qa.com.br", "password": "pa$$word", "price": "$5", "note": "$email ${ not closed"}


def test_stray_dollar_without_placeholders_is_copied() -> None:
    factory = body_factory("total=$5")
    assert factory() == "total=$5"
