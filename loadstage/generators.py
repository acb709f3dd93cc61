"""Per-call unique values for request bodies.

A body template such as {"email": "${uid}@qa.com.br"} is rendered once per
request. All placeholders in one rendering share one set of values, so
`${uid}` appearing twice in a body yields the same identifier twice.

Collision resistance: `uid` is the full uuid4 hex (122 random bits); it is
never truncated. `seq` is a per-generator counter for deterministic tests.

Only the braced form `${name}` is substituted; `$5` or `pa$$word` pass
through unchanged.
"""

from __future__ import annotations

import copy
import itertools
import re
import threading
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from .exceptions import LoadstageConfigError

ValueGenerator = Callable[[], Mapping[str, str]]

DEFAULT_EMAIL_DOMAIN = "example.com"
KNOWN_PLACEHOLDERS = frozenset({"uid", "seq", "email"})
# Only `${name}` is a placeholder; any other `$` is sent verbatim
PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def uuid_hex() -> str:
    """32 lowercase hex characters from uuid4."""
    return uuid.uuid4().hex


class SequenceCounter:
    """Thread-safe monotonically increasing counter starting at `start`."""

    __slots__ = ("_counter", "_lock")

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return next(self._counter)


def default_values(email_domain: str = DEFAULT_EMAIL_DOMAIN, id_factory: Callable[[], str] = uuid_hex) -> ValueGenerator:
    """Generator producing {uid, seq, email} with a fresh uid per call."""
    seq = SequenceCounter()

    def generate() -> dict[str, str]:
        uid = id_factory()
        return {"uid": uid, "seq": str(seq()), "email": f"{uid}@{email_domain}"}

    return generate


def sequential_values(prefix: str = "user", email_domain: str = DEFAULT_EMAIL_DOMAIN) -> ValueGenerator:
    """Deterministic generator: uid is `<prefix>-<n>`."""
    seq = SequenceCounter()

    def generate() -> dict[str, str]:
        n = str(seq())
        uid = f"{prefix}-{n}"
        return {"uid": uid, "seq": n, "email": f"{uid}@{email_domain}"}

    return generate


def _placeholders(template: Any) -> set[str]:
    found: set[str] = set()
    if isinstance(template, str):
        found.update(PLACEHOLDER_RE.findall(template))
    elif isinstance(template, Mapping):
        for k, v in template.items():
            found |= _placeholders(k)
            found |= _placeholders(v)
    elif isinstance(template, (list, tuple)):
        for item in template:
            found |= _placeholders(item)
    return found


def _render(template: Any, values: Mapping[str, str]) -> Any:
    if isinstance(template, str):
        return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)
    if isinstance(template, Mapping):
        return {_render(k, values): _render(v, values) for k, v in template.items()}
    if isinstance(template, (list, tuple)):
        return [_render(item, values) for item in template]
    return template


def body_factory(template: Any, values: ValueGenerator | None = None) -> Callable[[], Any]:
    """Build a body factory rendering `template` with fresh values per call.

    Templates without placeholders are returned as-is on each call (a deep copy
    for dicts/lists, so callers cannot mutate the template).

    Raises:
        LoadstageConfigError: template references an unknown placeholder
    """
    names = _placeholders(template)
    unknown = names - KNOWN_PLACEHOLDERS
    if unknown:
        raise LoadstageConfigError(
            f"Unknown body placeholder(s): {', '.join(sorted(unknown))}",
            context={"known": sorted(KNOWN_PLACEHOLDERS)},
        )
    if not names:
        return lambda: copy.deepcopy(template)
    generate = values or default_values()
    return lambda: _render(template, generate())
