"""Exceptions raised by loadstage.

Everything loadstage raises on purpose is a LoadstageError, so the CLI can
print it as one line and exit 1. Errors found while loading a scenario carry
where they were found in `context`: `path` for the file and `stage` / `check`
for the 0-based position in that list. Those keys render as a location
prefix, e.g. `signup.yaml: stages[2]: stage target must be >= 0 [target=-5]`.
"""

from __future__ import annotations

from typing import Any

# Context keys naming a position in a scenario list, in display order
LOCATION_KEYS = ("stage", "check")


class LoadstageError(Exception):
    """Base exception for all loadstage errors.

    Attributes:
        message: What went wrong, without location
        context: Where it went wrong (`path`, `stage`, `check`) plus any
            offending values
        original_error: The lower-level exception that triggered it, if any
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = dict(context or {})
        self.original_error = original_error

    @property
    def location(self) -> str:
        """`file: stages[i]` style prefix built from context, empty if unknown."""
        parts = [str(self.context["path"])] if "path" in self.context else []
        parts += [f"{key}s[{self.context[key]}]" for key in LOCATION_KEYS if key in self.context]
        return ": ".join(parts)

    def __str__(self) -> str:
        text = f"{self.location}: {self.message}" if self.location else self.message
        details = {k: v for k, v in self.context.items() if k != "path" and k not in LOCATION_KEYS}
        if details:
            text += " [" + ", ".join(f"{k}={v!r}" for k, v in details.items()) + "]"
        if self.original_error is not None:
            text += f" (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return text

    def with_context(self, **kwargs: Any) -> "LoadstageError":
        """Attach more context (typically the scenario path) and return self for re-raising."""
        self.context.update(kwargs)
        return self


class LoadstageConfigError(LoadstageError):
    """Raised when a scenario file is invalid or cannot be loaded.

    Common causes:
    - Scenario file not found
    - Invalid YAML syntax
    - Missing request URL, unparseable durations or threshold expressions
    """


class InvalidScheduleError(LoadstageConfigError):
    """Raised when a stage sequence is malformed.

    The run never starts: empty stage list, negative duration,
    negative target, or a schedule with zero total duration.
    """


class LoadstageRunnerError(LoadstageError):
    """Raised when a run cannot be carried out (e.g. invalid run state)."""


class MetricsIntegrityError(LoadstageRunnerError):
    """Raised when the metrics aggregator can no longer guarantee correct totals.

    Fatal to the run: the run loop stops, drains workers, and returns
    a RunResult marked incomplete.
    """
