"""
loadstage - Staged HTTP load generator.

Virtual users ramp through piecewise-linear stages, every request is
recorded into a bounded-memory aggregator, and declarative thresholds
decide pass/fail at the end of the run.
"""

__version__ = "1.0.0"

from .exceptions import (  # noqa: E402
    InvalidScheduleError,
    LoadstageConfigError,
    LoadstageError,
    LoadstageRunnerError,
    MetricsIntegrityError,
)

__all__ = [
    "__version__",
    "InvalidScheduleError",
    "LoadstageConfigError",
    "LoadstageError",
    "LoadstageRunnerError",
    "MetricsIntegrityError",
]
