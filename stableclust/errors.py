"""
Error taxonomy for StableClust.

Configuration problems fail fast. Per-combination and per-node problems are
raised by the stage that hits them and collected by its caller as
FailureReport entries.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


class StableClustError(Exception):
    """Base class for all StableClust errors."""


class ConfigurationError(StableClustError, ValueError):
    """Invalid parameters; raised before any computation starts."""


class UnknownClusterFunction(ConfigurationError, KeyError):
    """A registry lookup asked for a name that was never registered."""

    def __init__(self, name: str, available=()):
        self.name = name
        self.available = sorted(available)
        super().__init__(
            f"Unknown cluster function: {name!r}. Available: {self.available}"
        )

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


class InsufficientDataError(StableClustError):
    """Too few samples for the requested k or subsample size."""


class DegenerateCoClustering(StableClustError):
    """No pair of samples was ever subsampled together."""

    def __init__(self, message: str, matrix: Any = None):
        super().__init__(message)
        self.matrix = matrix


class InsufficientSubsampleCoverage(StableClustError):
    """Some pair was never co-subsampled and the policy forbids filling it."""


class MergeTestFailure(StableClustError):
    """The statistical test behind a merge decision raised."""


@dataclass(frozen=True)
class FailureReport:
    """Structured record of an isolated failure."""
    stage: str
    key: str
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_exception(cls, stage: str, key: str, exc: BaseException, **details) -> "FailureReport":
        return cls(
            stage=stage,
            key=key,
            error=type(exc).__name__,
            message=str(exc),
            details=details or None,
        )
