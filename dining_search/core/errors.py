"""Exceptions raised by the decision core.

Invariant violations are programmer errors: they are raised synchronously,
never caught inside the core, and must not reach end users verbatim.
"""

from typing import Any


class DiningSearchError(Exception):
    """Base class for all errors raised by this package."""


class InvariantViolationError(DiningSearchError):
    """A hard invariant of a decision engine was broken."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class WeightInvariantError(InvariantViolationError):
    """Weight vector failed its sum or bounds post-condition."""


class LanguageContractViolation(InvariantViolationError):
    """An immutable language field changed, or an emission used the wrong language."""

    def __init__(self, message: str, *, stage: str, expected: Any, actual: Any) -> None:
        super().__init__(message, {"stage": stage, "expected": expected, "actual": actual})
        self.stage = stage
        self.expected = expected
        self.actual = actual
