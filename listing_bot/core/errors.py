# listing_bot/core/errors.py
"""
Typed domain errors for the intake core.

Validation outcomes (too few photos, unrecognized content, unparseable
price) are NOT errors: they are reported as ``Outcome`` values.  These
types cover the cases where a caller has to stop.
"""
from __future__ import annotations


class IntakeError(Exception):
    """Base class for all intake domain errors."""

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class InvalidTransitionError(IntakeError):
    """A session was asked to move along an edge the state graph forbids."""

    def __init__(self, current: str | None, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid session transition: {current or 'none'} -> {target}")


class SessionConflictError(IntakeError):
    """A new session was requested while one is still active."""


class ExtractionError(IntakeError):
    """The extraction engine could not produce a result."""


class MediaIntakeError(IntakeError):
    """A transport media reference could not be moved into temporary storage.

    Attributes:
        retryable: Whether a later attempt may succeed.
    """

    def __init__(self, detail: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(detail)
