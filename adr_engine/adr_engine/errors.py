"""Exception hierarchy for the ADR engine.

Callers at the API and CLI boundaries translate these into HTTP status
codes and exit codes; inside the engine they are raised where an operation
cannot proceed and caught only at the per-item or per-phase boundary of the
coordinator.
"""

from __future__ import annotations


class AdrError(Exception):
    """Base class for all engine errors."""


class RunConflictError(AdrError):
    """Another orchestration run already holds the active-run slot."""

    def __init__(self, active_request_id: str | None) -> None:
        self.active_request_id = active_request_id
        super().__init__(f"An orchestration run is already active: {active_request_id or 'unknown'}")


class InvalidTransitionError(AdrError, ValueError):
    """A job status change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal job transition {current} -> {target}")


class CalculationLimitError(AdrError, ValueError):
    """Date arithmetic did not converge within the iteration bound."""


class ProviderError(AdrError):
    """The scraping provider could not be reached or answered unusably."""


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its timeout."""


class AccountSourceError(AdrError):
    """The account source-of-truth feed could not be read."""
