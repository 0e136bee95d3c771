"""Domain exception hierarchy for structured error results."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ConflictException(AppException):
    code = "CONFLICT"
    status_code = 409


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


class ValidationException(AppException):
    code = "VALIDATION_ERROR"
    status_code = 422


class BusinessRuleException(AppException):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


# ---------------------------------------------------------------------------
# Fulfillment / commission errors
# ---------------------------------------------------------------------------


class IllegalTransitionException(BusinessRuleException):
    """Requested event is not valid from the order's current state.

    Carries the offending state and event so callers can pick a valid one.
    """

    code = "ILLEGAL_TRANSITION"

    def __init__(
        self,
        state: str,
        event: str,
        message: str | None = None,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            message or f"Event '{event}' is not allowed from state '{state}'",
            details=details or [{"state": state, "event": event}],
        )
        self.state = state
        self.event = event


class InvalidStateException(BusinessRuleException):
    code = "INVALID_STATE"


class AlreadyClaimedException(ConflictException):
    code = "ALREADY_CLAIMED"


class InvalidCommissionInputException(ValidationException):
    code = "INVALID_COMMISSION_INPUT"


class PersistenceConflictException(ConflictException):
    """The store rejected a conditional write; retry from a fresh read."""

    code = "PERSISTENCE_CONFLICT"
