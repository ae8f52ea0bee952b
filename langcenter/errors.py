"""
Domain errors raised by the booking and payment engines.

Every error carries a stable ``code`` so callers (the bot, a web layer) can
turn it into a result shape without inspecting the message text.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class DomainError(Exception):
    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFound(DomainError):
    """Entity absent or not owned by the actor."""


class InvalidState(DomainError):
    """Operation attempted from a status that forbids it."""


class ValidationError(DomainError):
    """Malformed input."""


class ConflictError(DomainError):
    """Scheduling overlap."""


class ExternalServiceError(DomainError):
    """Payment gateway unreachable or returned failure."""


class Forbidden(DomainError):
    """Actor lacks role or ownership."""


class TeacherNotFound(NotFound):
    pass


class BookingNotFoundOrAlreadyProcessed(NotFound):
    pass


class PaymentNotFound(NotFound):
    pass


class LanguageNotTaught(ValidationError):
    pass


class InvalidTimeRange(ValidationError):
    pass


class SchedulingConflict(ConflictError):
    pass


class WithinCancellationWindow(InvalidState):
    pass


class AlreadyRated(InvalidState):
    pass


class NoRefundEligible(InvalidState):
    pass


class GatewayError(ExternalServiceError):
    pass
