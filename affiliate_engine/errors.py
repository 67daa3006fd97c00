"""Error taxonomy for the attribution and commission engine.

UserInputError      bad code / unknown id, reported, never retried
PreconditionError   caller must fix something first (approve, onboard)
RailError           raised by payout rail adapters, transient or permanent
InvariantViolation  a bug; always fails loudly
"""
from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    code = "engine_error"
    http_status = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.context:
            body["context"] = {k: v for k, v in self.context.items() if v is not None}
        return body


# ── User input ───────────────────────────────────────────────────────────────

class UserInputError(EngineError):
    code = "user_input_error"
    http_status = 400


class UnknownCode(UserInputError):
    code = "UnknownCode"
    http_status = 404


class AffiliateNotFound(UserInputError):
    code = "AffiliateNotFound"
    http_status = 404


class CommissionNotFound(UserInputError):
    code = "CommissionNotFound"
    http_status = 404


class OrderNotFound(UserInputError):
    code = "OrderNotFound"
    http_status = 404


class UnknownRail(UserInputError):
    code = "UnknownRail"
    http_status = 404


# ── Preconditions ────────────────────────────────────────────────────────────

class PreconditionError(EngineError):
    code = "precondition_failed"
    http_status = 409


class AffiliateNotActive(PreconditionError):
    code = "AffiliateNotActive"
    http_status = 403


class NotApproved(PreconditionError):
    code = "NotApproved"


class AlreadyPaid(PreconditionError):
    code = "AlreadyPaid"


class RailNotReady(PreconditionError):
    code = "RailNotReady"


class NeedsOnboarding(PreconditionError):
    code = "NeedsOnboarding"


class ClawbackRequired(PreconditionError):
    """A paid commission can only be reversed by the manual clawback process."""
    code = "ClawbackRequired"


class InvalidTransition(PreconditionError):
    code = "InvalidTransition"


class PayoutInProgress(PreconditionError):
    """A dispatch holds a live claim on the commission; try again shortly."""
    code = "PayoutInProgress"


# ── Rail failures ────────────────────────────────────────────────────────────

class RailError(EngineError):
    code = "rail_error"
    http_status = 502

    def __init__(self, message: str = "", rail_code: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.rail_code = rail_code


class TransientFailure(RailError):
    """Network outage or timeout. Safe to retry; the transfer may still have happened."""
    code = "TransientFailure"
    http_status = 503

    def __init__(self, message: str = "", rail_code: Optional[str] = None,
                 outcome_unknown: bool = False, **context: Any):
        super().__init__(message, rail_code=rail_code, **context)
        self.outcome_unknown = outcome_unknown


class PermanentFailure(RailError):
    """Rail refused the operation for good (account frozen, invalid destination)."""
    code = "PermanentFailure"
    http_status = 502


# ── Bugs ─────────────────────────────────────────────────────────────────────

class InvariantViolation(EngineError):
    code = "InvariantViolation"
    http_status = 500
