# clubhouse/errors.py
"""
Domain failures raised by the rate resolver, folio ledger and booking flow.

Every error is an expected, recoverable condition. The HTTP layer turns them
into JSON responses using `status_code` and `code`.
"""
from __future__ import annotations

from typing import Any, Optional


class ClubhouseError(Exception):
    status_code = 400
    code = "clubhouse_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class RateNotConfigured(ClubhouseError):
    code = "rate_not_configured"
    status_code = 422


class InvalidTeamPolicy(ClubhouseError):
    code = "invalid_team_policy"
    status_code = 422


class UnknownIdentity(ClubhouseError):
    code = "unknown_identity"
    status_code = 422


class DayClosed(ClubhouseError):
    code = "day_closed"
    status_code = 403


class InvalidTransition(ClubhouseError):
    code = "invalid_transition"
    status_code = 409


class ResourceUnavailable(ClubhouseError):
    code = "resource_unavailable"
    status_code = 409


class ResourceNotFound(ClubhouseError):
    code = "resource_not_found"
    status_code = 404


class BookingNotFound(ClubhouseError):
    code = "booking_not_found"
    status_code = 404


class FolioNotFound(ClubhouseError):
    code = "folio_not_found"
    status_code = 404


class ChargeNotFound(ClubhouseError):
    code = "charge_not_found"
    status_code = 404


class AlreadyVoided(ClubhouseError):
    code = "already_voided"
    status_code = 409


class FolioClosed(ClubhouseError):
    code = "folio_closed"
    status_code = 409


class InvalidAmount(ClubhouseError):
    code = "invalid_amount"
    status_code = 422


class UnsettledBalance(ClubhouseError):
    code = "unsettled_balance"
    status_code = 409

    def __init__(self, balance: float, message: Optional[str] = None):
        super().__init__(
            message or f"Outstanding balance {balance:.2f}; collect payment or force settlement",
            balance=balance,
        )
        self.balance = balance


class FolioHasPayments(ClubhouseError):
    code = "folio_has_payments"
    status_code = 409


class FolioNotSettled(ClubhouseError):
    code = "folio_not_settled"
    status_code = 409


class VersionConflict(ClubhouseError):
    code = "version_conflict"
    status_code = 409
