"""Error taxonomy for the settlement pipeline.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer answers with. Messages are short and safe to show to end users.
"""

from __future__ import annotations


class SettlementError(Exception):
    kind = "SettlementError"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "kind": self.kind}


# Validation (caller mistakes, rejected before any side effect)

class InvalidAmount(SettlementError):
    kind = "InvalidAmount"
    default_message = "Amount must be a positive whole number of minor units"


class InvalidIntent(SettlementError):
    kind = "InvalidIntent"
    default_message = "Settlement request is incomplete or inconsistent"


class InvalidReason(SettlementError):
    kind = "InvalidReason"
    default_message = "Dispute reason is too short"


class MissingNotes(SettlementError):
    kind = "MissingNotes"
    default_message = "Admin notes are required to resolve a dispute"


class UnsupportedOperator(SettlementError):
    kind = "UnsupportedOperator"
    default_message = "Unsupported mobile money operator"


class UnsupportedBank(SettlementError):
    kind = "UnsupportedBank"
    default_message = "Unsupported bank"


class InvalidPhoneNumber(SettlementError):
    kind = "InvalidPhoneNumber"
    default_message = "Invalid mobile number. Must be 9 digits."


# Resource (caller may retry later)

class InsufficientReserve(SettlementError):
    kind = "InsufficientReserve"
    http_status = 409
    default_message = "Reserve wallet balance is insufficient"


class RateLimited(SettlementError):
    kind = "RateLimited"
    http_status = 429
    default_message = "Rate limit exceeded"


# External rail

class GatewayRejected(SettlementError):
    kind = "GatewayRejected"
    http_status = 502
    default_message = "Payment initialization failed"


class GatewayTimeout(SettlementError):
    kind = "GatewayTimeout"
    http_status = 504
    default_message = "Payment gateway did not respond in time"


class GatewayNotConfigured(SettlementError):
    kind = "GatewayNotConfigured"
    http_status = 503
    default_message = "Payment gateway not configured. Contact support."


# State / ownership guards

class NotRetryable(SettlementError):
    kind = "NotRetryable"
    http_status = 409
    default_message = "Only failed settlements can be retried"


class NotAuthorized(SettlementError):
    kind = "NotAuthorized"
    http_status = 403
    default_message = "Transaction not found or does not belong to you"


class DuplicateDispute(SettlementError):
    kind = "DuplicateDispute"
    http_status = 409
    default_message = "A pending dispute already exists for this transaction"


class AlreadyResolved(SettlementError):
    kind = "AlreadyResolved"
    http_status = 409
    default_message = "Dispute has already been resolved"


class NotFound(SettlementError):
    kind = "NotFound"
    http_status = 404
    default_message = "Not found"
