"""Error taxonomy for the ledger core.

Rejections are expected business outcomes: they carry a stable ``code``
and enough context for the caller to render a precise message, and they
never leave partial ledger state behind. Settlement errors signal degraded
mode and are absorbed at the coordinator boundary. Integrity violations
are fatal to the operation.
"""

from __future__ import annotations

from typing import Any


class BodyDFiError(Exception):
    """Base class for every error raised by the ledger core."""


class RejectionError(BodyDFiError):
    """A user or business-rule violation."""

    code = "rejected"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.context = context
        super().__init__(message or self.code)


class InvalidAmount(RejectionError):
    code = "invalid_amount"


class InsufficientFunds(RejectionError):
    code = "insufficient_funds"


class SelfPurchaseNotAllowed(RejectionError):
    code = "self_purchase_not_allowed"


class SelfTransferNotAllowed(RejectionError):
    code = "self_transfer_not_allowed"


class AlreadyPurchased(RejectionError):
    code = "already_purchased"


class ListingNotFound(RejectionError):
    code = "listing_not_found"


class ListingNotActive(RejectionError):
    code = "listing_not_active"


class NoDataPoints(RejectionError):
    code = "no_data_points"


class PurchaseNotFound(RejectionError):
    code = "purchase_not_found"


class AccessDenied(RejectionError):
    code = "access_denied"


class AccessExpired(RejectionError):
    code = "access_expired"


class AlreadyRated(RejectionError):
    code = "already_rated"


class RatingNotAllowed(RejectionError):
    code = "rating_not_allowed"


class RefundNotAllowed(RejectionError):
    code = "refund_not_allowed"


class UnknownUser(RejectionError):
    code = "unknown_user"


class UnknownRecipient(RejectionError):
    code = "unknown_recipient"


class InvalidRule(RejectionError):
    code = "invalid_rule"


class SettlementUnavailable(BodyDFiError):
    """The settlement network could not be reached or refused the instruction."""


class IntegrityViolation(BodyDFiError):
    """A ledger invariant was about to be broken. Never expected in normal operation."""


class FormulaError(BodyDFiError):
    """A reward formula could not be parsed or evaluated."""


class PlatformAccountMissing(BodyDFiError):
    """The configured fee account does not exist or is not a platform account."""

    def __init__(self, message: str, account_id: int) -> None:
        super().__init__(message)
        self.account_id = account_id
