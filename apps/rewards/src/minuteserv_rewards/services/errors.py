"""Error kinds raised by the rewards engine."""

from __future__ import annotations

from uuid import UUID


class RewardsError(RuntimeError):
    """Base exception for recoverable rewards engine failures."""


class ValidationError(RewardsError):
    """Raised for malformed input such as a redemption that is not a multiple of 100."""


class InsufficientBalanceError(RewardsError):
    """Raised when a redemption asks for more points than the account holds."""

    def __init__(self, available: int, requested: int) -> None:
        super().__init__(f"Insufficient points. Available: {available}, Requested: {requested}")
        self.available = available
        self.requested = requested


class InvalidRedemptionStateError(RewardsError):
    """Raised when a redemption cannot make the requested transition."""

    def __init__(self, redemption_id: UUID, status: str, reason: str) -> None:
        super().__init__(reason)
        self.redemption_id = redemption_id
        self.status = status


class NotFoundError(RewardsError):
    """Raised for an unknown user, promo code or redemption."""


class AccountError(RewardsError):
    """Raised when a ledger transaction fails to commit."""


class VoucherCodeExhaustedError(AccountError):
    """Raised when no unique voucher code could be allocated within the retry bound."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Could not allocate a unique voucher code after {attempts} attempts")
        self.attempts = attempts


__all__ = [
    "AccountError",
    "InsufficientBalanceError",
    "InvalidRedemptionStateError",
    "NotFoundError",
    "RewardsError",
    "ValidationError",
    "VoucherCodeExhaustedError",
]
