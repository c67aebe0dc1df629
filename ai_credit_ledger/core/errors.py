"""
Ledger exceptions.

Callers see InvalidInput, InsufficientBalance, AccountNotFound, Unauthorized
and StorageUnavailable. AllowanceRaceLost never leaves the allowance manager.
Duplicate idempotency keys are not an error: the original charge is replayed.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidInput(LedgerError, ValueError):
    """Malformed request, rejected before any storage access."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            details={"field": field} if field else {},
        )
        self.field = field


class InsufficientBalance(LedgerError):
    """
    Raised when a charge would push usage past the granted allowance.

    Carries what a caller needs to render an upgrade or wait-for-reset
    message. Nothing was written when this is raised.
    """

    status_code = 402

    def __init__(
        self,
        account_id: str,
        tokens_requested: int,
        tokens_remaining: int,
        credits_remaining: int,
        tokens_granted: int,
        period_end: Optional[datetime] = None,
        plan: Optional[str] = None,
        upgrade_message: Optional[str] = None,
    ):
        self.account_id = account_id
        self.tokens_requested = tokens_requested
        self.tokens_remaining = tokens_remaining
        self.credits_remaining = credits_remaining
        self.tokens_granted = tokens_granted
        self.period_end = period_end
        self.plan = plan
        self.upgrade_message = upgrade_message

        message = (
            f"Insufficient tokens for account {account_id}: "
            f"requested {tokens_requested:,}, remaining {tokens_remaining:,}"
        )
        super().__init__(
            message=message,
            details={
                "account_id": account_id,
                "tokens_requested": tokens_requested,
                "tokens_remaining": tokens_remaining,
                "credits_remaining": credits_remaining,
                "tokens_granted": tokens_granted,
                "plan": plan,
            },
        )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to a 402 response body."""
        response = {
            "success": False,
            "error": "insufficient_balance",
            "message": self.message,
            "account_id": self.account_id,
            "tokens_requested": self.tokens_requested,
            "tokens_remaining": self.tokens_remaining,
            "credits_remaining": self.credits_remaining,
            "tokens_granted": self.tokens_granted,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "plan": self.plan,
        }
        if self.upgrade_message:
            response["upgrade_message"] = self.upgrade_message
        return response


class AccountNotFound(LedgerError):
    """Raised when an account is not known to the account directory."""

    def __init__(self, account_id: str):
        super().__init__(
            message=f"Account not found: {account_id}",
            details={"account_id": account_id},
        )
        self.account_id = account_id


class Unauthorized(LedgerError):
    """Raised when an actor lacks the privilege for an operation."""

    def __init__(self, actor: str, operation: str):
        super().__init__(
            message=f"Actor '{actor}' is not allowed to perform {operation}",
            details={"actor": actor, "operation": operation},
        )
        self.actor = actor
        self.operation = operation


class StorageUnavailable(LedgerError):
    """
    Underlying storage failure. Retryable.

    Callers own the retry/backoff policy and must reuse the same
    idempotency key when retrying a charge.
    """

    retryable = True


class AllowanceRaceLost(LedgerError):
    """A concurrent caller created the period first."""

    def __init__(self, account_id: str, period_start: datetime):
        super().__init__(
            message=(
                f"Allowance period for {account_id} starting "
                f"{period_start.isoformat()} already exists"
            ),
            details={"account_id": account_id},
        )
        self.account_id = account_id
        self.period_start = period_start


__all__ = [
    "LedgerError",
    "InvalidInput",
    "InsufficientBalance",
    "AccountNotFound",
    "Unauthorized",
    "StorageUnavailable",
    "AllowanceRaceLost",
]
