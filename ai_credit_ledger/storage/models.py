"""
Data models for storage layer.

Defines allowance periods and usage events as stored in the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

ADMIN_ADJUSTMENT_FEATURE = "admin_adjustment"


class Plan(Enum):
    """Plan tier of an account."""
    FREE = "free"
    PREMIUM = "premium"


class AllowanceSource(Enum):
    """Provenance of an allowance period. Informational only."""
    FREE_TIER = "free_tier"
    SUBSCRIPTION = "subscription"
    ADMIN_MANUAL = "admin_manual"


@dataclass(frozen=True)
class AllowanceMetadata:
    """What the grant was made of when the period was created.

    Snapshotted so later settings or plan changes never alter the meaning
    of an already-granted allowance.
    """
    base_tokens: Optional[int] = None
    rollover_tokens: Optional[int] = None
    plan: Optional[Plan] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class AllowancePeriod:
    """Token budget of one account for one calendar month.

    ``(account_id, period_start)`` is unique in storage. ``tokens_granted``
    only changes through an explicit admin adjustment.
    """
    id: str
    account_id: str
    period_start: datetime
    period_end: datetime
    tokens_granted: int
    tokens_used: int
    source: AllowanceSource
    metadata: AllowanceMetadata = field(default_factory=AllowanceMetadata)
    low_balance_warned: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate the period bounds and counters."""
        if self.period_start >= self.period_end:
            raise ValueError("period_start must be before period_end")
        if self.tokens_granted < 0:
            raise ValueError("tokens_granted cannot be negative")
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")

    @property
    def tokens_remaining(self) -> int:
        """Raw remaining tokens; negative after an admin over-use override."""
        return self.tokens_granted - self.tokens_used


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one charge against an allowance.

    Append-only. The state after the charge and the conversion rate in
    effect are stored with the event so a retry with the same idempotency
    key returns exactly the original result.
    """
    id: str
    account_id: str
    allowance_id: str
    idempotency_key: str
    feature: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    credits_charged: float
    tokens_per_credit: int
    tokens_granted_after: int
    tokens_used_after: int
    created_at: datetime
    balance_applied: bool = True
    model: Optional[str] = None
    actor: Optional[str] = None
    channel: Optional[str] = None
    request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
