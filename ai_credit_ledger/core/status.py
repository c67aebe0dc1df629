"""
Allowance status snapshots for display and gating.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict

from ai_credit_ledger.storage.models import AllowancePeriod, Plan
from ai_credit_ledger.storage.repository import LedgerRepository
from .accounts import AccountDirectory, require_account_id
from .allowance import AllowanceManager
from .credits import usage_percentage, whole_credits
from .errors import AccountNotFound
from .period import utc_now
from .plans import PlanResolver, upgrade_message_for
from .settings import SettingsProvider

logger = logging.getLogger(__name__)

DEFAULT_LOW_BALANCE_THRESHOLD = 85


@dataclass(frozen=True)
class AllowanceSnapshot:
    """Read-only view of an account's current period."""
    account_id: str
    allowance_id: str
    plan: Plan
    tokens_granted: int
    tokens_used: int
    tokens_remaining: int
    tokens_per_credit: int
    credits_granted: int
    credits_used: int
    credits_remaining: int
    period_start: datetime
    period_end: datetime
    base_tokens: int
    rollover_tokens: int
    usage_percentage: int
    at_limit: bool
    low_balance_warning: bool
    upgrade_message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "plan": self.plan.value,
            "tokens_granted": self.tokens_granted,
            "tokens_used": self.tokens_used,
            "tokens_remaining": self.tokens_remaining,
            "tokens_per_credit": self.tokens_per_credit,
            "credits_granted": self.credits_granted,
            "credits_used": self.credits_used,
            "credits_remaining": self.credits_remaining,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "base_tokens": self.base_tokens,
            "rollover_tokens": self.rollover_tokens,
            "usage_percentage": self.usage_percentage,
            "at_limit": self.at_limit,
            "low_balance_warning": self.low_balance_warning,
        }


def build_snapshot(
    period: AllowancePeriod,
    plan: Plan,
    tokens_per_credit: int,
    low_balance_threshold: int = DEFAULT_LOW_BALANCE_THRESHOLD
) -> AllowanceSnapshot:
    """Derive the display figures of a period.

    Remaining tokens are floored at zero, credits are floored to whole
    credits, and the base/rollover breakdown comes from what was stored
    when the period was created.
    """
    tokens_remaining = max(0, period.tokens_remaining)
    percentage = usage_percentage(period.tokens_used, period.tokens_granted)
    meta = period.metadata

    return AllowanceSnapshot(
        account_id=period.account_id,
        allowance_id=period.id,
        plan=plan,
        tokens_granted=period.tokens_granted,
        tokens_used=period.tokens_used,
        tokens_remaining=tokens_remaining,
        tokens_per_credit=tokens_per_credit,
        credits_granted=whole_credits(period.tokens_granted, tokens_per_credit),
        credits_used=whole_credits(period.tokens_used, tokens_per_credit),
        credits_remaining=whole_credits(tokens_remaining, tokens_per_credit),
        period_start=period.period_start,
        period_end=period.period_end,
        base_tokens=meta.base_tokens if meta.base_tokens is not None else period.tokens_granted,
        rollover_tokens=meta.rollover_tokens or 0,
        usage_percentage=percentage,
        at_limit=tokens_remaining <= 0,
        low_balance_warning=percentage > low_balance_threshold and not period.low_balance_warned,
        upgrade_message=upgrade_message_for(plan),
    )


class StatusReader:
    """Produces allowance snapshots.

    Reading status may create the current period: a dashboard view is a
    legitimate first use.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        allowances: AllowanceManager,
        settings: SettingsProvider,
        plans: PlanResolver,
        accounts: AccountDirectory,
        clock: Callable[[], datetime] = utc_now,
        low_balance_threshold: int = DEFAULT_LOW_BALANCE_THRESHOLD
    ):
        self._repository = repository
        self._allowances = allowances
        self._settings = settings
        self._plans = plans
        self._accounts = accounts
        self._clock = clock
        self._low_balance_threshold = low_balance_threshold

    def status(self, account_id: str) -> AllowanceSnapshot:
        """Snapshot of the account's current period.

        Raises:
            InvalidInput: If account_id is missing
            AccountNotFound: If the account is not registered
        """
        require_account_id(account_id)
        if not self._accounts.exists(account_id):
            raise AccountNotFound(account_id)
        return self.snapshot(account_id)

    def snapshot(self, account_id: str) -> AllowanceSnapshot:
        """Snapshot of any account the ledger can charge, registered or not.

        Raises:
            InvalidInput: If account_id is missing
        """
        require_account_id(account_id)
        period = self._allowances.ensure_current_allowance(account_id)
        snapshot = build_snapshot(
            period,
            plan=self._plans.resolve(account_id),
            tokens_per_credit=self._settings.get_all().tokens_per_credit,
            low_balance_threshold=self._low_balance_threshold,
        )
        logger.debug(
            f"Token status for account {account_id}: "
            f"{snapshot.credits_used}/{snapshot.credits_granted} credits "
            f"({snapshot.usage_percentage}%)"
        )
        return snapshot

    def claim_low_balance_warning(self, account_id: str) -> bool:
        """Whether the caller should show the low-balance warning now.

        The warned flag is persisted on the period, so across processes and
        restarts only one caller per account and period gets True.
        """
        snapshot = self.status(account_id)
        if not snapshot.low_balance_warning:
            return False
        claimed = self._repository.claim_low_balance_warning(
            snapshot.allowance_id, self._clock()
        )
        if claimed:
            logger.warning(
                f"Account {account_id} approaching token limit: "
                f"{snapshot.usage_percentage}% used "
                f"({snapshot.tokens_used:,}/{snapshot.tokens_granted:,})"
            )
        return claimed
