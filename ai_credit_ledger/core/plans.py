"""
Plan resolution.

The subscription record of an account decides its tier. Accounts without
one are on the free plan.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ai_credit_ledger.storage.models import Plan
from ai_credit_ledger.storage.repository import LedgerRepository
from .period import utc_now

logger = logging.getLogger(__name__)


def upgrade_message_for(plan: Plan) -> str:
    """What to tell an account that ran out of tokens."""
    if plan == Plan.FREE:
        return "Upgrade to Premium for more credits."
    return "Wait for your billing period to reset or contact support."


class PlanResolver:
    """Resolves and records the plan tier of an account."""

    def __init__(
        self,
        repository: LedgerRepository,
        clock: Callable[[], datetime] = utc_now
    ):
        self._repository = repository
        self._clock = clock

    def resolve(self, account_id: str) -> Plan:
        """Current plan of an account, ``free`` when none is recorded."""
        stored: Optional[str] = self._repository.get_plan(account_id)
        if not stored:
            return Plan.FREE
        try:
            return Plan(stored)
        except ValueError:
            logger.warning(f"Unknown plan '{stored}' for account {account_id}, using free")
            return Plan.FREE

    def set_plan(self, account_id: str, plan: Plan) -> None:
        """Record a plan change. Takes effect from the next period."""
        self._repository.set_plan(account_id, plan.value, self._clock())
        logger.info(f"Account {account_id} plan set to {plan.value}")
