"""
Allowance management.

The only place where periods are created and rollover is computed. Every
caller (charging, status, admin tooling, batch init) goes through
``AllowanceManager.ensure_current_allowance``.

Rollover rule:
    previous_remaining = max(0, previous.tokens_granted - previous.tokens_used)
    rollover = min(previous_remaining, base_tokens)

so at most one full base grant carries over, however long an account
stayed idle.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ai_credit_ledger.storage.models import (
    AllowanceMetadata,
    AllowancePeriod,
    AllowanceSource,
    Plan,
)
from ai_credit_ledger.storage.repository import LedgerRepository
from .accounts import ADMIN_ROLE, AccountDirectory, require_account_id
from .errors import AllowanceRaceLost, InvalidInput, StorageUnavailable, Unauthorized
from .period import current_period, utc_now
from .plans import PlanResolver
from .settings import SettingsProvider

logger = logging.getLogger(__name__)

DEFAULT_CREATION_ATTEMPTS = 3


def compute_rollover(previous: Optional[AllowancePeriod], base_tokens: int) -> int:
    """Tokens carried from the previous period into a new one.

    Args:
        previous: Most recent earlier period, or None
        base_tokens: Base grant of the new period

    Returns:
        Rollover in ``[0, base_tokens]``
    """
    if previous is None:
        return 0
    previous_remaining = max(0, previous.tokens_granted - previous.tokens_used)
    return min(previous_remaining, base_tokens)


@dataclass
class BatchInitResult:
    """Outcome of initializing every active account."""
    initialized: int = 0
    accounts: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class AllowanceManager:
    """Creates and adjusts allowance periods.

    Holds no in-process state. Exactly-once creation per account and month
    comes from the storage uniqueness constraint: a caller that loses the
    insert race re-reads and returns the winner's row.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        settings: SettingsProvider,
        plans: PlanResolver,
        accounts: AccountDirectory,
        clock: Callable[[], datetime] = utc_now,
        creation_attempts: int = DEFAULT_CREATION_ATTEMPTS
    ):
        if creation_attempts < 1:
            raise ValueError("creation_attempts must be >= 1")
        self._repository = repository
        self._settings = settings
        self._plans = plans
        self._accounts = accounts
        self._clock = clock
        self._creation_attempts = creation_attempts

    def ensure_current_allowance(self, account_id: str) -> AllowancePeriod:
        """Return the account's period for now, creating it on first use.

        An existing period is returned untouched. Otherwise the grant is
        sized from the account's plan and the settings, rollover is added,
        and the period is inserted. Losing the insert race to a concurrent
        caller is resolved by re-reading, bounded by ``creation_attempts``.

        Raises:
            InvalidInput: If account_id is missing
            StorageUnavailable: On storage failure, or if the period can
                neither be created nor read back
        """
        period, _ = self._ensure(account_id)
        return period

    def _ensure(self, account_id: str) -> Tuple[AllowancePeriod, bool]:
        """Current period plus whether this call inserted it."""
        require_account_id(account_id)
        now = self._clock()
        period_start, period_end = current_period(now)

        for attempt in range(1, self._creation_attempts + 1):
            existing = self._repository.find_period_containing(account_id, now)
            if existing:
                return existing, False

            candidate = self._build_period(account_id, period_start, period_end)
            try:
                created = self._repository.insert_period(candidate, now)
            except AllowanceRaceLost:
                logger.debug(
                    f"Lost period creation race for {account_id} "
                    f"(attempt {attempt}/{self._creation_attempts}), re-reading"
                )
                continue

            meta = created.metadata
            logger.info(
                f"Created allowance period for account {account_id}: "
                f"{created.tokens_granted} tokens "
                f"(base: {meta.base_tokens}, rollover: {meta.rollover_tokens})"
            )
            return created, True

        raise StorageUnavailable(
            f"Could not create or read allowance period for {account_id} "
            f"after {self._creation_attempts} attempts"
        )

    def _build_period(
        self,
        account_id: str,
        period_start: datetime,
        period_end: datetime
    ) -> AllowancePeriod:
        plan = self._plans.resolve(account_id)
        base_tokens = self._settings.get_all().base_tokens_for(plan)
        previous = self._repository.find_previous_period(account_id, period_start)
        rollover = compute_rollover(previous, base_tokens)

        return AllowancePeriod(
            id=uuid.uuid4().hex,
            account_id=account_id,
            period_start=period_start,
            period_end=period_end,
            tokens_granted=base_tokens + rollover,
            tokens_used=0,
            source=AllowanceSource.SUBSCRIPTION if plan == Plan.PREMIUM else AllowanceSource.FREE_TIER,
            metadata=AllowanceMetadata(
                base_tokens=base_tokens,
                rollover_tokens=rollover,
                plan=plan,
            ),
        )

    def apply_admin_adjustment(
        self,
        account_id: str,
        new_granted: int,
        new_used: int,
        actor: str
    ) -> AllowancePeriod:
        """Overwrite the current period's counters.

        Creates the period with these explicit values when none exists.
        ``new_used`` may exceed ``new_granted``; displays floor the
        remaining balance at zero. An ``admin_adjustment`` event carrying
        the signed delta of ``tokens_granted`` and the actor is appended
        in the same transaction.

        Raises:
            InvalidInput: If an argument is missing or negative
            Unauthorized: If the actor does not hold the admin role
        """
        require_account_id(account_id)
        for name, value in (("new_granted", new_granted), ("new_used", new_used)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidInput(f"{name} must be a non-negative integer", field=name)
        if not actor:
            raise InvalidInput("actor is required", field="actor")
        if not self._accounts.has_role(actor, ADMIN_ROLE):
            raise Unauthorized(actor, "apply_admin_adjustment")

        now = self._clock()
        period_start, period_end = current_period(now)
        period, event = self._repository.apply_adjustment(
            account_id=account_id,
            period_start=period_start,
            period_end=period_end,
            new_granted=new_granted,
            new_used=new_used,
            actor=actor,
            plan=self._plans.resolve(account_id),
            tokens_per_credit=self._settings.get_all().tokens_per_credit,
            now=now,
        )
        logger.info(
            f"Admin {actor} adjusted account {account_id}: "
            f"granted={new_granted}, used={new_used} "
            f"({event.metadata.get('adjustment_type')}, delta {event.total_tokens:+d})"
        )
        return period

    def initialize_all_accounts(self) -> BatchInitResult:
        """Create current periods for every active account lacking one.

        Safe alongside live traffic: creation uses the same race
        resolution as ``ensure_current_allowance``. A failing account is
        logged and skipped. Accounts whose period a concurrent caller
        created first are not reported as initialized by this run.
        """
        now = self._clock()
        covered = self._repository.accounts_with_period_containing(now)
        pending = [a for a in self._accounts.list_active() if a not in covered]

        result = BatchInitResult()
        for account_id in pending:
            try:
                _, created = self._ensure(account_id)
            except Exception:
                logger.exception(f"Failed to initialize account {account_id}")
                result.failed.append(account_id)
                continue
            if created:
                result.accounts.append(account_id)

        result.initialized = len(result.accounts)
        logger.info(
            f"Batch init completed: {result.initialized} accounts initialized, "
            f"{len(result.failed)} failed"
        )
        return result
