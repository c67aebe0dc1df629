"""
Usage ledger.

Charges token usage against the current allowance period. Each charge is
an immutable event; the period's ``tokens_used`` is the running total.

Retries are safe: an idempotency key that was already recorded returns
the original result instead of charging twice. A charge that does not fit
the remaining balance is rejected without writing anything.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai_credit_ledger.storage.models import UsageEvent
from ai_credit_ledger.storage.repository import ChargeStatus, LedgerRepository
from .accounts import require_account_id
from .allowance import AllowanceManager
from .credits import credits_for_tokens, whole_credits
from .errors import InsufficientBalance, InvalidInput
from .period import utc_now
from .plans import PlanResolver, upgrade_message_for
from .settings import TOKENS_PER_CREDIT, SettingsProvider
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    """Result of a successful charge.

    Built from the stored event, so replaying an idempotency key yields an
    equal result. ``replayed`` is informational and excluded from equality.
    """
    event_id: str
    account_id: str
    idempotency_key: str
    feature: str
    total_tokens: int
    credits_charged: float
    tokens_per_credit: int
    tokens_granted: int
    tokens_used: int
    tokens_remaining: int
    credits_granted: int
    credits_remaining: int
    replayed: bool = field(default=False, compare=False)

    @classmethod
    def from_event(cls, event: UsageEvent, replayed: bool = False) -> "ChargeResult":
        remaining = event.tokens_granted_after - event.tokens_used_after
        return cls(
            event_id=event.id,
            account_id=event.account_id,
            idempotency_key=event.idempotency_key,
            feature=event.feature,
            total_tokens=event.total_tokens,
            credits_charged=event.credits_charged,
            tokens_per_credit=event.tokens_per_credit,
            tokens_granted=event.tokens_granted_after,
            tokens_used=event.tokens_used_after,
            tokens_remaining=remaining,
            credits_granted=whole_credits(event.tokens_granted_after, event.tokens_per_credit),
            credits_remaining=whole_credits(max(0, remaining), event.tokens_per_credit),
            replayed=replayed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "event_id": self.event_id,
            "idempotency_key": self.idempotency_key,
            "total_tokens": self.total_tokens,
            "credits_charged": self.credits_charged,
            "tokens_granted": self.tokens_granted,
            "tokens_used": self.tokens_used,
            "tokens_remaining": self.tokens_remaining,
            "credits_granted": self.credits_granted,
            "credits_remaining": self.credits_remaining,
        }


class UsageLedger:
    """Charges usage events against allowances."""

    def __init__(
        self,
        repository: LedgerRepository,
        allowances: AllowanceManager,
        settings: SettingsProvider,
        plans: PlanResolver,
        clock: Callable[[], datetime] = utc_now,
        require_idempotency_key: bool = False
    ):
        self._repository = repository
        self._allowances = allowances
        self._settings = settings
        self._plans = plans
        self._clock = clock
        self._require_idempotency_key = require_idempotency_key

    def charge(
        self,
        account_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        feature: str,
        idempotency_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        actor: Optional[str] = None,
        channel: Optional[str] = None,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ChargeResult:
        """Charge prompt + completion tokens to the account's current period.

        Args:
            account_id: Account to charge
            prompt_tokens: Prompt token count (>= 0)
            completion_tokens: Completion token count (>= 0)
            feature: Feature tag, e.g. ``chat``
            idempotency_key: Retry key. When omitted it is derived from
                ``request_id`` if given, else a random key is used and a
                retried call may charge twice.
            model: Optional model name
            actor: Optional user on whose behalf the charge is made
            channel: Optional channel name
            request_id: Optional upstream request id (e.g. completion id)
            metadata: Optional free-form metadata stored with the event

        Returns:
            ChargeResult with the post-charge balance

        Raises:
            InvalidInput: Bad arguments; nothing was read or written
            InsufficientBalance: Charge exceeds the remaining tokens;
                nothing was written
            StorageUnavailable: Storage failure; retry with the same key
        """
        require_account_id(account_id)
        if not isinstance(feature, str) or not feature.strip():
            raise InvalidInput("feature is required", field="feature")
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        key = self._resolve_key(account_id, feature, idempotency_key, request_id)

        existing = self._repository.get_event_by_key(account_id, key)
        if existing:
            logger.debug(f"Replaying charge {existing.id} for idempotency key {key}")
            return ChargeResult.from_event(existing, replayed=True)

        allowance = self._allowances.ensure_current_allowance(account_id)
        tokens_per_credit = self._settings.get(TOKENS_PER_CREDIT)

        draft = UsageEvent(
            id=uuid.uuid4().hex,
            account_id=account_id,
            allowance_id=allowance.id,
            idempotency_key=key,
            feature=feature,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            credits_charged=credits_for_tokens(usage.total_tokens, tokens_per_credit),
            tokens_per_credit=tokens_per_credit,
            tokens_granted_after=allowance.tokens_granted,
            tokens_used_after=allowance.tokens_used,
            model=model,
            actor=actor,
            channel=channel,
            request_id=request_id,
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        record = self._repository.record_charge(draft)

        if record.status == ChargeStatus.DUPLICATE:
            logger.debug(f"Idempotency key {key} already processed as {record.event.id}")
            return ChargeResult.from_event(record.event, replayed=True)

        if record.status == ChargeStatus.INSUFFICIENT:
            period = record.period
            plan = self._plans.resolve(account_id)
            remaining = period.tokens_remaining - record.pending_tokens
            raise InsufficientBalance(
                account_id=account_id,
                tokens_requested=usage.total_tokens,
                tokens_remaining=remaining,
                credits_remaining=whole_credits(max(0, remaining), tokens_per_credit),
                tokens_granted=period.tokens_granted,
                period_end=period.period_end,
                plan=plan.value,
                upgrade_message=upgrade_message_for(plan),
            )

        event = record.event
        if record.status == ChargeStatus.PARTIAL:
            logger.warning(
                f"Token event {event.id} logged but allowance update failed for "
                f"account {account_id}: {record.error}. Run reconcile to apply it."
            )
        else:
            logger.info(
                f"Logged {usage.total_tokens} tokens for account {account_id} ({feature}). "
                f"Remaining: {event.tokens_granted_after - event.tokens_used_after}"
            )
        return ChargeResult.from_event(event)

    def _resolve_key(
        self,
        account_id: str,
        feature: str,
        idempotency_key: Optional[str],
        request_id: Optional[str]
    ) -> str:
        if idempotency_key is not None:
            if not isinstance(idempotency_key, str) or not idempotency_key.strip():
                raise InvalidInput("idempotency_key cannot be empty", field="idempotency_key")
            return idempotency_key
        if request_id:
            return f"{feature}:{request_id}"
        if self._require_idempotency_key:
            raise InvalidInput(
                "idempotency_key or request_id is required", field="idempotency_key"
            )
        return f"{account_id}-{feature}-{uuid.uuid4().hex}"

    def get_event(self, event_id: str) -> Optional[UsageEvent]:
        return self._repository.get_event(event_id)

    def list_events(
        self,
        account_id: str,
        feature: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageEvent]:
        """Usage history of an account, newest first."""
        require_account_id(account_id)
        if limit <= 0:
            raise InvalidInput("limit must be > 0", field="limit")
        return self._repository.list_events(account_id, feature=feature, limit=limit)

    def reconcile(self, account_id: str) -> int:
        """Apply recorded events whose balance increment failed.

        Returns:
            Number of events applied
        """
        require_account_id(account_id)
        applied = self._repository.reconcile_unapplied(account_id, self._clock())
        if applied:
            tokens = sum(event.total_tokens for event in applied)
            logger.info(
                f"Reconciled {len(applied)} events ({tokens} tokens) for account {account_id}"
            )
        return len(applied)
