"""
Metered OpenAI client wrapper.

Charges each chat completion to an account's token allowance.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.errors import InsufficientBalance
from ..core.ledger import ChargeResult, UsageLedger
from ..core.status import StatusReader

logger = logging.getLogger(__name__)


class MeteredOpenAI:
    """OpenAI client wrapper that charges usage to the credit ledger.

    Before a call, an account already at its limit is refused without
    contacting OpenAI. After a call, the reported token counts are charged
    with the completion id as idempotency source, so recording the same
    response twice never double-charges.
    """

    def __init__(
        self,
        account_id: str,
        model: str,
        feature: str,
        ledger: UsageLedger,
        status_reader: Optional[StatusReader] = None,
        actor: Optional[str] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            account_id: Account charged for usage (required)
            model: OpenAI model name (required)
            feature: Feature tag recorded on each charge (required)
            ledger: Usage ledger to charge
            status_reader: Optional reader used to refuse calls at the limit
            actor: Optional user recorded on each charge
            client: Optional preconfigured OpenAI client

        Raises:
            ValueError: If account_id, model or feature is missing/empty
        """
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")

        self.account_id = account_id
        self.model = model
        self.feature = feature
        self.ledger = ledger
        self.status_reader = status_reader
        self.actor = actor
        self.client = client or OpenAI()
        self.last_charge: Optional[ChargeResult] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        channel: Optional[str] = None,
        **kwargs: Any
    ):
        """Create chat completion and charge its usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            channel: Channel recorded on the charge (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
            InsufficientBalance: If the account is at its limit before the
                call, or the reported usage exceeds the remaining balance
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        if self.status_reader is not None:
            snapshot = self.status_reader.snapshot(self.account_id)
            if snapshot.at_limit:
                raise InsufficientBalance(
                    account_id=self.account_id,
                    tokens_requested=0,
                    tokens_remaining=snapshot.tokens_remaining,
                    credits_remaining=snapshot.credits_remaining,
                    tokens_granted=snapshot.tokens_granted,
                    period_end=snapshot.period_end,
                    plan=snapshot.plan.value,
                    upgrade_message=snapshot.upgrade_message,
                )

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        try:
            self.last_charge = self.ledger.charge(
                self.account_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                feature=self.feature,
                model=self.model,
                actor=self.actor,
                channel=channel,
                request_id=response.id,
            )
        except InsufficientBalance:
            logger.warning(
                f"Completion {response.id} for account {self.account_id} exceeded "
                f"the remaining balance and was not charged"
            )
            raise

        return response
