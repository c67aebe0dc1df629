"""
Credit settings provider.

Tunable integers read by the allowance manager (grant sizing), the usage
ledger (credits charged) and the status reader (display). Values are read
fresh on every call; nothing is cached across calls.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from ai_credit_ledger.storage.models import Plan
from ai_credit_ledger.storage.repository import LedgerRepository
from .errors import InvalidInput
from .period import utc_now

logger = logging.getLogger(__name__)

TOKENS_PER_CREDIT = "tokens_per_credit"
TOKENS_FREE_PER_MONTH = "tokens_free_per_month"
TOKENS_PREMIUM_PER_MONTH = "tokens_premium_per_month"

DEFAULT_SETTINGS: Dict[str, int] = {
    TOKENS_PER_CREDIT: 200,
    TOKENS_FREE_PER_MONTH: 60000,
    TOKENS_PREMIUM_PER_MONTH: 600000,
}


@dataclass(frozen=True)
class CreditSettings:
    """Snapshot of all credit settings with defaults applied."""
    tokens_per_credit: int
    tokens_free_per_month: int
    tokens_premium_per_month: int

    def base_tokens_for(self, plan: Plan) -> int:
        """Monthly base grant for a plan."""
        if plan == Plan.PREMIUM:
            return self.tokens_premium_per_month
        return self.tokens_free_per_month

    def as_dict(self) -> Dict[str, int]:
        return {
            TOKENS_PER_CREDIT: self.tokens_per_credit,
            TOKENS_FREE_PER_MONTH: self.tokens_free_per_month,
            TOKENS_PREMIUM_PER_MONTH: self.tokens_premium_per_month,
        }


class SettingsProvider:
    """Reads and writes credit settings, falling back to defaults.

    A stored value that is missing or not positive is treated as unset.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        defaults: Optional[Mapping[str, int]] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._repository = repository
        self._defaults = dict(DEFAULT_SETTINGS)
        if defaults:
            unknown = set(defaults) - set(DEFAULT_SETTINGS)
            if unknown:
                raise ValueError(f"Unknown credit settings: {unknown}")
            self._defaults.update(defaults)
        self._clock = clock

    def get_all(self) -> CreditSettings:
        """Current value of every setting."""
        stored = self._repository.get_settings()
        values = {}
        for key, default in self._defaults.items():
            value = stored.get(key)
            values[key] = value if value and value > 0 else default
        return CreditSettings(**values)

    def get(self, key: str) -> int:
        """Current value of one setting.

        Raises:
            InvalidInput: If the key is not a known setting
        """
        if key not in self._defaults:
            raise InvalidInput(f"Unknown setting: {key}", field="key")
        return self.get_all().as_dict()[key]

    def set(self, key: str, value: int) -> None:
        """Overwrite a setting.

        Existing allowance periods are unaffected; only periods created
        afterwards see a new grant size.
        """
        if key not in self._defaults:
            raise InvalidInput(f"Unknown setting: {key}", field="key")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InvalidInput(f"{key} must be a positive integer", field=key)
        self._repository.upsert_setting(key, value, self._clock())
        logger.info(f"Credit setting {key} set to {value}")
