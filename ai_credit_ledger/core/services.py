"""
Wiring of the ledger components.

One place that builds repository, providers and managers from a
LedgerConfig so the CLI, the SDK and tests assemble them identically.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ai_credit_ledger.config.loader import LedgerConfig
from ai_credit_ledger.storage.repository import LedgerRepository, initialize_schema
from .accounts import AccountDirectory
from .allowance import AllowanceManager
from .ledger import UsageLedger
from .period import utc_now
from .plans import PlanResolver
from .settings import SettingsProvider
from .status import StatusReader


@dataclass(frozen=True)
class LedgerServices:
    """All ledger components sharing one repository and clock."""
    repository: LedgerRepository
    settings: SettingsProvider
    plans: PlanResolver
    accounts: AccountDirectory
    allowances: AllowanceManager
    ledger: UsageLedger
    status: StatusReader


def build_services(
    config: Optional[LedgerConfig] = None,
    clock: Callable[[], datetime] = utc_now,
    initialize: bool = True
) -> LedgerServices:
    """Build every component from configuration.

    Args:
        config: Ledger configuration (defaults when None)
        clock: Source of ``now`` for every component
        initialize: Create the schema if it does not exist

    Returns:
        LedgerServices bundle
    """
    config = config or LedgerConfig()
    if initialize:
        initialize_schema(config.database.path)

    repository = LedgerRepository(
        config.database.path,
        busy_timeout=config.database.busy_timeout_seconds,
    )
    settings = SettingsProvider(repository, defaults=config.defaults.as_dict(), clock=clock)
    plans = PlanResolver(repository, clock=clock)
    accounts = AccountDirectory(repository, clock=clock)
    allowances = AllowanceManager(
        repository,
        settings,
        plans,
        accounts,
        clock=clock,
        creation_attempts=config.ledger.creation_attempts,
    )
    ledger = UsageLedger(
        repository,
        allowances,
        settings,
        plans,
        clock=clock,
        require_idempotency_key=config.ledger.require_idempotency_key,
    )
    status = StatusReader(
        repository,
        allowances,
        settings,
        plans,
        accounts,
        clock=clock,
        low_balance_threshold=config.ledger.low_balance_threshold_percent,
    )
    return LedgerServices(
        repository=repository,
        settings=settings,
        plans=plans,
        accounts=accounts,
        allowances=allowances,
        ledger=ledger,
        status=status,
    )
