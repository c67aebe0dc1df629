"""
Account directory.

Knows which accounts exist and are active, and which actors hold
privileged roles.
"""

import logging
from datetime import datetime
from typing import Callable, List

from ai_credit_ledger.storage.repository import LedgerRepository
from .errors import AccountNotFound, InvalidInput
from .period import utc_now

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def require_account_id(account_id: str) -> str:
    """Reject a missing or blank account id."""
    if not isinstance(account_id, str) or not account_id.strip():
        raise InvalidInput("account_id is required", field="account_id")
    return account_id


class AccountDirectory:
    """Registry of served accounts and actor roles."""

    def __init__(
        self,
        repository: LedgerRepository,
        clock: Callable[[], datetime] = utc_now
    ):
        self._repository = repository
        self._clock = clock

    def register(self, account_id: str, active: bool = True) -> None:
        """Add an account, or reactivate/deactivate an existing one."""
        require_account_id(account_id)
        self._repository.register_account(account_id, self._clock(), active)
        logger.info(f"Registered account {account_id} (active={active})")

    def deactivate(self, account_id: str) -> None:
        """Stop batch initialization for an account. Its history stays."""
        if not self._repository.set_account_active(account_id, False):
            raise AccountNotFound(account_id)
        logger.info(f"Deactivated account {account_id}")

    def exists(self, account_id: str) -> bool:
        return self._repository.account_exists(account_id)

    def list_active(self) -> List[str]:
        return self._repository.list_active_accounts()

    def grant_role(self, actor: str, role: str = ADMIN_ROLE) -> None:
        if not actor:
            raise InvalidInput("actor is required", field="actor")
        self._repository.grant_role(actor, role)
        logger.info(f"Granted role {role} to {actor}")

    def revoke_role(self, actor: str, role: str = ADMIN_ROLE) -> None:
        self._repository.revoke_role(actor, role)

    def has_role(self, actor: str, role: str = ADMIN_ROLE) -> bool:
        if not actor:
            return False
        return self._repository.has_role(actor, role)
