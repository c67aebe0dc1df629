"""
Configuration management and loading.

Handles ledger settings from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from ai_credit_ledger.core.allowance import DEFAULT_CREATION_ATTEMPTS
from ai_credit_ledger.core.settings import DEFAULT_SETTINGS
from ai_credit_ledger.core.status import DEFAULT_LOW_BALANCE_THRESHOLD
from ai_credit_ledger.storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH

CONFIG_ENV_VAR = "CREDIT_LEDGER_CONFIG"


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the ledger is stored."""
    path: str = DEFAULT_DB_PATH
    busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT

    def __post_init__(self):
        """Validate database settings."""
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds must be > 0")


@dataclass(frozen=True)
class CreditDefaults:
    """Credit settings used when none are stored."""
    tokens_per_credit: int = DEFAULT_SETTINGS["tokens_per_credit"]
    tokens_free_per_month: int = DEFAULT_SETTINGS["tokens_free_per_month"]
    tokens_premium_per_month: int = DEFAULT_SETTINGS["tokens_premium_per_month"]

    def __post_init__(self):
        """Validate defaults are positive."""
        for name, value in self.as_dict().items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0")

    def as_dict(self) -> Dict[str, int]:
        return {
            "tokens_per_credit": self.tokens_per_credit,
            "tokens_free_per_month": self.tokens_free_per_month,
            "tokens_premium_per_month": self.tokens_premium_per_month,
        }


@dataclass(frozen=True)
class LedgerPolicyConfig:
    """Behavior of the ledger itself."""
    low_balance_threshold_percent: int = DEFAULT_LOW_BALANCE_THRESHOLD
    creation_attempts: int = DEFAULT_CREATION_ATTEMPTS
    require_idempotency_key: bool = False

    def __post_init__(self):
        """Validate policy values."""
        if not 0 <= self.low_balance_threshold_percent <= 100:
            raise ValueError("low_balance_threshold_percent must be between 0 and 100")
        if self.creation_attempts < 1:
            raise ValueError("creation_attempts must be >= 1")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    defaults: CreditDefaults = field(default_factory=CreditDefaults)
    ledger: LedgerPolicyConfig = field(default_factory=LedgerPolicyConfig)


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Every section is optional; missing values take their defaults. Unknown
    keys are rejected so a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'defaults', 'ledger'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database_data = _section(raw_config, 'database', {'path', 'busy_timeout_seconds'})
    database = DatabaseConfig(
        path=str(database_data.get('path', DEFAULT_DB_PATH)),
        busy_timeout_seconds=_number(
            database_data, 'busy_timeout_seconds', DEFAULT_BUSY_TIMEOUT, 'database'
        ),
    )

    defaults_data = _section(raw_config, 'defaults', set(DEFAULT_SETTINGS))
    defaults = CreditDefaults(**{
        key: _integer(defaults_data, key, default, 'defaults')
        for key, default in DEFAULT_SETTINGS.items()
    })

    ledger_data = _section(
        raw_config,
        'ledger',
        {'low_balance_threshold_percent', 'creation_attempts', 'require_idempotency_key'},
    )
    require_key = ledger_data.get('require_idempotency_key', False)
    if not isinstance(require_key, bool):
        raise ValueError("'require_idempotency_key' in ledger must be true or false")
    ledger = LedgerPolicyConfig(
        low_balance_threshold_percent=_integer(
            ledger_data, 'low_balance_threshold_percent', DEFAULT_LOW_BALANCE_THRESHOLD, 'ledger'
        ),
        creation_attempts=_integer(
            ledger_data, 'creation_attempts', DEFAULT_CREATION_ATTEMPTS, 'ledger'
        ),
        require_idempotency_key=require_key,
    )

    return LedgerConfig(database=database, defaults=defaults, ledger=ledger)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Get an optional section, rejecting unknown keys.

    Args:
        raw_config: Parsed YAML document
        name: Section name
        allowed_keys: Keys permitted in the section

    Returns:
        Section contents, empty if absent

    Raises:
        ValueError: If the section is not a dictionary or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _integer(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)
