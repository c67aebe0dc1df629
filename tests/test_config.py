"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import tempfile

import pytest
import yaml

from ai_credit_ledger.config.loader import (
    CreditDefaults,
    DatabaseConfig,
    LedgerConfig,
    LedgerPolicyConfig,
    load_ledger_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "database": {
                "path": "/var/lib/ledger/ledger.db",
                "busy_timeout_seconds": 10
            },
            "defaults": {
                "tokens_per_credit": 100,
                "tokens_free_per_month": 20000,
                "tokens_premium_per_month": 400000
            },
            "ledger": {
                "low_balance_threshold_percent": 90,
                "creation_attempts": 5,
                "require_idempotency_key": True
            }
        }
        config = load_ledger_config(self._write_config(config_data))

        assert config.database.path == "/var/lib/ledger/ledger.db"
        assert config.database.busy_timeout_seconds == 10.0
        assert config.defaults.tokens_per_credit == 100
        assert config.defaults.tokens_free_per_month == 20000
        assert config.defaults.tokens_premium_per_month == 400000
        assert config.ledger.low_balance_threshold_percent == 90
        assert config.ledger.creation_attempts == 5
        assert config.ledger.require_idempotency_key is True

    def test_missing_sections_use_defaults(self):
        """Test that omitted sections fall back to defaults."""
        config = load_ledger_config(self._write_config({"database": {"path": "x.db"}}))

        assert config.database.path == "x.db"
        assert config.defaults == CreditDefaults()
        assert config.ledger == LedgerPolicyConfig()
        assert config.defaults.tokens_per_credit == 200
        assert config.defaults.tokens_free_per_month == 60000
        assert config.defaults.tokens_premium_per_month == 600000
        assert config.ledger.low_balance_threshold_percent == 85
        assert config.ledger.require_idempotency_key is False

    def test_missing_file_raises_error(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Ledger config file not found"):
            load_ledger_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        """Test that an empty config file is rejected."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_ledger_config(config_path)

    def test_non_dict_raises_error(self):
        """Test that a list document is rejected."""
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_ledger_config(self._write_config(["database"]))

    def test_invalid_yaml_raises_error(self):
        """Test that malformed YAML raises YAMLError."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("database: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_ledger_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        """Test that unknown top-level keys are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_ledger_config(self._write_config({"budget": {"daily": 1}}))

    def test_unknown_section_key_rejected(self):
        """Test that a typo inside a section is rejected."""
        config_data = {"defaults": {"tokens_per_credits": 100}}
        with pytest.raises(ValueError, match="Unknown defaults keys"):
            load_ledger_config(self._write_config(config_data))

    def test_non_integer_default_rejected(self):
        """Test that non-integer grants are rejected."""
        config_data = {"defaults": {"tokens_free_per_month": "lots"}}
        with pytest.raises(ValueError, match="must be an integer"):
            load_ledger_config(self._write_config(config_data))

    def test_non_positive_default_rejected(self):
        """Test that zero or negative defaults are rejected."""
        config_data = {"defaults": {"tokens_per_credit": 0}}
        with pytest.raises(ValueError, match="tokens_per_credit must be > 0"):
            load_ledger_config(self._write_config(config_data))

    def test_threshold_out_of_range_rejected(self):
        """Test the low balance threshold bounds."""
        config_data = {"ledger": {"low_balance_threshold_percent": 120}}
        with pytest.raises(ValueError, match="between 0 and 100"):
            load_ledger_config(self._write_config(config_data))

    def test_creation_attempts_must_be_positive(self):
        """Test that at least one creation attempt is required."""
        config_data = {"ledger": {"creation_attempts": 0}}
        with pytest.raises(ValueError, match="creation_attempts"):
            load_ledger_config(self._write_config(config_data))

    def test_require_key_must_be_boolean(self):
        """Test that require_idempotency_key only accepts booleans."""
        config_data = {"ledger": {"require_idempotency_key": "yes"}}
        with pytest.raises(ValueError, match="true or false"):
            load_ledger_config(self._write_config(config_data))

    def test_section_must_be_dict(self):
        """Test that a scalar section is rejected."""
        with pytest.raises(ValueError, match="'database' must be a dictionary"):
            load_ledger_config(self._write_config({"database": "ledger.db"}))


class TestConfigDataclasses:
    """Test direct construction of config objects."""

    def test_default_config(self):
        config = LedgerConfig()
        assert config.database.path == "credit_ledger.db"
        assert config.database.busy_timeout_seconds == 30.0

    def test_empty_database_path_rejected(self):
        with pytest.raises(ValueError, match="database path cannot be empty"):
            DatabaseConfig(path="")

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError, match="busy_timeout_seconds"):
            DatabaseConfig(busy_timeout_seconds=0)

    def test_defaults_as_dict(self):
        assert CreditDefaults(tokens_per_credit=50).as_dict() == {
            "tokens_per_credit": 50,
            "tokens_free_per_month": 60000,
            "tokens_premium_per_month": 600000,
        }
