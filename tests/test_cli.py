"""
Tests for the CLI interface.
"""

import os
import tempfile

import yaml
from typer.testing import CliRunner

from ai_credit_ledger.cli.main import (
    EXIT_CODE_FAIL,
    EXIT_CODE_INSUFFICIENT,
    EXIT_CODE_PASS,
    app,
)
from ai_credit_ledger.config.loader import CONFIG_ENV_VAR

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")
        self.config_path = os.path.join(self.temp_dir, "ledger.yaml")
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"database": {"path": self.db_path}}, f)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, *args):
        return runner.invoke(app, ["--config", self.config_path, *args])

    def test_no_command_shows_banner(self):
        result = self._invoke()
        assert result.exit_code == EXIT_CODE_PASS
        assert "AI Credit Ledger" in result.output

    def test_init(self):
        result = self._invoke("init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_config_from_environment(self):
        result = runner.invoke(app, ["init"], env={CONFIG_ENV_VAR: self.config_path})
        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(self.db_path)

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "nope.yaml"), "status", "a"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error:" in result.output

    def test_invalid_config(self):
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"budget": {"daily": 1}}, f)
        result = self._invoke("settings", "show")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown configuration keys" in result.output

    def test_account_add_and_status(self):
        result = self._invoke("account", "add", "guild-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Account guild-1 registered (free)" in result.output

        result = self._invoke("status", "guild-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Allowance for guild-1" in result.output
        assert "60,000" in result.output

    def test_premium_account(self):
        result = self._invoke("account", "add", "guild-1", "--plan", "premium")
        assert result.exit_code == EXIT_CODE_PASS
        assert "(premium)" in result.output

        result = self._invoke("status", "guild-1")
        assert "600,000" in result.output

    def test_status_unknown_account(self):
        result = self._invoke("status", "ghost")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Account not found: ghost" in result.output

    def test_charge_and_replay(self):
        result = self._invoke("charge", "guild-1", "-p", "100", "-o", "50", "-k", "msg-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Charged 150 tokens" in result.output
        assert "Remaining: 59,850 tokens / 299 credits" in result.output

        result = self._invoke("charge", "guild-1", "-p", "100", "-o", "50", "-k", "msg-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "already processed" in result.output

    def test_charge_invalid_tokens(self):
        result = self._invoke("charge", "guild-1", "--prompt=-5")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "prompt_tokens" in result.output

    def test_charge_insufficient_balance(self):
        self._invoke("account", "grant-admin", "root")
        result = self._invoke("adjust", "guild-1", "-g", "1000", "-u", "1000", "-a", "root")
        assert result.exit_code == EXIT_CODE_PASS

        result = self._invoke("charge", "guild-1", "-p", "10")
        assert result.exit_code == EXIT_CODE_INSUFFICIENT
        assert "Insufficient balance:" in result.output
        assert "Upgrade to Premium" in result.output

    def test_adjust_requires_admin(self):
        result = self._invoke("adjust", "guild-1", "-g", "1000", "-u", "0", "-a", "mallory")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "mallory" in result.output

    def test_low_balance_line(self):
        self._invoke("account", "add", "guild-1")
        self._invoke("account", "grant-admin", "root")
        self._invoke("adjust", "guild-1", "-g", "1000", "-u", "900", "-a", "root")

        result = self._invoke("status", "guild-1")
        assert "Low balance:" in result.output

    def test_at_limit_line(self):
        self._invoke("account", "add", "guild-1")
        self._invoke("account", "grant-admin", "root")
        self._invoke("adjust", "guild-1", "-g", "1000", "-u", "1000", "-a", "root")

        result = self._invoke("status", "guild-1")
        assert "At limit." in result.output

    def test_init_all(self):
        self._invoke("account", "add", "guild-1")
        self._invoke("account", "add", "guild-2")

        result = self._invoke("init-all")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Initialized 2 accounts" in result.output

        result = self._invoke("init-all")
        assert "Initialized 0 accounts" in result.output

    def test_events(self):
        result = self._invoke("events", "guild-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage events recorded." in result.output

        self._invoke("charge", "guild-1", "-p", "100", "-f", "summary", "-k", "msg-1")
        result = self._invoke("events", "guild-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "summary" in result.output

    def test_reconcile(self):
        result = self._invoke("reconcile", "guild-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Reconciled 0 events" in result.output

    def test_settings(self):
        result = self._invoke("settings", "set", "tokens_per_credit", "100")
        assert result.exit_code == EXIT_CODE_PASS

        result = self._invoke("settings", "show")
        assert result.exit_code == EXIT_CODE_PASS
        assert "tokens_per_credit" in result.output
        assert "100" in result.output

    def test_settings_rejects_bad_value(self):
        result = self._invoke("settings", "set", "tokens_per_credit", "0")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "positive integer" in result.output

        result = self._invoke("settings", "set", "tokens_per_dollar", "10")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown setting" in result.output
