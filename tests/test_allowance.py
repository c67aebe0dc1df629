"""
Unit tests for allowance period creation, rollover and admin adjustments.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ai_credit_ledger.core.allowance import AllowanceManager, compute_rollover
from ai_credit_ledger.core.errors import (
    AllowanceRaceLost,
    InvalidInput,
    StorageUnavailable,
    Unauthorized,
)
from ai_credit_ledger.storage.models import AllowanceSource, Plan

UTC = timezone.utc
APRIL_2ND = datetime(2024, 4, 2, 9, 0, tzinfo=UTC)


class TestComputeRollover:
    """Test the rollover rule in isolation."""

    def test_no_previous_period(self):
        assert compute_rollover(None, 60000) == 0

    def test_unused_tokens_carry_over(self, services):
        period = services.allowances.ensure_current_allowance("acct")
        previous = replace(period, tokens_granted=60000, tokens_used=10000)
        assert compute_rollover(previous, 60000) == 50000

    def test_capped_at_base(self, services):
        period = services.allowances.ensure_current_allowance("acct")
        previous = replace(period, tokens_granted=200000, tokens_used=0)
        assert compute_rollover(previous, 60000) == 60000

    def test_remaining_above_base_is_capped(self, services, clock):
        services.accounts.grant_role("root")
        services.allowances.apply_admin_adjustment("guild-1", 1000, 100, "root")
        services.settings.set("tokens_free_per_month", 600)
        clock.set(APRIL_2ND)

        period = services.allowances.ensure_current_allowance("guild-1")
        assert period.metadata.rollover_tokens == 600
        assert period.tokens_granted == 1200

    def test_overused_previous_gives_nothing(self, services):
        period = services.allowances.ensure_current_allowance("acct")
        previous = replace(period, tokens_granted=1000, tokens_used=1500)
        assert compute_rollover(previous, 60000) == 0


class TestEnsureCurrentAllowance:
    """Test lazy period creation."""

    def test_first_use_creates_free_period(self, services):
        period = services.allowances.ensure_current_allowance("guild-1")

        assert period.tokens_granted == 60000
        assert period.tokens_used == 0
        assert period.source == AllowanceSource.FREE_TIER
        assert period.metadata.base_tokens == 60000
        assert period.metadata.rollover_tokens == 0
        assert period.metadata.plan == Plan.FREE
        assert period.period_start == datetime(2024, 3, 1, tzinfo=UTC)
        assert period.period_end == datetime(2024, 4, 1, tzinfo=UTC)

    def test_existing_period_returned_unchanged(self, services):
        first = services.allowances.ensure_current_allowance("guild-1")
        services.ledger.charge("guild-1", 100, 50, "chat", "k1")
        second = services.allowances.ensure_current_allowance("guild-1")

        assert second.id == first.id
        assert second.tokens_granted == 60000
        assert second.tokens_used == 150
        assert len(services.repository.list_periods("guild-1")) == 1

    def test_premium_plan(self, services):
        services.plans.set_plan("guild-1", Plan.PREMIUM)
        period = services.allowances.ensure_current_allowance("guild-1")

        assert period.tokens_granted == 600000
        assert period.source == AllowanceSource.SUBSCRIPTION
        assert period.metadata.plan == Plan.PREMIUM

    def test_rollover_into_next_month(self, services, clock):
        services.ledger.charge("guild-1", 10000, 0, "chat", "march")
        clock.set(APRIL_2ND)

        period = services.allowances.ensure_current_allowance("guild-1")
        assert period.metadata.base_tokens == 60000
        assert period.metadata.rollover_tokens == 50000
        assert period.tokens_granted == 110000
        assert period.period_start == datetime(2024, 4, 1, tzinfo=UTC)

    def test_rollover_capped_at_one_base_grant(self, services, clock):
        services.accounts.grant_role("root")
        services.allowances.apply_admin_adjustment("guild-1", 200000, 0, "root")
        clock.set(APRIL_2ND)

        period = services.allowances.ensure_current_allowance("guild-1")
        assert period.metadata.rollover_tokens == 60000
        assert period.tokens_granted == 120000

    def test_rollover_after_idle_months(self, services, clock):
        services.ledger.charge("guild-1", 20000, 0, "chat", "march")
        clock.set(datetime(2024, 7, 10, tzinfo=UTC))

        period = services.allowances.ensure_current_allowance("guild-1")
        assert period.metadata.rollover_tokens == 40000
        assert period.tokens_granted == 100000
        assert len(services.repository.list_periods("guild-1")) == 2

    def test_settings_change_only_affects_new_periods(self, services, clock):
        services.allowances.ensure_current_allowance("guild-1")
        services.settings.set("tokens_free_per_month", 1000)

        current = services.allowances.ensure_current_allowance("guild-1")
        assert current.tokens_granted == 60000

        clock.set(APRIL_2ND)
        april = services.allowances.ensure_current_allowance("guild-1")
        assert april.metadata.base_tokens == 1000
        assert april.metadata.rollover_tokens == 1000
        assert april.tokens_granted == 2000

    def test_plan_change_takes_effect_next_period(self, services, clock):
        services.allowances.ensure_current_allowance("guild-1")
        services.plans.set_plan("guild-1", Plan.PREMIUM)
        assert services.allowances.ensure_current_allowance("guild-1").tokens_granted == 60000

        clock.set(APRIL_2ND)
        april = services.allowances.ensure_current_allowance("guild-1")
        assert april.metadata.base_tokens == 600000
        assert april.tokens_granted == 660000

    def test_lost_race_returns_winner(self, services, caplog):
        repository = services.repository
        real_insert = repository.insert_period
        winners = []

        def insert_after_competitor(period, now):
            winner = real_insert(replace(period, id="winner"), now)
            winners.append(winner)
            raise AllowanceRaceLost(period.account_id, period.period_start)

        with patch.object(repository, "insert_period", side_effect=insert_after_competitor):
            with caplog.at_level(logging.DEBUG, logger="ai_credit_ledger.core.allowance"):
                period = services.allowances.ensure_current_allowance("guild-1")

        assert period.id == "winner"
        assert len(winners) == 1
        assert "Lost period creation race" in caplog.text

    def test_exhausted_attempts_raise_storage_unavailable(self, services, clock):
        manager = AllowanceManager(
            services.repository,
            services.settings,
            services.plans,
            services.accounts,
            clock=clock,
            creation_attempts=2,
        )
        race = AllowanceRaceLost("guild-1", datetime(2024, 3, 1, tzinfo=UTC))
        with patch.object(services.repository, "insert_period", side_effect=race) as insert:
            with pytest.raises(StorageUnavailable, match="after 2 attempts"):
                manager.ensure_current_allowance("guild-1")
        assert insert.call_count == 2

    def test_invalid_creation_attempts(self, services):
        with pytest.raises(ValueError):
            AllowanceManager(
                services.repository,
                services.settings,
                services.plans,
                services.accounts,
                creation_attempts=0,
            )

    def test_missing_account_id(self, services):
        with pytest.raises(InvalidInput):
            services.allowances.ensure_current_allowance("")


class TestAdminAdjustment:
    """Test privileged overrides of the current period."""

    def test_requires_admin_role(self, services):
        with pytest.raises(Unauthorized):
            services.allowances.apply_admin_adjustment("guild-1", 1000, 0, "mallory")
        assert services.repository.list_periods("guild-1") == []

    def test_creates_period_when_missing(self, services, clock):
        services.accounts.grant_role("root")
        period = services.allowances.apply_admin_adjustment("guild-1", 1000, 0, "root")

        assert period.tokens_granted == 1000
        assert period.tokens_used == 0
        assert period.source == AllowanceSource.ADMIN_MANUAL
        assert period.metadata.created_by == "root"

        clock.set(APRIL_2ND)
        april = services.allowances.ensure_current_allowance("guild-1")
        assert april.metadata.rollover_tokens == 1000
        assert april.tokens_granted == 61000

    def test_overwrites_existing_period(self, services):
        services.accounts.grant_role("root")
        original = services.allowances.ensure_current_allowance("guild-1")
        services.ledger.charge("guild-1", 500, 0, "chat", "k1")

        period = services.allowances.apply_admin_adjustment("guild-1", 70000, 0, "root")
        assert period.id == original.id
        assert period.tokens_granted == 70000
        assert period.tokens_used == 0

        events = services.ledger.list_events("guild-1", feature="admin_adjustment")
        assert len(events) == 1
        assert events[0].total_tokens == 10000
        assert events[0].actor == "root"
        assert events[0].metadata["adjustment_type"] == "manual"
        assert events[0].metadata["tokens_used_before"] == 500

    def test_used_may_exceed_granted(self, services):
        services.accounts.grant_role("root")
        period = services.allowances.apply_admin_adjustment("guild-1", 1000, 1500, "root")
        assert period.tokens_remaining == -500

    @pytest.mark.parametrize("granted,used", [(-1, 0), (0, -1), (1.5, 0), (True, 0)])
    def test_invalid_counters(self, services, granted, used):
        services.accounts.grant_role("root")
        with pytest.raises(InvalidInput):
            services.allowances.apply_admin_adjustment("guild-1", granted, used, "root")

    def test_missing_actor(self, services):
        with pytest.raises(InvalidInput, match="actor"):
            services.allowances.apply_admin_adjustment("guild-1", 1000, 0, "")


class TestInitializeAllAccounts:
    """Test the batch initialization job."""

    def test_initializes_active_accounts_without_period(self, services):
        for account_id in ("a", "b", "c"):
            services.accounts.register(account_id)
        services.accounts.register("dormant", active=False)
        existing = services.allowances.ensure_current_allowance("b")

        result = services.allowances.initialize_all_accounts()

        assert result.initialized == 2
        assert result.accounts == ["a", "c"]
        assert result.failed == []
        assert services.repository.list_periods("b")[0].id == existing.id
        assert services.repository.list_periods("dormant") == []

    def test_second_run_is_noop(self, services):
        services.accounts.register("a")
        services.allowances.initialize_all_accounts()
        result = services.allowances.initialize_all_accounts()
        assert result.initialized == 0
        assert len(services.repository.list_periods("a")) == 1

    def test_failure_does_not_abort_batch(self, services, caplog):
        for account_id in ("a", "broken", "c"):
            services.accounts.register(account_id)
        manager = services.allowances
        original = manager._ensure

        def flaky(account_id):
            if account_id == "broken":
                raise StorageUnavailable("disk full")
            return original(account_id)

        with patch.object(manager, "_ensure", side_effect=flaky):
            with caplog.at_level(logging.ERROR, logger="ai_credit_ledger.core.allowance"):
                result = manager.initialize_all_accounts()

        assert result.accounts == ["a", "c"]
        assert result.failed == ["broken"]
        assert "Failed to initialize account broken" in caplog.text

    def test_period_created_concurrently_is_not_counted(self, services):
        services.accounts.register("a")
        services.allowances.ensure_current_allowance("a")

        # Snapshot taken before another caller created the period.
        with patch.object(services.repository, "accounts_with_period_containing", return_value=set()):
            result = services.allowances.initialize_all_accounts()

        assert result.initialized == 0
        assert result.accounts == []
        assert result.failed == []
        assert len(services.repository.list_periods("a")) == 1
