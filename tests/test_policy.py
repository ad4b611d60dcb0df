"""
Tests for limit policy evaluation.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from minute_guard.config.loader import LimitConfig, PolicyMode, StaticConfigProvider
from minute_guard.core.errors import PeriodUnresolvable
from minute_guard.core.periods import billing_window
from minute_guard.core.policy import LimitDecision, PolicyEvaluator, evaluate_policy
from minute_guard.core.recorder import UsageRecorder
from minute_guard.storage.models import UsagePeriod
from minute_guard.storage.repository import SqliteUsageStore

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


def make_period(included="0", overage="0", charge=0):
    start, end = billing_window(NOW)
    return UsagePeriod(
        id=1,
        tenant_id="acme",
        period_start=start,
        period_end=end,
        included_minutes_used=Decimal(included),
        overage_minutes_used=Decimal(overage),
        overage_charge=charge
    )


class TestEvaluatePolicy:
    """Test the decision table."""

    @pytest.mark.parametrize("policy", list(PolicyMode))
    def test_permit_below_allotment(self, policy):
        result = evaluate_policy(LimitConfig(policy=policy), make_period(included="150"))

        assert result.decision == LimitDecision.PERMIT
        assert result.reason is None
        assert result.can_proceed
        assert result.remaining_included == Decimal("50")
        assert result.usage_percent == 75

    def test_block_policy_at_limit(self):
        result = evaluate_policy(
            LimitConfig(policy=PolicyMode.BLOCK), make_period(included="200")
        )

        assert result.decision == LimitDecision.BLOCK
        assert result.reason == "included_minutes_exhausted"
        assert not result.can_proceed
        assert result.remaining_included == 0

    def test_charge_policy_at_limit(self):
        result = evaluate_policy(
            LimitConfig(policy=PolicyMode.CHARGE, max_overage_charge=0),
            make_period(included="200", overage="40", charge=14000)
        )

        assert result.decision == LimitDecision.CHARGE
        assert result.reason is None
        assert result.overage_charge == 14000
        assert "350" in result.message

    def test_charge_policy_blocks_at_cap(self):
        result = evaluate_policy(
            LimitConfig(policy=PolicyMode.CHARGE, max_overage_charge=10000),
            make_period(included="200", overage="40", charge=10000)
        )

        assert result.decision == LimitDecision.BLOCK
        assert result.reason == "overage_cap_reached"

    def test_charge_policy_below_cap(self):
        result = evaluate_policy(
            LimitConfig(policy=PolicyMode.CHARGE, max_overage_charge=10000),
            make_period(included="200", overage="10", charge=3500)
        )

        assert result.decision == LimitDecision.CHARGE

    def test_notify_only_always_permits(self):
        result = evaluate_policy(
            LimitConfig(policy=PolicyMode.NOTIFY_ONLY, max_overage_charge=100),
            make_period(included="200", overage="500", charge=100)
        )

        assert result.decision == LimitDecision.PERMIT
        assert "overage" in result.message

    def test_nothing_included_is_at_limit(self):
        config = LimitConfig(included_minutes=0, policy=PolicyMode.BLOCK)

        result = evaluate_policy(config, make_period())

        assert result.usage_percent == 0
        assert result.decision == LimitDecision.BLOCK

    def test_every_block_carries_a_reason(self):
        for config, period in [
            (LimitConfig(policy=PolicyMode.BLOCK), make_period(included="200")),
            (LimitConfig(max_overage_charge=1), make_period(included="200", overage="1", charge=1)),
        ]:
            result = evaluate_policy(config, period)
            assert result.decision == LimitDecision.BLOCK
            assert result.reason


class TestPolicyEvaluator:
    """Test check_limit against stored state."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = SqliteUsageStore(os.path.join(self.temp_dir, "test.db"))
        self.store.initialize()
        self.provider = StaticConfigProvider({
            "acme": LimitConfig(included_minutes=200, policy=PolicyMode.BLOCK)
        })
        self.evaluator = PolicyEvaluator(self.store, self.provider, clock=lambda: NOW)
        self.recorder = UsageRecorder(self.store, self.provider, clock=lambda: NOW)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_fresh_tenant_is_permitted(self):
        result = self.evaluator.check_limit("acme")

        assert result.decision == LimitDecision.PERMIT
        assert result.period_start == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert self.store.count_periods("acme") == 1

    def test_block_policy_blocks_once_exhausted(self):
        self.recorder.record_usage("acme", "call-1", 12000)

        result = self.evaluator.check_limit("acme")

        assert result.decision == LimitDecision.BLOCK
        assert result.reason == "included_minutes_exhausted"

    def test_recording_continues_after_block(self):
        self.recorder.record_usage("acme", "call-1", 12000)
        self.recorder.record_usage("acme", "call-2", 300)

        result = self.evaluator.check_limit("acme")

        assert result.decision == LimitDecision.BLOCK
        assert result.overage_minutes == Decimal("5")

    def test_check_does_not_mutate(self):
        self.recorder.record_usage("acme", "call-1", 600)
        before = self.store.get_active_period("acme", NOW)

        self.evaluator.check_limit("acme")
        self.evaluator.check_limit("acme")

        assert self.store.get_active_period("acme", NOW) == before

    def test_unknown_tenant(self):
        with pytest.raises(PeriodUnresolvable):
            self.evaluator.check_limit("ghost")
