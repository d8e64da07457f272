"""
Unit tests for quota and budget guardrails.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ai_credit_guard.core.errors import BudgetBlocked, QuotaExceeded
from ai_credit_guard.core.guardrails import (
    DAILY_MESSAGE_LIMIT_REACHED,
    SOFT_CAP_REACHED_IMAGE_BLOCKED,
    WEEKLY_IMAGE_LIMIT_REACHED,
    EnforcementAction,
    QuotaEvaluator,
    start_of_utc_day,
    start_of_utc_week,
)
from ai_credit_guard.core.identity import RequestIdentity
from ai_credit_guard.storage.ledger import CreditLedger
from ai_credit_guard.storage.models import UsageLimits
from ai_credit_guard.storage.repository import UsageRepository, initialize_schema

USER = RequestIdentity(user_id="alice", is_demo=False, scope_key="user:alice", device_fingerprint="d")
DEMO = RequestIdentity(user_id=None, is_demo=True, scope_key="demo:dev-1", device_fingerprint="dev-1")

# Wednesday
NOW = datetime(2025, 3, 12, 15, 30, tzinfo=timezone.utc)


class TestPeriodBoundaries:
    """Test UTC day and week boundaries."""

    def test_start_of_day(self):
        assert start_of_utc_day(NOW) == datetime(2025, 3, 12, tzinfo=timezone.utc)

    def test_start_of_week_is_monday(self):
        assert start_of_utc_week(NOW) == datetime(2025, 3, 10, tzinfo=timezone.utc)
        monday = datetime(2025, 3, 10, 0, 0, tzinfo=timezone.utc)
        assert start_of_utc_week(monday) == monday


class TestQuotaEvaluator:
    """Test daily, weekly and soft budget enforcement."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.now = NOW
        clock = lambda: self.now
        self.limits = UsageLimits(weekly_images=2, daily_messages=3, soft_usd_cap=1.0, period_days=84)
        self.repository = UsageRepository(self.db_path, default_limits=self.limits, clock=clock)
        self.ledger = CreditLedger(self.db_path, clock=clock)
        self.ledger.grant_credits("alice", 100)
        self.evaluator = QuotaEvaluator(self.repository)
        self._counter = 0

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _committed(self, operation="chat", usd=0.0, demo=False):
        self._counter += 1
        request_id = f"r{self._counter}"
        if demo:
            self.ledger.reserve_demo_credits(
                device_fingerprint="dev-1",
                request_id=request_id,
                operation=operation,
                mode="mentor",
                model="m",
                model_tier="stable",
                credits=0,
                is_image=False,
            )
        else:
            self.ledger.reserve_user_credits(
                user_id="alice",
                request_id=request_id,
                operation=operation,
                mode="visionary" if operation == "image" else "mentor",
                model="m",
                model_tier="standard" if operation == "image" else "stable",
                credits=1,
            )
        self.ledger.commit(request_id, tokens_in=1, tokens_out=1, usd_estimate=usd)

    def test_chat_allowed_under_limits(self):
        decision = self.evaluator.evaluate_chat_limits(USER, "researcher", "deep_dive")
        assert decision.action == EnforcementAction.ALLOW
        assert decision.effective_mode == "researcher"
        assert decision.model_tier == "deep_dive"
        assert not decision.downgraded_by_soft_cap

    def test_daily_message_cap(self):
        """The cap applies to committed chats of the current UTC day."""
        for _ in range(3):
            self._committed()
        with pytest.raises(QuotaExceeded) as exc_info:
            self.evaluator.evaluate_chat_limits(USER, "mentor", "stable")
        assert exc_info.value.code == DAILY_MESSAGE_LIMIT_REACHED
        assert exc_info.value.status_code == 429
        assert exc_info.value.details == {"dailyMessageLimit": 3, "isDemo": False}

    def test_daily_cap_resets_next_day(self):
        for _ in range(3):
            self._committed()
        self.now = NOW + timedelta(days=1)
        assert self.evaluator.evaluate_chat_limits(USER, "mentor", "stable").action == EnforcementAction.ALLOW

    def test_daily_cap_applies_to_demo(self):
        for _ in range(3):
            self._committed(demo=True)
        with pytest.raises(QuotaExceeded) as exc_info:
            self.evaluator.evaluate_chat_limits(DEMO, "mentor", "stable")
        assert exc_info.value.details["isDemo"] is True

    def test_soft_cap_downgrades_chat(self):
        """Over the budget a deep dive is served as a mentor/stable chat."""
        self._committed(usd=1.0)
        decision = self.evaluator.evaluate_chat_limits(USER, "researcher", "deep_dive")
        assert decision.action == EnforcementAction.DOWNGRADE
        assert decision.effective_mode == "mentor"
        assert decision.model_tier == "stable"
        assert decision.downgraded_by_soft_cap
        assert decision.budget.total_usd == pytest.approx(1.0)

    def test_demo_chat_skips_budget(self):
        decision = self.evaluator.evaluate_chat_limits(DEMO, "researcher", "stable")
        assert decision.action == EnforcementAction.ALLOW
        assert decision.budget is None

    def test_weekly_image_cap(self):
        self._committed("image")
        self._committed("image")
        with pytest.raises(QuotaExceeded) as exc_info:
            self.evaluator.evaluate_image_limits(USER, "standard")
        assert exc_info.value.code == WEEKLY_IMAGE_LIMIT_REACHED
        assert exc_info.value.details == {"weeklyImageLimit": 2, "imageQuotaRemaining": 0}

    def test_weekly_image_cap_resets_on_monday(self):
        self._committed("image")
        self._committed("image")
        self.now = datetime(2025, 3, 17, 0, 0, 1, tzinfo=timezone.utc)
        assert self.evaluator.evaluate_image_limits(USER, "standard").action == EnforcementAction.ALLOW

    def test_soft_cap_blocks_images(self):
        """Images have no cheaper tier, so the budget blocks them."""
        self._committed(usd=1.5)
        with pytest.raises(BudgetBlocked) as exc_info:
            self.evaluator.evaluate_image_limits(USER, "high_quality")
        assert exc_info.value.code == SOFT_CAP_REACHED_IMAGE_BLOCKED
        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"softUsdCap": 1.0, "budgetConsumedUsd": 1.5}

    def test_weekly_cap_checked_before_budget(self):
        self._committed("image", usd=1.0)
        self._committed("image", usd=1.0)
        with pytest.raises(QuotaExceeded):
            self.evaluator.evaluate_image_limits(USER, "standard")

    def test_demo_images_not_limited_here(self):
        """Demo sessions are bounded by their own image quota instead."""
        decision = self.evaluator.evaluate_image_limits(DEMO, "standard")
        assert decision.action == EnforcementAction.ALLOW
        assert decision.effective_mode == "visionary"

    def test_decisions_only_allow_or_downgrade(self):
        """Rejections are raised, so a decision is never a block."""
        assert [action.name for action in EnforcementAction] == ["ALLOW", "DOWNGRADE"]
