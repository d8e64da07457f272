"""
Quota and budget guardrails.

Decides, before any credits are reserved, whether a request may proceed,
must be downgraded, or is rejected.

Enforcement Order:
1. Daily message cap - Every scope, chat only
2. Weekly image cap - Authenticated users, images only
3. Soft USD budget - Authenticated users; chat is downgraded, images blocked
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Optional

from .errors import BudgetBlocked, QuotaExceeded
from .identity import RequestIdentity
from .pricing import DEFAULT_PLAN_ID, FALLBACK_MODE, FALLBACK_TIER
from ai_credit_guard.storage.models import BudgetStatus, UsageLimits
from ai_credit_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

DAILY_MESSAGE_LIMIT_REACHED = "DAILY_MESSAGE_LIMIT_REACHED"
WEEKLY_IMAGE_LIMIT_REACHED = "WEEKLY_IMAGE_LIMIT_REACHED"
SOFT_CAP_REACHED_IMAGE_BLOCKED = "SOFT_CAP_REACHED_IMAGE_BLOCKED"


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = auto()      # Serve as requested
    DOWNGRADE = auto()  # Serve on the cheapest mode and tier


@dataclass(frozen=True)
class LimitDecision:
    """Outcome of the limit check for a request that was not rejected."""
    action: EnforcementAction
    effective_mode: str
    model_tier: str
    limits: UsageLimits
    budget: Optional[BudgetStatus] = None

    @property
    def downgraded_by_soft_cap(self) -> bool:
        return self.action == EnforcementAction.DOWNGRADE


def start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_utc_week(now: datetime) -> datetime:
    """Most recent Monday 00:00 UTC."""
    return start_of_utc_day(now) - timedelta(days=now.weekday())


class QuotaEvaluator:
    """Evaluates daily and weekly quotas and the rolling soft budget."""

    def __init__(self, repository: UsageRepository, plan_id: str = DEFAULT_PLAN_ID):
        self.repository = repository
        self.plan_id = plan_id

    def _check_daily_messages(self, identity: RequestIdentity, limits: UsageLimits) -> None:
        since = start_of_utc_day(self.repository.clock())
        used = self.repository.count_committed(identity.scope_key, "chat", since)
        if used >= limits.daily_messages:
            logger.info("Daily message cap reached for %s (%d/%d)", identity.scope_key, used, limits.daily_messages)
            raise QuotaExceeded(
                DAILY_MESSAGE_LIMIT_REACHED,
                details={"dailyMessageLimit": limits.daily_messages, "isDemo": identity.is_demo},
            )

    def evaluate_chat_limits(self, identity: RequestIdentity, mode: str, model_tier: str) -> LimitDecision:
        """Check a chat request against quotas and budget.

        Args:
            identity: Resolved request identity
            mode: Requested chat mode
            model_tier: Requested model tier

        Returns:
            LimitDecision carrying the effective mode and tier

        Raises:
            QuotaExceeded: If the daily message cap is reached
        """
        limits = self.repository.get_usage_limits(self.plan_id)
        self._check_daily_messages(identity, limits)

        if identity.is_demo:
            return LimitDecision(EnforcementAction.ALLOW, mode, model_tier, limits)

        budget = self.repository.get_budget_status(identity.user_id, limits)
        if not budget.within_cap:
            logger.warning(
                "Soft cap reached for %s ($%.4f >= $%.2f), downgrading %s/%s",
                identity.scope_key, budget.total_usd, budget.soft_usd_cap, mode, model_tier,
            )
            return LimitDecision(EnforcementAction.DOWNGRADE, FALLBACK_MODE, FALLBACK_TIER, limits, budget)
        return LimitDecision(EnforcementAction.ALLOW, mode, model_tier, limits, budget)

    def evaluate_image_limits(self, identity: RequestIdentity, model_tier: str) -> LimitDecision:
        """Check an image request; there is no cheaper image tier, so budget breaches block.

        Raises:
            QuotaExceeded: If the weekly image cap is reached
            BudgetBlocked: If the soft USD cap is reached
        """
        limits = self.repository.get_usage_limits(self.plan_id)
        if identity.is_demo:
            # Demo sessions are bounded by their own image quota at reservation time
            return LimitDecision(EnforcementAction.ALLOW, "visionary", model_tier, limits)

        since = start_of_utc_week(self.repository.clock())
        used = self.repository.count_committed(identity.scope_key, "image", since)
        if used >= limits.weekly_images:
            logger.info("Weekly image cap reached for %s (%d/%d)", identity.scope_key, used, limits.weekly_images)
            raise QuotaExceeded(
                WEEKLY_IMAGE_LIMIT_REACHED,
                details={"weeklyImageLimit": limits.weekly_images, "imageQuotaRemaining": 0},
            )

        budget = self.repository.get_budget_status(identity.user_id, limits)
        if not budget.within_cap:
            logger.warning("Soft cap reached for %s, blocking image request", identity.scope_key)
            raise BudgetBlocked(
                SOFT_CAP_REACHED_IMAGE_BLOCKED,
                details={"softUsdCap": budget.soft_usd_cap, "budgetConsumedUsd": budget.total_usd},
            )
        return LimitDecision(EnforcementAction.ALLOW, "visionary", model_tier, limits, budget)
