"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LedgerStatus(Enum):
    """Lifecycle of a ledger entry. Only PENDING may transition."""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not LedgerStatus.PENDING


@dataclass(frozen=True)
class UsageLimits:
    """Per-plan quotas and the rolling soft budget."""
    weekly_images: int = 2
    daily_messages: int = 60
    soft_usd_cap: float = 2.5
    period_days: int = 84

    def __post_init__(self):
        if self.weekly_images < 0:
            raise ValueError("weekly_images must be >= 0")
        if self.daily_messages < 0:
            raise ValueError("daily_messages must be >= 0")
        if self.soft_usd_cap < 0:
            raise ValueError("soft_usd_cap must be >= 0")
        if self.period_days <= 0:
            raise ValueError("period_days must be > 0")


@dataclass(frozen=True)
class BudgetStatus:
    """Committed USD spend of a user inside the rolling window."""
    total_usd: float
    soft_usd_cap: float
    period_days: int

    @property
    def within_cap(self) -> bool:
        return self.total_usd < self.soft_usd_cap


@dataclass(frozen=True)
class DemoSession:
    """Device-scoped allowance for anonymous visitors."""
    id: str
    device_fingerprint: str
    credits_remaining: int
    images_remaining: int
    expires_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """One billed attempt, keyed by its request id.

    Daily and weekly usage counts are derived from committed entries.
    """
    request_id: str
    scope_key: str
    operation: str
    mode: str
    model: str
    model_tier: str
    credits: int
    status: LedgerStatus
    created_at: datetime
    user_id: Optional[str] = None
    demo_session_id: Optional[str] = None
    images_reserved: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    grounded_queries: int = 0
    image_count: int = 0
    usd_estimate: float = 0.0
    reason: Optional[str] = None
    settled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReserveResult:
    """Outcome of a reservation attempt.

    ``duplicate`` is set when the request id already held a live or
    committed entry, in which case nothing was mutated.
    """
    success: bool
    error_code: Optional[str]
    credits_remaining: int
    images_remaining: Optional[int] = None
    demo_session_id: Optional[str] = None
    ledger_status: Optional[LedgerStatus] = None
    duplicate: bool = False
