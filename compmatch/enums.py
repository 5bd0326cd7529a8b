"""Closed status types and their single boundary normalizers."""

from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    """Discovery run status exposed through the polling contract."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    EMPTY = "empty"
    BLOCKED = "blocked"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES

    @classmethod
    def parse(cls, value: Optional[str]) -> "RunStatus":
        """Map a raw status string (including legacy synonyms) onto a member.

        Raises:
            ValueError: If the value is not a known status or synonym
        """
        if isinstance(value, cls):
            return value
        key = (value or "").strip().lower()
        if not key:
            return cls.PENDING
        try:
            return cls(key)
        except ValueError:
            pass
        if key in _RUN_STATUS_SYNONYMS:
            return _RUN_STATUS_SYNONYMS[key]
        raise ValueError(f"Unknown run status: {value!r}")


_TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.READY, RunStatus.EMPTY, RunStatus.BLOCKED, RunStatus.FAILED}
)

_RUN_STATUS_SYNONYMS = {
    "new": RunStatus.PENDING,
    "queued": RunStatus.PENDING,
    "running": RunStatus.PROCESSING,
    "in_progress": RunStatus.PROCESSING,
    "scraping": RunStatus.PROCESSING,
    "active": RunStatus.READY,
    "completed": RunStatus.READY,
    "complete": RunStatus.READY,
    "done": RunStatus.READY,
    "success": RunStatus.READY,
    "no_results": RunStatus.EMPTY,
    "no_products": RunStatus.EMPTY,
    "bot_blocked": RunStatus.BLOCKED,
    "captcha": RunStatus.BLOCKED,
    "error": RunStatus.FAILED,
    "errored": RunStatus.FAILED,
    "timeout": RunStatus.FAILED,
}


class MatchState(str, Enum):
    """Lifecycle state of a scraped listing / candidate pairing."""

    STAGED = "staged"
    CANDIDATE = "candidate"
    CONFIRMED = "confirmed"
    DISCARDED = "discarded"


class MatchSource(str, Enum):
    """How a confirmed match came to exist."""

    DISCOVERY = "discovery"  # human review of discovery candidates
    AUTO = "auto"  # high-confidence auto-confirm
    URL = "url"  # explicit user-supplied URL


class PlanTier(str, Enum):
    """Tenant plan tier, used to pick quota limits."""

    STARTER = "starter"
    PRO = "pro"
    SCALE = "scale"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PlanTier":
        """Map a raw plan name onto a tier; unknown or empty values fall back to STARTER."""
        if isinstance(value, cls):
            return value
        key = (value or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            return _PLAN_SYNONYMS.get(key, cls.STARTER)


_PLAN_SYNONYMS = {
    "trial": PlanTier.STARTER,
    "free": PlanTier.STARTER,
    "free_trial": PlanTier.STARTER,
    "basic": PlanTier.STARTER,
    "professional": PlanTier.PRO,
    "premium": PlanTier.PRO,
    "business": PlanTier.SCALE,
    "enterprise": PlanTier.SCALE,
}
