"""Error taxonomy for discovery, matching, and quota enforcement."""

from typing import Optional


class MatchingError(Exception):
    """Base class for all competitor matching errors."""

    pass


class ScrapeBlockedError(MatchingError):
    """Raised when the site actively resists automation (401/403, captcha, /blocked redirect).

    Terminal: never retried, surfaced as the ``blocked`` run status.
    """

    pass


class ScrapeTransientError(MatchingError):
    """Raised when a scrape fails after retries (timeouts, connection resets, 5xx)."""

    pass


class ScrapeNotFoundError(MatchingError):
    """Raised when a URL is permanently invalid (404)."""

    pass


class ScrapeParseError(MatchingError):
    """Raised when a response has an unexpected shape. Never retried."""

    pass


class InvalidInputError(MatchingError):
    """Raised for an empty or malformed name or price; the offending item is skipped."""

    pass


class QuotaExceededError(MatchingError):
    """Raised when a quota gate denies a request."""

    def __init__(self, message: str, remaining: int = 0, limit: int = 0, requested: int = 0):
        super().__init__(message)
        self.remaining = remaining
        self.limit = limit
        self.requested = requested


class PersistenceError(MatchingError):
    """Raised when the storage layer fails."""

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.context = context or {}


class DiscoveryInProgressError(MatchingError):
    """Raised when a discovery run is already processing for the competitor."""

    def __init__(self, competitor_id: int, run_id: str):
        super().__init__(f"Discovery already running for competitor {competitor_id} (run {run_id})")
        self.competitor_id = competitor_id
        self.run_id = run_id


class NotFoundError(MatchingError):
    """Raised when a tenant-scoped entity does not exist."""

    pass
