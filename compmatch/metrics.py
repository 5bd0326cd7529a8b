"""Prometheus metrics for the competitor matching service."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("compmatch", "Competitor matching service info")
app_info.info({"version": "0.1.0", "name": "compmatch"})

# Discovery metrics
discovery_runs_total = Counter(
    "discovery_runs_total",
    "Total number of discovery runs by terminal status",
    ["status"],
)

discovery_run_duration_seconds = Histogram(
    "discovery_run_duration_seconds",
    "Wall-clock time of discovery runs",
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

discovery_listings_total = Counter(
    "discovery_listings_total",
    "Scraped listings seen by discovery",
    ["outcome"],  # processed, skipped_invalid, truncated
)

candidates_built_total = Counter(
    "candidates_built_total",
    "Total number of match candidates persisted",
)

# Match metrics
matches_confirmed_total = Counter(
    "matches_confirmed_total",
    "Total number of confirmed matches",
    ["source"],
)

# Quota metrics
quota_decisions_total = Counter(
    "quota_decisions_total",
    "Quota gate decisions",
    ["gate", "outcome"],  # allowed, truncated, denied
)

# Scrape metrics
scrape_requests_total = Counter(
    "scrape_requests_total",
    "Total number of scrape requests",
    ["kind", "status"],
)

scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "Time spent on scrape requests",
    ["kind"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Price refresh metrics
price_refresh_total = Counter(
    "price_refresh_total",
    "Confirmed-match price refresh outcomes",
    ["outcome"],  # changed, unchanged, error, blocked, deferred
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

stale_runs_recovered_total = Counter(
    "stale_runs_recovered_total",
    "Discovery runs failed by the watchdog",
)


def record_discovery_run(status: str, duration: float):
    """Record a finished discovery run."""
    discovery_runs_total.labels(status=status).inc()
    discovery_run_duration_seconds.observe(duration)


def record_listings(outcome: str, count: int):
    """Record listings by how discovery handled them."""
    if count > 0:
        discovery_listings_total.labels(outcome=outcome).inc(count)


def record_candidates_built(count: int):
    """Record persisted candidates."""
    if count > 0:
        candidates_built_total.inc(count)


def record_matches_confirmed(source: str, count: int = 1):
    """Record confirmed matches."""
    if count > 0:
        matches_confirmed_total.labels(source=source).inc(count)


def record_quota_decision(gate: str, requested: int, granted: int):
    """Record a quota gate decision."""
    if granted <= 0:
        outcome = "denied"
    elif granted < requested:
        outcome = "truncated"
    else:
        outcome = "allowed"
    quota_decisions_total.labels(gate=gate, outcome=outcome).inc()


def record_scrape(kind: str, success: bool, duration: float):
    """Record a scrape request."""
    status = "success" if success else "error"
    scrape_requests_total.labels(kind=kind, status=status).inc()
    scrape_duration_seconds.labels(kind=kind).observe(duration)


def record_price_refresh(outcome: str, count: int = 1):
    """Record price refresh outcomes."""
    if count > 0:
        price_refresh_total.labels(outcome=outcome).inc(count)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_stale_run_recovered():
    stale_runs_recovered_total.inc()
