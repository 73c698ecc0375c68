"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Plan IDs ─────────────────────────────────────────────────────
PLAN_FREE = "free"
UNLIMITED = -1
DISABLED = 0

# ── Metrics ──────────────────────────────────────────────────────
METRIC_INTERVIEWS = "interviews"
METRIC_CONCURRENT_INTERVIEWS = "concurrent_interviews"
METRIC_INTERVIEW_DURATION = "interview_duration_seconds"
METRIC_THEMES = "themes"
METRIC_USERS = "users"
METRIC_EXPORTS = "exports"
METRIC_REPORTS_INDIVIDUAL = "reports_individual"
METRIC_REPORTS_SUMMARY = "reports_summary"
METRIC_CLUSTERING = "clustering"
METRIC_API_CALLS = "api_calls"
METRIC_DATA_RETENTION = "data_retention_days"

# Counters zeroed on every monthly rollover
MONTHLY_METRICS: tuple[str, ...] = (
    METRIC_INTERVIEWS,
    METRIC_EXPORTS,
    METRIC_REPORTS_INDIVIDUAL,
    METRIC_REPORTS_SUMMARY,
    METRIC_CLUSTERING,
    METRIC_THEMES,
    METRIC_USERS,
    METRIC_API_CALLS,
)

CONCURRENT_METRICS: frozenset[str] = frozenset({METRIC_CONCURRENT_INTERVIEWS})

# Metric set reported by usage stats
STATS_METRICS: tuple[str, ...] = (
    METRIC_INTERVIEWS,
    METRIC_CONCURRENT_INTERVIEWS,
    METRIC_THEMES,
    METRIC_REPORTS_INDIVIDUAL,
    METRIC_REPORTS_SUMMARY,
    METRIC_EXPORTS,
    METRIC_CLUSTERING,
    METRIC_API_CALLS,
)

# ── Store Layout ─────────────────────────────────────────────────
COLLECTION_ORGANIZATIONS = "organizations"
COLLECTION_USERS = "users"
COLLECTION_PLANS = "plans"
DOC_USAGE_CURRENT = "current"
DOC_USAGE_CONCURRENT = "concurrent"
DOC_NOTIFICATION_SETTINGS = "notifications"

# ── Alerting Defaults ────────────────────────────────────────────
DEFAULT_THRESHOLDS: tuple[int, ...] = (80, 90, 100)
THRESHOLD_BAND_WIDTH = 5
ALERT_DEDUP_HOURS = 24
SEVERITY_CRITICAL_PCT = 90
SEVERITY_WARNING_PCT = 80
SPIKE_WINDOW_MINUTES = 60
SPIKE_GROWTH_PCT = 50.0
SPIKE_CRITICAL_PCT = 100.0
PROJECTION_HORIZON_HOURS = 24.0
PROJECTION_CRITICAL_HOURS = 6.0
ANOMALY_COOLDOWN_MINUTES = 60
ALERT_LIST_LIMIT = 50

# ── Retry Queue ──────────────────────────────────────────────────
RETRY_INTERVAL_SECONDS = 5.0
RETRY_MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0

# ── Caching ──────────────────────────────────────────────────────
CACHE_TTL_SECONDS = 300
PLAN_CACHE_TTL_SECONDS = 300

# ── Usage History ────────────────────────────────────────────────
HISTORY_DEFAULT_LIMIT = 100

# ── Store Transactions ───────────────────────────────────────────
TX_MAX_ATTEMPTS = 25
TX_BACKOFF_SECONDS = 0.005
