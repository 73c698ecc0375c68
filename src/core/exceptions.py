"""Custom exception hierarchy for QuotaGate.

Every error carries a closed ``kind`` tag so callers branch on the kind,
never on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSIENT_STORE = "transient_store"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOTIFICATION_DELIVERY = "notification_delivery"


class QuotaGateError(Exception):
    """Base exception for all QuotaGate errors."""

    kind: ErrorKind

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Store Layer ──────────────────────────────────────────────────

class TransientStoreError(QuotaGateError):
    """Read or write against the backing store failed (network, contention)."""

    kind = ErrorKind.TRANSIENT_STORE


class TransactionConflictError(TransientStoreError):
    """Optimistic transaction kept conflicting until attempts ran out."""


# ── Plans & Metrics ──────────────────────────────────────────────

class ConfigurationError(QuotaGateError):
    """Referenced plan or metric is undefined, or the plan file is malformed."""

    kind = ErrorKind.CONFIGURATION


# ── Caller Requests ──────────────────────────────────────────────

class ValidationError(QuotaGateError):
    """Malformed caller request (missing org id, unknown action, bad value)."""

    kind = ErrorKind.VALIDATION


class NotFoundError(ValidationError):
    """Referenced organization, rule or alert does not exist."""


# ── Alerting ─────────────────────────────────────────────────────

class NotificationDeliveryError(QuotaGateError):
    """A single channel send failed. Never escapes the alerting engine."""

    kind = ErrorKind.NOTIFICATION_DELIVERY
