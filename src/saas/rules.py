"""Custom rules — per-org overrides evaluated before plan limits.

Rule types:
- ``time_based``: ``blocked_hours`` (0-23), ``blocked_days`` (0=Monday),
  ``allowed_time_ranges`` ([{"start": "09:00", "end": "18:00"}]) and an
  optional IANA ``timezone``.
- ``user_based``: ``allowed_users`` and/or ``blocked_users``.
- ``conditional``: ``conditions`` over the caller-supplied context, combined
  by ``match`` ("all" or "any").

Rules only ever deny. The highest-priority denying rule wins.
"""

from __future__ import annotations

from datetime import datetime, time as dtime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.constants import COLLECTION_ORGANIZATIONS
from src.core.exceptions import NotFoundError, ValidationError
from src.core.logging import get_logger
from src.core.types import CustomRule, RuleOutcome, RuleType, utcnow
from src.saas.messages import Messages
from src.store.base import DocumentStore, Transaction

log = get_logger(__name__)

_ALLOW = RuleOutcome(allowed=None)

_CONDITION_OPS = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
    "greater_than": lambda actual, expected: actual > expected,
    "less_than": lambda actual, expected: actual < expected,
}


def rules_collection(org_id: str) -> str:
    return f"{COLLECTION_ORGANIZATIONS}/{org_id}/custom_rules"


def _parse_hhmm(value: str) -> dtime:
    hours, minutes = value.split(":")
    return dtime(int(hours), int(minutes))


def _in_window(current: dtime, start: dtime, end: dtime) -> bool:
    """Half-open [start, end); a window with start after end wraps past midnight."""
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def _validate_config(rule_type: RuleType, config: dict[str, Any]) -> None:
    if rule_type is RuleType.TIME_BASED:
        tz = config.get("timezone")
        if tz:
            try:
                ZoneInfo(tz)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValidationError(f"Unknown timezone: {tz}") from exc
        for hour in config.get("blocked_hours", []):
            if not isinstance(hour, int) or not 0 <= hour <= 23:
                raise ValidationError(f"Invalid blocked hour: {hour!r}")
        for day in config.get("blocked_days", []):
            if not isinstance(day, int) or not 0 <= day <= 6:
                raise ValidationError(f"Invalid blocked day: {day!r}")
        for window in config.get("allowed_time_ranges", []):
            try:
                _parse_hhmm(window["start"])
                _parse_hhmm(window["end"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid time range: {window!r}") from exc
    elif rule_type is RuleType.CONDITIONAL:
        for condition in config.get("conditions", []):
            if condition.get("operator") not in _CONDITION_OPS or "field" not in condition:
                raise ValidationError(f"Invalid condition: {condition!r}")
        if config.get("match", "all") not in ("all", "any"):
            raise ValidationError("match must be 'all' or 'any'")


def build_rule(rule_id: str, data: dict[str, Any], created_by: str = "system") -> CustomRule:
    """Validate caller input into a CustomRule."""
    if not data.get("name"):
        raise ValidationError("Rule name is required")
    try:
        rule_type = RuleType(data.get("type"))
    except ValueError as exc:
        raise ValidationError(f"Unknown rule type: {data.get('type')!r}") from exc
    config = data.get("config") or {}
    if not isinstance(config, dict):
        raise ValidationError("Rule config must be an object")
    _validate_config(rule_type, config)
    try:
        priority = int(data.get("priority", 0))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Rule priority must be an integer") from exc

    return CustomRule(
        rule_id=rule_id,
        name=str(data["name"]),
        type=rule_type,
        description=str(data.get("description", "")),
        active=bool(data.get("active", True)),
        priority=priority,
        config=config,
        applies_to=list(data.get("applies_to") or []),
        created_by=created_by,
    )


class RuleEngine:
    """Stores and evaluates custom rules."""

    def __init__(self, store: DocumentStore, messages: Messages | None = None) -> None:
        self._store = store
        self._messages = messages or Messages()

    # ── Evaluation ───────────────────────────────────────────────

    def evaluate(
        self,
        rules: list[CustomRule],
        feature: str,
        user_id: str | None = None,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RuleOutcome:
        now = now or utcnow()
        for rule in sorted(rules, key=lambda r: r.priority, reverse=True):
            if not rule.active or not rule.applies(feature):
                continue
            if rule.type is RuleType.TIME_BASED:
                outcome = self._check_time(rule, now)
            elif rule.type is RuleType.USER_BASED:
                outcome = self._check_user(rule, user_id)
            else:
                outcome = self._check_conditions(rule, context or {})
            if outcome.allowed is False:
                log.info("custom_rule_denied", rule_id=rule.rule_id, rule_type=rule.type.value, feature=feature)
                return outcome
        return _ALLOW

    def _check_time(self, rule: CustomRule, now: datetime) -> RuleOutcome:
        tz_name = rule.config.get("timezone") or "UTC"
        try:
            local = now.astimezone(ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("custom_rule_bad_timezone", rule_id=rule.rule_id, timezone=tz_name)
            local = now

        if local.hour in rule.config.get("blocked_hours", []):
            return RuleOutcome(False, self._messages.render("rule_blocked_hour", hour=local.hour))
        if local.weekday() in rule.config.get("blocked_days", []):
            return RuleOutcome(False, self._messages.render("rule_blocked_day"))

        ranges = rule.config.get("allowed_time_ranges") or []
        if ranges:
            current = local.time().replace(tzinfo=None)
            inside = any(_in_window(current, _parse_hhmm(r["start"]), _parse_hhmm(r["end"])) for r in ranges)
            if not inside:
                return RuleOutcome(False, self._messages.render("rule_outside_hours"))
        return _ALLOW

    def _check_user(self, rule: CustomRule, user_id: str | None) -> RuleOutcome:
        blocked = rule.config.get("blocked_users") or []
        allowed = rule.config.get("allowed_users") or []
        if user_id is not None and user_id in blocked:
            return RuleOutcome(False, self._messages.render("rule_user_blocked"))
        if allowed and user_id not in allowed:
            return RuleOutcome(False, self._messages.render("rule_user_blocked"))
        return _ALLOW

    def _check_conditions(self, rule: CustomRule, context: dict[str, Any]) -> RuleOutcome:
        conditions = rule.config.get("conditions") or []
        if not conditions:
            return _ALLOW

        def _holds(condition: dict[str, Any]) -> bool:
            field_name = condition["field"]
            if field_name not in context:
                return False
            try:
                return bool(_CONDITION_OPS[condition["operator"]](context[field_name], condition.get("value")))
            except TypeError:
                return False

        results = [_holds(c) for c in conditions]
        passed = any(results) if rule.config.get("match", "all") == "any" else all(results)
        if passed:
            return _ALLOW
        return RuleOutcome(False, self._messages.render("rule_condition_failed"))

    # ── Storage ──────────────────────────────────────────────────

    async def list_rules(self, org_id: str, active_only: bool = False) -> list[CustomRule]:
        filters = [("active", "==", True)] if active_only else None
        rows = await self._store.query(rules_collection(org_id), filters=filters)
        rules = [CustomRule.from_document(rule_id, doc) for rule_id, doc in rows]
        return sorted(rules, key=lambda r: r.priority, reverse=True)

    async def add_rule(self, org_id: str, data: dict[str, Any], created_by: str = "system") -> CustomRule:
        rule = build_rule("", data, created_by=created_by)
        rule.rule_id = await self._store.add(rules_collection(org_id), rule.to_document())
        log.info("custom_rule_added", org_id=org_id, rule_id=rule.rule_id, rule_type=rule.type.value)
        return rule

    async def update_rule(
        self,
        org_id: str,
        rule_id: str,
        updates: dict[str, Any],
        modified_by: str = "system",
    ) -> CustomRule:
        async def _txn(tx: Transaction) -> CustomRule:
            doc = await tx.get(rules_collection(org_id), rule_id)
            if doc is None:
                raise NotFoundError(f"Custom rule not found: {rule_id}", context={"rule_id": rule_id})
            existing = CustomRule.from_document(rule_id, doc)
            editable = {k: v for k, v in updates.items() if k not in ("id", "created_at", "created_by")}
            rule = build_rule(rule_id, {**existing.to_dict(), **editable}, created_by=existing.created_by)
            rule.created_at = existing.created_at
            rule.modified_at = utcnow()
            rule.modified_by = modified_by
            tx.set(rules_collection(org_id), rule_id, rule.to_document())
            return rule

        rule = await self._store.run_transaction(_txn)
        log.info("custom_rule_updated", org_id=org_id, rule_id=rule_id, modified_by=modified_by)
        return rule

    async def delete_rule(self, org_id: str, rule_id: str) -> None:
        if await self._store.get(rules_collection(org_id), rule_id) is None:
            raise NotFoundError(f"Custom rule not found: {rule_id}", context={"rule_id": rule_id})
        await self._store.delete(rules_collection(org_id), rule_id)
        log.info("custom_rule_deleted", org_id=org_id, rule_id=rule_id)
