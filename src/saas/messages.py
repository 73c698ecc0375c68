"""User-facing message catalog (en / ja)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

FEATURE_NAMES: dict[str, dict[str, str]] = {
    "en": {
        "interviews": "Interviews",
        "concurrent_interviews": "Concurrent interviews",
        "themes": "Themes",
        "reports_individual": "Individual reports",
        "reports_summary": "Summary reports",
        "exports": "Exports",
        "clustering": "Clustering",
        "api_calls": "API calls",
        "users": "Users",
    },
    "ja": {
        "interviews": "インタビュー",
        "concurrent_interviews": "同時実行インタビュー",
        "themes": "テーマ",
        "reports_individual": "個別レポート",
        "reports_summary": "サマリーレポート",
        "exports": "エクスポート",
        "clustering": "クラスタリング",
        "api_calls": "API呼び出し",
        "users": "ユーザー",
    },
}

SEVERITY_LABELS: dict[str, dict[str, str]] = {
    "en": {"critical": "Critical", "warning": "Warning", "info": "Info"},
    "ja": {"critical": "重要", "warning": "警告", "info": "情報"},
}

_TEMPLATES: dict[str, dict[str, str]] = {
    "en": {
        "threshold_exceeded": "{feature} usage has reached its limit ({current}/{limit})",
        "threshold_90": "{feature} usage is above 90%. {remaining} remaining",
        "threshold_80": "{feature} usage has reached 80% ({current}/{limit})",
        "threshold_other": "{feature} usage has reached {percentage}%",
        "spike": "{feature} usage increased by {rate}% in the last hour",
        "projection": "At the current rate, {feature} will hit its limit in {hours} hours",
        "reason_disabled": "This feature is not available on your current plan",
        "reason_limit_reached": "{feature} limit ({limit}) has been reached",
        "reason_insufficient": "Not enough {feature} remaining ({remaining} left, {amount} requested)",
        "reason_generic": "Not available due to usage limits",
        "suggest_upgrade": "Upgrade to {plan} for more {feature}",
        "suggest_reset": "Next reset: {date}",
        "rule_blocked_hour": "This feature is unavailable during hour {hour}",
        "rule_blocked_day": "This feature is unavailable on this day",
        "rule_outside_hours": "This feature is only available during allowed hours",
        "rule_user_blocked": "This feature is not available for your account",
        "rule_condition_failed": "Conditions for this feature are not met",
        "plan_changed": "Your plan changes from {from_plan} to {to_plan} on {date}",
        "alert_subject": "Usage alert: {feature} reached {percentage}%",
    },
    "ja": {
        "threshold_exceeded": "{feature}の使用量が上限に達しました（{current}/{limit}）",
        "threshold_90": "{feature}の使用量が90%を超えました。残り{remaining}です",
        "threshold_80": "{feature}の使用量が80%に達しました（{current}/{limit}）",
        "threshold_other": "{feature}の使用量が{percentage}%に達しました",
        "spike": "{feature}の使用量が過去1時間で{rate}%増加しました",
        "projection": "現在のペースでは{hours}時間後に{feature}の制限に達します",
        "reason_disabled": "この機能は現在のプランでは利用できません",
        "reason_limit_reached": "{feature}の利用上限（{limit}）に達しています",
        "reason_insufficient": "{feature}の残りが不足しています（残り{remaining}、要求{amount}）",
        "reason_generic": "制限により利用できません",
        "suggest_upgrade": "{plan}にアップグレードすると、より多くの{feature}が利用できます",
        "suggest_reset": "次回リセット日: {date}",
        "rule_blocked_hour": "この機能は{hour}時台は利用できません",
        "rule_blocked_day": "この機能は本日は利用できません",
        "rule_outside_hours": "この機能は許可された時間帯のみ利用できます",
        "rule_user_blocked": "このアカウントではこの機能を利用できません",
        "rule_condition_failed": "この機能の利用条件を満たしていません",
        "plan_changed": "{date}にプランが{from_plan}から{to_plan}に変更されます",
        "alert_subject": "使用量アラート: {feature}が{percentage}%に達しました",
    },
}


class Messages:
    """Renders catalog entries for one locale, falling back to English."""

    def __init__(self, locale: str = "en") -> None:
        self.locale = locale if locale in _TEMPLATES else "en"

    def feature_name(self, feature: str) -> str:
        return FEATURE_NAMES[self.locale].get(feature, feature)

    def severity_label(self, severity: str) -> str:
        return SEVERITY_LABELS[self.locale].get(severity, severity)

    def format_date(self, dt: datetime) -> str:
        if self.locale == "ja":
            return f"{dt.year}/{dt.month}/{dt.day}"
        return dt.strftime("%Y-%m-%d")

    def render(self, key: str, **params: Any) -> str:
        template = _TEMPLATES[self.locale].get(key) or _TEMPLATES["en"][key]
        if "feature" in params:
            params["feature"] = self.feature_name(params["feature"])
        return template.format(**params)
