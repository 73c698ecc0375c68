"""SaaS quota layer — plan limits, usage metering, custom rules and usage alerts."""

from src.saas.alerts import AlertingEngine
from src.saas.limits import LimitResolver
from src.saas.manager import SubscriptionManager
from src.saas.plans import PlanCatalog
from src.saas.usage import UsageStore

__all__ = [
    "AlertingEngine",
    "LimitResolver",
    "PlanCatalog",
    "SubscriptionManager",
    "UsageStore",
]
