"""Pytest configuration, async runner and shared fixtures.

Async tests are marked with ``@pytest.mark.asyncio``. When pytest-asyncio is
not installed, the local ``pytest_pyfunc_call`` hook runs them on a fresh
event loop. Fixtures stay synchronous so they work under either runner.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from src.api.deps import token_signature
from src.saas.alerts import AlertingEngine
from src.saas.cache import DecisionCache
from src.saas.channels import InAppChannel
from src.saas.manager import SubscriptionManager
from src.saas.plans import PlanCatalog
from src.saas.rules import RuleEngine
from src.saas.usage import UsageStore
from src.store.memory import InMemoryDocumentStore

PLANS_PATH = Path(__file__).resolve().parent.parent / "config" / "plans.yaml"


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins."""
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


# ── Shared Fixtures ──────────────────────────────────────────────

@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(max_attempts=50)


@pytest.fixture()
def catalog(store: InMemoryDocumentStore) -> PlanCatalog:
    return PlanCatalog(store, PLANS_PATH, ttl_seconds=300)


@pytest.fixture()
def manager(store: InMemoryDocumentStore, catalog: PlanCatalog) -> SubscriptionManager:
    """A fully wired manager over the in-memory store (in-app channel only)."""
    alerts = AlertingEngine(store, [InAppChannel(store)], retry_delay_seconds=0.0)
    return SubscriptionManager(
        store=store,
        usage=UsageStore(store),
        catalog=catalog,
        alerts=alerts,
        rules=RuleEngine(store),
        cache=DecisionCache(ttl_seconds=300),
    )


# ── Bearer Tokens ────────────────────────────────────────────────

def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


@pytest.fixture()
def jwt_secret() -> str:
    return "test-secret-key"


@pytest.fixture()
def issue_token(jwt_secret: str) -> Callable[..., str]:
    """Sign tokens the way the product's login flow does."""

    def _issue(user_id: str, expires_in: float = 3600, alg: str = "HS256", secret: str | None = None, **claims: Any) -> str:
        now = time.time()
        header = _b64url(json.dumps({"alg": alg, "typ": "JWT"}).encode())
        body = _b64url(json.dumps({"sub": user_id, "iat": int(now), "exp": now + expires_in, **claims}).encode())
        signing_input = f"{header}.{body}"
        return f"{signing_input}.{token_signature(signing_input, secret or jwt_secret)}"

    return _issue
