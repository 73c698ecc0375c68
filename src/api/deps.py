"""FastAPI dependency injection — the facade and the authenticated admin identity.

Callers send ``Authorization: Bearer <token>`` where the token is an HS256 JWT
issued by the product's login flow. This surface only verifies tokens: the
signature must match ``app.state.jwt_secret``, ``exp`` must lie in the future
and ``sub`` must name a stored user.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.core.logging import get_logger
from src.saas.manager import SubscriptionManager
from src.saas.tenant import Identity

log = get_logger(__name__)

# ── Facade ────────────────────────────────────────────────────────


def get_manager(request: Request) -> SubscriptionManager:
    """Provide the process-wide SubscriptionManager built at startup."""
    return request.app.state.manager


# ── Bearer tokens ─────────────────────────────────────────────────


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def token_signature(signing_input: str, secret: str) -> str:
    """Unpadded base64url HMAC-SHA256 over ``header.claims``."""
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def decode_access_token(token: str, secret: str, now: float | None = None) -> dict[str, Any] | None:
    """Return the claims of a valid token, or None.

    Rejects anything that is not three segments, is not signed with HS256
    under ``secret``, lacks a string ``sub`` or a numeric ``exp``, or has
    expired.
    """
    segments = token.split(".")
    if len(segments) != 3:
        return None
    header_b64, claims_b64, signature = segments

    expected = token_signature(f"{header_b64}.{claims_b64}", secret)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        log.warning("token_bad_signature")
        return None

    try:
        header = json.loads(_b64url_decode(header_b64))
        claims = json.loads(_b64url_decode(claims_b64))
    except ValueError:
        log.warning("token_malformed")
        return None
    if not isinstance(header, dict) or header.get("alg") != "HS256" or not isinstance(claims, dict):
        log.warning("token_unsupported")
        return None

    subject = claims.get("sub")
    expires = claims.get("exp")
    if not isinstance(subject, str) or not subject:
        return None
    if isinstance(expires, bool) or not isinstance(expires, (int, float)):
        return None
    if (time.time() if now is None else now) >= expires:
        log.debug("token_expired", sub=subject)
        return None
    return claims


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


# ── Auth dependency ───────────────────────────────────────────────


async def require_identity(
    request: Request,
    manager: SubscriptionManager = Depends(get_manager),
) -> Identity:
    """Verify the bearer token and resolve its subject to a stored user.

    A valid token for a user that no longer exists is rejected, so deleted
    users cannot keep access through a stale token.
    """
    claims = decode_access_token(_bearer_token(request), request.app.state.jwt_secret)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    identity = await manager.orgs.get_identity(claims["sub"])
    if identity is None:
        log.warning("auth_unknown_user", user_id=claims["sub"])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return identity


# ── Authorization checks ──────────────────────────────────────────


def ensure_org_access(identity: Identity, org_id: str) -> None:
    if not identity.can_access_org(org_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def ensure_admin(identity: Identity) -> None:
    if not (identity.is_admin or identity.is_super_admin):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def ensure_super_admin(identity: Identity) -> None:
    if not identity.is_super_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Super admin access required")
