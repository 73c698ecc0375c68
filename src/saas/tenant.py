"""Tenant records and caller identity.

Organizations live at ``organizations/{org}`` and carry the plan assignment.
Users live at ``users/{uid}`` and carry admin flags plus their organization.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.core.constants import COLLECTION_ORGANIZATIONS, COLLECTION_USERS
from src.core.logging import get_logger
from src.core.types import isoformat, parse_iso, utcnow
from src.store.base import DocumentStore

log = get_logger(__name__)


@dataclass
class Organization:
    """A tenant and its plan assignment."""

    organization_id: str
    name: str = ""
    plan_id: str | None = None
    pending_plan_id: str | None = None
    plan_change_effective_date: datetime | None = None
    previous_plan_id: str | None = None
    plan_changed_at: datetime | None = None

    def effective_plan_id(self, now: datetime | None = None) -> str | None:
        """Assigned plan, with a due deferred change applied."""
        now = now or utcnow()
        if (
            self.pending_plan_id
            and self.plan_change_effective_date is not None
            and self.plan_change_effective_date <= now
        ):
            return self.pending_plan_id
        return self.plan_id

    @classmethod
    def from_document(cls, org_id: str, doc: dict[str, Any]) -> Organization:
        return cls(
            organization_id=org_id,
            name=doc.get("name", ""),
            plan_id=doc.get("plan_id"),
            pending_plan_id=doc.get("pending_plan_id"),
            plan_change_effective_date=parse_iso(doc.get("plan_change_effective_date")),
            previous_plan_id=doc.get("previous_plan_id"),
            plan_changed_at=parse_iso(doc.get("plan_changed_at")),
        )


@dataclass
class Identity:
    """An authenticated caller of the admin surface."""

    user_id: str
    organization_id: str | None = None
    is_admin: bool = False
    is_super_admin: bool = False

    def can_access_org(self, org_id: str) -> bool:
        return self.is_admin or self.is_super_admin or self.organization_id == org_id


class OrganizationRepository:
    """Store-backed lookups for organizations and users."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_organization(self, org_id: str) -> Organization | None:
        doc = await self._store.get(COLLECTION_ORGANIZATIONS, org_id)
        if doc is None:
            return None
        return Organization.from_document(org_id, doc)

    async def create_organization(self, org_id: str, name: str = "", plan_id: str | None = None) -> Organization:
        await self._store.set(
            COLLECTION_ORGANIZATIONS,
            org_id,
            {"name": name, "plan_id": plan_id, "created_at": isoformat(utcnow())},
            merge=True,
        )
        log.info("organization_created", org_id=org_id, plan_id=plan_id)
        return Organization(organization_id=org_id, name=name, plan_id=plan_id)

    async def list_organization_ids(self) -> list[str]:
        return await self._store.list_ids(COLLECTION_ORGANIZATIONS)

    async def get_identity(self, user_id: str) -> Identity | None:
        doc = await self._store.get(COLLECTION_USERS, user_id)
        if doc is None:
            return None
        return Identity(
            user_id=user_id,
            organization_id=doc.get("organization_id"),
            is_admin=bool(doc.get("is_admin", False)),
            is_super_admin=bool(doc.get("is_super_admin", False)),
        )

    async def save_user(
        self,
        user_id: str,
        organization_id: str | None,
        is_admin: bool = False,
        is_super_admin: bool = False,
    ) -> None:
        await self._store.set(
            COLLECTION_USERS,
            user_id,
            {
                "organization_id": organization_id,
                "is_admin": is_admin,
                "is_super_admin": is_super_admin,
            },
        )

