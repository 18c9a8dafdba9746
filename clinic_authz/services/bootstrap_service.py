from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from clinic_authz.domain.errors import ConflictError
from clinic_authz.domain.models import AuditAction, BootstrapRequest, Organization, User, UserOrganization
from clinic_authz.domain.permissions import LEGACY_ROLE_SUPERADMIN
from clinic_authz.infra.audit import AuditRecorder
from clinic_authz.infra.db import get_engine
from clinic_authz.services.catalog_service import PermissionCatalogService

logger = logging.getLogger(__name__)


class BootstrapService:
    def __init__(self, audit: AuditRecorder | None = None) -> None:
        self._audit = audit or AuditRecorder()
        self._catalog = PermissionCatalogService(audit=self._audit)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def bootstrap(self, payload: BootstrapRequest) -> dict[str, Any]:
        with self._session() as session:
            user_count = session.exec(select(func.count()).select_from(User)).one()
            if user_count:
                raise ConflictError("system already initialized")

            permissions = self._catalog.ensure_catalog_in(session)
            organization = Organization(name=payload.organization_name)
            session.add(organization)
            session.flush()

            admin = User(
                username=payload.username,
                legacy_role=LEGACY_ROLE_SUPERADMIN,
                organization_id=organization.id,
                is_active=True,
            )
            session.add(admin)
            session.flush()
            session.add(UserOrganization(user_id=admin.id, organization_id=organization.id, is_default=True))

            self._audit.record(
                session,
                actor_user_id=admin.id,
                action=AuditAction.BOOTSTRAP,
                entity_type="organization",
                entity_id=organization.id,
                organization_id=organization.id,
                details={
                    "organization": organization.name,
                    "username": admin.username,
                    "permission_count": len(permissions),
                },
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("system already initialized") from exc
            logger.info("bootstrapped organization %s with superadmin %s", organization.id, admin.id)
            return {
                "organization_id": organization.id,
                "user_id": admin.id,
                "permission_count": len(permissions),
            }
