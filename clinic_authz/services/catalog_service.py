from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from clinic_authz.domain.errors import DuplicateNameError, NotFoundError
from clinic_authz.domain.models import AuditAction, Permission, PermissionCreate
from clinic_authz.domain.permissions import DEFAULT_PERMISSIONS
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.audit import AuditRecorder
from clinic_authz.infra.db import get_engine

logger = logging.getLogger(__name__)


class PermissionCatalogService:
    def __init__(self, audit: AuditRecorder | None = None) -> None:
        self._audit = audit or AuditRecorder()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def ensure_catalog_in(self, session: Session) -> list[Permission]:
        existing = session.exec(select(Permission)).all()
        by_name = {item.name: item for item in existing}
        created: list[Permission] = []
        for name, description in DEFAULT_PERMISSIONS:
            if name in by_name:
                continue
            permission = Permission(name=name, description=description)
            session.add(permission)
            created.append(permission)
        if created:
            session.flush()
            logger.info("seeded %d catalog permissions", len(created))
        return list(session.exec(select(Permission).order_by(Permission.name)).all())

    def ensure_catalog(self) -> list[Permission]:
        with self._session() as session:
            permissions = self.ensure_catalog_in(session)
            session.commit()
            return permissions

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            return list(session.exec(select(Permission).order_by(Permission.name)).all())

    def get_permission(self, permission_id: int) -> Permission:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            return permission

    def create_permission(self, actor: Principal, payload: PermissionCreate) -> Permission:
        with self._session() as session:
            if session.exec(select(Permission).where(Permission.name == payload.name)).first() is not None:
                raise DuplicateNameError("permission", payload.name)
            permission = Permission(name=payload.name, description=payload.description)
            session.add(permission)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateNameError("permission", payload.name) from exc
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.CREATE_PERMISSION,
                entity_type="permission",
                entity_id=permission.id,
                details={"name": permission.name},
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateNameError("permission", payload.name) from exc
            session.refresh(permission)
            logger.info("permission %s created by user %s", permission.name, actor.user_id)
            return permission
