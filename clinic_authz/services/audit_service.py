from __future__ import annotations

from sqlmodel import Session, col, select

from clinic_authz.domain.models import AuditAction, AuditLogEntry
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.db import get_engine
from clinic_authz.services.authorization_service import AuthorizationService


class AuditLogService:
    def __init__(self, authz: AuthorizationService | None = None) -> None:
        self._authz = authz or AuthorizationService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_entries(
        self,
        actor: Principal,
        *,
        action: AuditAction | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        actor_user_id: int | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        # Clinic-scoped readers only see entries stamped with their active clinic.
        statement = select(AuditLogEntry).where(self._authz.scope_filter(actor, AuditLogEntry))
        if action is not None:
            statement = statement.where(AuditLogEntry.action == action.value)
        if entity_type is not None:
            statement = statement.where(AuditLogEntry.entity_type == entity_type)
        if entity_id is not None:
            statement = statement.where(AuditLogEntry.entity_id == entity_id)
        if actor_user_id is not None:
            statement = statement.where(AuditLogEntry.actor_user_id == actor_user_id)
        statement = statement.order_by(col(AuditLogEntry.id).desc()).limit(limit)
        with self._session() as session:
            return list(session.exec(statement).all())
