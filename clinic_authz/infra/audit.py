from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from clinic_authz.domain.errors import AuditWriteError
from clinic_authz.domain.models import AuditAction, AuditLogEntry
from clinic_authz.infra.tenant import get_client_ip, get_organization_id, get_user_agent

logger = logging.getLogger(__name__)


class ImmutableAuditLogError(RuntimeError):
    pass


@event.listens_for(AuditLogEntry, "before_update")
def _reject_audit_update(mapper: Any, connection: Any, target: AuditLogEntry) -> None:
    raise ImmutableAuditLogError(f"audit log entry {target.id} cannot be updated")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_audit_delete(mapper: Any, connection: Any, target: AuditLogEntry) -> None:
    raise ImmutableAuditLogError(f"audit log entry {target.id} cannot be deleted")


class AuditRecorder:
    """Writes audit entries inside the caller's transaction.

    The entry is flushed, not committed: it becomes durable together with the
    mutation it describes, or not at all. Storage failures surface as
    AuditWriteError so the caller aborts instead of committing an unaudited change.

    Each entry is stamped with the clinic it belongs to; when the caller does not
    name one, the request's active clinic is used.
    """

    def record(
        self,
        session: Session,
        *,
        actor_user_id: int | None,
        action: AuditAction,
        entity_type: str,
        entity_id: int | str | None = None,
        details: dict[str, Any] | None = None,
        organization_id: int | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor_user_id=actor_user_id,
            organization_id=organization_id if organization_id is not None else get_organization_id(),
            action=action.value,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            details=details or {},
            ip_address=get_client_ip(),
            user_agent=get_user_agent(),
        )
        try:
            session.add(entry)
            session.flush()
        except SQLAlchemyError as exc:
            logger.error("audit write failed: action=%s entity=%s/%s", action, entity_type, entity_id)
            raise AuditWriteError(f"failed to record {action.value} audit entry") from exc
        return entry
