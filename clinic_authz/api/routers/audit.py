from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from clinic_authz.api.deps import CurrentPrincipal, require_perm
from clinic_authz.domain.models import AuditAction, AuditLogRead
from clinic_authz.domain.permissions import PERM_VIEW_AUDIT_LOGS
from clinic_authz.services.audit_service import AuditLogService

router = APIRouter()


def get_audit_service() -> AuditLogService:
    return AuditLogService()


Service = Annotated[AuditLogService, Depends(get_audit_service)]


@router.get(
    "",
    response_model=list[AuditLogRead],
    dependencies=[Depends(require_perm(PERM_VIEW_AUDIT_LOGS))],
)
def list_audit_entries(
    principal: CurrentPrincipal,
    service: Service,
    action: AuditAction | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_user_id: int | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[AuditLogRead]:
    entries = service.list_entries(
        principal,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        limit=limit,
    )
    return [AuditLogRead.model_validate(item) for item in entries]
