from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from clinic_authz.api.deps import CurrentPrincipal, handle_service_error, require_perm
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import PermissionCreate, PermissionRead
from clinic_authz.domain.permissions import PERM_MANAGE_ROLES
from clinic_authz.services.catalog_service import PermissionCatalogService

router = APIRouter()


def get_catalog_service() -> PermissionCatalogService:
    return PermissionCatalogService()


Service = Annotated[PermissionCatalogService, Depends(get_catalog_service)]


@router.get(
    "",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_perm(PERM_MANAGE_ROLES))],
)
def list_permissions(service: Service) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in service.list_permissions()]


@router.get(
    "/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_ROLES))],
)
def get_permission(permission_id: int, service: Service) -> PermissionRead:
    try:
        permission = service.get_permission(permission_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return PermissionRead.model_validate(permission)


@router.post(
    "",
    response_model=PermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_ROLES))],
)
def create_permission(payload: PermissionCreate, principal: CurrentPrincipal, service: Service) -> PermissionRead:
    try:
        permission = service.create_permission(principal, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return PermissionRead.model_validate(permission)
