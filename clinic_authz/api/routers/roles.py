from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from clinic_authz.api.deps import CurrentPrincipal, handle_service_error, require_perm
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import (
    RoleCreate,
    RoleFromTemplateCreate,
    RolePermissionsUpdate,
    RoleRead,
    RoleTemplateRead,
)
from clinic_authz.domain.permissions import PERM_MANAGE_ROLES
from clinic_authz.services.role_service import RoleService

router = APIRouter(dependencies=[Depends(require_perm(PERM_MANAGE_ROLES))])


def get_role_service() -> RoleService:
    return RoleService()


Service = Annotated[RoleService, Depends(get_role_service)]


@router.get("", response_model=list[RoleRead])
def list_roles(service: Service) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in service.list_roles()]


@router.get("/templates", response_model=list[RoleTemplateRead])
def list_role_templates(service: Service) -> list[RoleTemplateRead]:
    return [RoleTemplateRead.model_validate(item) for item in service.list_role_templates()]


@router.post("/templates", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role_from_template(
    payload: RoleFromTemplateCreate,
    principal: CurrentPrincipal,
    service: Service,
) -> RoleRead:
    try:
        role = service.create_role_from_template(principal, template_key=payload.template_key, name=payload.name)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.post("", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(payload: RoleCreate, principal: CurrentPrincipal, service: Service) -> RoleRead:
    try:
        role = service.create_role(principal, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.get("/{role_id}", response_model=RoleRead)
def get_role(role_id: int, service: Service) -> RoleRead:
    try:
        role = service.get_role(role_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.put("/{role_id}/permissions", response_model=RoleRead)
def update_role_permissions(
    role_id: int,
    payload: RolePermissionsUpdate,
    principal: CurrentPrincipal,
    service: Service,
) -> RoleRead:
    try:
        role = service.update_role_permissions(principal, role_id, payload.permission_ids)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.post("/{role_id}/permissions/{permission_id}", response_model=RoleRead)
def grant_permission(role_id: int, permission_id: int, principal: CurrentPrincipal, service: Service) -> RoleRead:
    try:
        role = service.grant_permission(principal, role_id, permission_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.delete("/{role_id}/permissions/{permission_id}", response_model=RoleRead)
def revoke_permission(role_id: int, permission_id: int, principal: CurrentPrincipal, service: Service) -> RoleRead:
    try:
        role = service.revoke_permission(principal, role_id, permission_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return RoleRead.model_validate(role)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(role_id: int, principal: CurrentPrincipal, service: Service) -> Response:
    try:
        service.delete_role(principal, role_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
