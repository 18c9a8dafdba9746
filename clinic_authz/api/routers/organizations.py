from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from clinic_authz.api.deps import CurrentPrincipal, handle_service_error, require_perm
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import (
    MembershipCreate,
    MembershipRead,
    OrganizationCreate,
    OrganizationRead,
    OrganizationStatusUpdate,
)
from clinic_authz.domain.permissions import PERM_MANAGE_ORGANIZATIONS, PERM_VIEW_ORGANIZATIONS
from clinic_authz.services.organization_service import OrganizationService

router = APIRouter()


def get_organization_service() -> OrganizationService:
    return OrganizationService()


Service = Annotated[OrganizationService, Depends(get_organization_service)]


@router.get(
    "",
    response_model=list[OrganizationRead],
    dependencies=[Depends(require_perm(PERM_VIEW_ORGANIZATIONS))],
)
def list_organizations(principal: CurrentPrincipal, service: Service) -> list[OrganizationRead]:
    return [OrganizationRead.model_validate(item) for item in service.list_organizations(principal)]


@router.post(
    "",
    response_model=OrganizationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_ORGANIZATIONS))],
)
def create_organization(payload: OrganizationCreate, principal: CurrentPrincipal, service: Service) -> OrganizationRead:
    try:
        organization = service.create_organization(principal, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return OrganizationRead.model_validate(organization)


@router.get(
    "/{organization_id}",
    response_model=OrganizationRead,
    dependencies=[Depends(require_perm(PERM_VIEW_ORGANIZATIONS))],
)
def get_organization(organization_id: int, principal: CurrentPrincipal, service: Service) -> OrganizationRead:
    try:
        organization = service.get_organization(principal, organization_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return OrganizationRead.model_validate(organization)


@router.patch(
    "/{organization_id}/status",
    response_model=OrganizationRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_ORGANIZATIONS))],
)
def set_organization_status(
    organization_id: int,
    payload: OrganizationStatusUpdate,
    principal: CurrentPrincipal,
    service: Service,
) -> OrganizationRead:
    try:
        organization = service.set_organization_active(principal, organization_id, payload.is_active)
    except AuthzError as exc:
        handle_service_error(exc)
    return OrganizationRead.model_validate(organization)


@router.get(
    "/{organization_id}/members",
    response_model=list[MembershipRead],
    dependencies=[Depends(require_perm(PERM_VIEW_ORGANIZATIONS))],
)
def list_members(organization_id: int, principal: CurrentPrincipal, service: Service) -> list[MembershipRead]:
    try:
        links = service.list_memberships(principal, organization_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return [MembershipRead.model_validate(item) for item in links]


@router.post(
    "/{organization_id}/members",
    response_model=MembershipRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_ORGANIZATIONS))],
)
def add_member(
    organization_id: int,
    payload: MembershipCreate,
    principal: CurrentPrincipal,
    service: Service,
) -> MembershipRead:
    try:
        link = service.add_member(principal, organization_id, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return MembershipRead.model_validate(link)


@router.delete(
    "/{organization_id}/members/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_MANAGE_ORGANIZATIONS))],
)
def remove_member(organization_id: int, user_id: int, principal: CurrentPrincipal, service: Service) -> Response:
    try:
        service.remove_member(principal, organization_id, user_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{organization_id}/switch", response_model=MembershipRead)
def switch_organization(organization_id: int, principal: CurrentPrincipal, service: Service) -> MembershipRead:
    # Any member may move their own default; the membership row is the authorization.
    try:
        link = service.set_default_organization(principal, principal.user_id, organization_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return MembershipRead.model_validate(link)
