from __future__ import annotations

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, status

from clinic_authz.api.deps import CurrentPrincipal, handle_service_error, require_perm
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import (
    BulkRoleAssignRead,
    BulkRoleAssignRequest,
    MembershipRead,
    RoleAssignRequest,
    UserCreate,
    UserLockRequest,
    UserRead,
    UserStatusUpdate,
    now_utc,
)
from clinic_authz.domain.permissions import PERM_MANAGE_USERS, PERM_VIEW_USERS
from clinic_authz.services.organization_service import OrganizationService
from clinic_authz.services.role_service import RoleService
from clinic_authz.services.user_service import UserService

router = APIRouter()


def get_user_service() -> UserService:
    return UserService()


def get_role_service() -> RoleService:
    return RoleService()


def get_organization_service() -> OrganizationService:
    return OrganizationService()


Service = Annotated[UserService, Depends(get_user_service)]
Roles = Annotated[RoleService, Depends(get_role_service)]
Organizations = Annotated[OrganizationService, Depends(get_organization_service)]


@router.get(
    "",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_VIEW_USERS))],
)
def list_users(principal: CurrentPrincipal, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(principal)]


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def create_user(payload: UserCreate, principal: CurrentPrincipal, service: Service) -> UserRead:
    try:
        user = service.create_user(principal, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.post(
    "/bulk-assign-role",
    response_model=BulkRoleAssignRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def bulk_assign_role(payload: BulkRoleAssignRequest, principal: CurrentPrincipal, roles: Roles) -> BulkRoleAssignRead:
    try:
        result = roles.bulk_assign_role(principal, payload.user_ids, payload.role_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return BulkRoleAssignRead.model_validate(result)


@router.get(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_VIEW_USERS))],
)
def get_user(user_id: int, principal: CurrentPrincipal, service: Service) -> UserRead:
    try:
        user = service.get_user(principal, user_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.get(
    "/{user_id}/permissions",
    response_model=list[str],
    dependencies=[Depends(require_perm(PERM_VIEW_USERS))],
)
def get_user_permissions(user_id: int, principal: CurrentPrincipal, service: Service) -> list[str]:
    try:
        return service.effective_permissions(principal, user_id)
    except AuthzError as exc:
        handle_service_error(exc)


@router.put(
    "/{user_id}/role",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def assign_role(user_id: int, payload: RoleAssignRequest, principal: CurrentPrincipal, roles: Roles) -> UserRead:
    try:
        user = roles.assign_role(principal, user_id, payload.role_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.patch(
    "/{user_id}/status",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def set_user_status(user_id: int, payload: UserStatusUpdate, principal: CurrentPrincipal, service: Service) -> UserRead:
    try:
        user = service.set_user_active(principal, user_id, payload.is_active)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.post(
    "/{user_id}/lock",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def lock_user(user_id: int, payload: UserLockRequest, principal: CurrentPrincipal, service: Service) -> UserRead:
    until = now_utc() + timedelta(minutes=payload.minutes)
    try:
        user = service.lock_user(principal, user_id, until, payload.reason)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.post(
    "/{user_id}/unlock",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def unlock_user(user_id: int, principal: CurrentPrincipal, service: Service) -> UserRead:
    try:
        user = service.unlock_user(principal, user_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.get(
    "/{user_id}/organizations",
    response_model=list[MembershipRead],
    dependencies=[Depends(require_perm(PERM_VIEW_USERS))],
)
def list_user_organizations(user_id: int, principal: CurrentPrincipal, service: Service) -> list[MembershipRead]:
    try:
        links = service.list_user_memberships(principal, user_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return [MembershipRead.model_validate(item) for item in links]


@router.put(
    "/{user_id}/default-organization/{organization_id}",
    response_model=MembershipRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS))],
)
def set_default_organization(
    user_id: int,
    organization_id: int,
    principal: CurrentPrincipal,
    organizations: Organizations,
) -> MembershipRead:
    try:
        link = organizations.set_default_organization(principal, user_id, organization_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return MembershipRead.model_validate(link)
