from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from clinic_authz.api.deps import CurrentPrincipal, get_authorization_service
from clinic_authz.domain.models import AccessCheckRead, AccessCheckRequest, PrincipalRead
from clinic_authz.services.authorization_service import AuthorizationService

router = APIRouter()

Authz = Annotated[AuthorizationService, Depends(get_authorization_service)]


@router.get("/me", response_model=PrincipalRead)
def me(principal: CurrentPrincipal, authz: Authz) -> PrincipalRead:
    permissions = sorted(authz.resolve(principal))
    return PrincipalRead(**principal.model_dump(), permissions=permissions)


@router.post("/check", response_model=AccessCheckRead)
def check(payload: AccessCheckRequest, principal: CurrentPrincipal, authz: Authz) -> AccessCheckRead:
    return AccessCheckRead(
        permission=payload.permission,
        allowed=authz.authorize(principal, payload.permission),
    )
