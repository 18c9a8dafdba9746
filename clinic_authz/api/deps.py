from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated, NoReturn

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_authz.domain.errors import (
    AuditWriteError,
    AuthzError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PrincipalError,
    ValidationError,
)
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.auth import decode_access_token, subject_user_id
from clinic_authz.infra.tenant import set_request_context
from clinic_authz.services.authorization_service import AuthorizationService
from clinic_authz.services.principal_service import PrincipalResolver

logger = logging.getLogger(__name__)

# Tokens are issued by the credential layer; this service only verifies them.
bearer_scheme = HTTPBearer(auto_error=False)


def get_principal_resolver() -> PrincipalResolver:
    return PrincipalResolver()


def get_authorization_service() -> AuthorizationService:
    return AuthorizationService()


def authenticate(
    resolver: Annotated[PrincipalResolver, Depends(get_principal_resolver)],
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        user_id = subject_user_id(decode_access_token(credentials.credentials))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    try:
        principal = resolver.resolve(user_id)
    except PrincipalError as exc:
        logger.info("rejected token for user %s: %s", user_id, exc.code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return principal


async def get_current_principal(
    request: Request,
    principal: Annotated[Principal, Depends(authenticate)],
) -> Principal:
    # Runs on the event loop so the context below is inherited by the endpoint thread.
    request.state.principal = principal
    set_request_context(
        principal.active_organization_id,
        principal.user_id,
        client_ip=request.client.host if request.client is not None else None,
        user_agent=request.headers.get("user-agent"),
    )
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_perm(permission: str) -> Callable[..., Principal]:
    def _checker(
        principal: CurrentPrincipal,
        authz: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> Principal:
        if not authz.authorize(principal, permission):
            logger.info("user %s denied: missing %s", principal.user_id, permission)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return principal

    return _checker


def handle_service_error(exc: AuthzError) -> NoReturn:
    """Translate a domain error into an HTTP response.

    Principal errors reaching a router concern the target of an admin call,
    so they read as 404; the caller's own principal errors are handled in
    authenticate.
    """
    if isinstance(exc, AuditWriteError):
        logger.error("audit write failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="internal server error",
        ) from exc
    if isinstance(exc, NotFoundError | PrincipalError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc
