from __future__ import annotations

import logging

from sqlmodel import Session, select

from clinic_authz.domain.errors import PrincipalInactiveError, PrincipalNotFoundError
from clinic_authz.domain.models import Organization, User, UserOrganization
from clinic_authz.domain.permissions import is_tenant_exempt_role
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.db import get_engine

logger = logging.getLogger(__name__)


class PrincipalResolver:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def resolve(self, user_id: int) -> Principal:
        with self._session() as session:
            return self.resolve_in(session, user_id)

    def resolve_in(self, session: Session, user_id: int) -> Principal:
        user = session.get(User, user_id)
        if user is None:
            raise PrincipalNotFoundError(user_id)
        if not user.is_active:
            raise PrincipalInactiveError(user_id)
        return self.principal_for_user(session, user)

    def principal_for_user(self, session: Session, user: User) -> Principal:
        """Build a principal without the activity gate, for inspecting other users."""
        if user.id is None:
            raise PrincipalNotFoundError(0)
        active_organization_id, organization_role_id = self._active_organization(session, user)
        return Principal(
            user_id=user.id,
            username=user.username,
            legacy_role=user.legacy_role,
            role_id=user.role_id,
            organization_role_id=organization_role_id,
            organization_id=user.organization_id,
            active_organization_id=active_organization_id,
            is_active=user.is_active,
            locked_until=user.locked_until,
            tenant_scope_exempt=is_tenant_exempt_role(user.legacy_role),
        )

    def _active_organization(self, session: Session, user: User) -> tuple[int | None, int | None]:
        membership = session.exec(
            select(UserOrganization)
            .where(UserOrganization.user_id == user.id)
            .where(UserOrganization.is_default == True)  # noqa: E712
        ).first()
        if membership is None and user.organization_id is not None:
            membership = session.get(UserOrganization, (user.id, user.organization_id))

        if membership is not None:
            organization_id: int | None = membership.organization_id
            organization_role_id = membership.role_id
        else:
            organization_id = user.organization_id
            organization_role_id = None

        if organization_id is None:
            return None, None
        organization = session.get(Organization, organization_id)
        if organization is None or not organization.is_active:
            logger.info("organization %s is not active; user %s has no active organization", organization_id, user.id)
            return None, None
        return organization_id, organization_role_id
