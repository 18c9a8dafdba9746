from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from clinic_authz.domain.models import Permission, RolePermission, User, UserOrganization
from clinic_authz.domain.permissions import grants_full_catalog
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.db import get_engine

logger = logging.getLogger(__name__)


class AuthorizationService:
    """Permission resolution and tenant scoping.

    This is the only place where the legacy role string is interpreted. Every
    call reads current storage, so grants, revocations and deactivations take
    effect on the next request.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def resolve(self, principal: Principal) -> frozenset[str]:
        with self._session() as session:
            return self.resolve_in(session, principal)

    def resolve_in(self, session: Session, principal: Principal) -> frozenset[str]:
        if principal.is_blocked():
            return frozenset()

        if grants_full_catalog(principal.legacy_role):
            if principal.effective_role_id is not None:
                logger.warning(
                    "user %s has legacy role %r and role_id %s; legacy role takes precedence",
                    principal.user_id,
                    principal.legacy_role,
                    principal.effective_role_id,
                )
            return frozenset(session.exec(select(Permission.name)).all())

        role_id = principal.effective_role_id
        if role_id is None:
            return frozenset()

        names = session.exec(
            select(Permission.name)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
        ).all()
        return frozenset(names)

    def authorize(self, principal: Principal, permission: str) -> bool:
        return permission in self.resolve(principal)

    def scope_filter(
        self,
        principal: Principal,
        entity: Any,
        predicate: ColumnElement[bool] | None = None,
    ) -> ColumnElement[bool]:
        if principal.is_blocked():
            return false()
        if principal.tenant_scope_exempt:
            return predicate if predicate is not None else true()
        if principal.active_organization_id is None:
            return false()

        organization_column = getattr(entity, "organization_id", None)
        if organization_column is None:
            raise TypeError(f"{entity!r} has no organization_id column")
        clause = col(organization_column) == principal.active_organization_id
        if predicate is None:
            return clause
        return and_(predicate, clause)

    def scope_users(self, principal: Principal) -> ColumnElement[bool]:
        # Users belong to an organization through users.organization_id or a membership row.
        home_clause = self.scope_filter(principal, User)
        if principal.is_blocked() or principal.tenant_scope_exempt or principal.active_organization_id is None:
            return home_clause
        member_ids = select(UserOrganization.user_id).where(
            UserOrganization.organization_id == principal.active_organization_id
        )
        return or_(home_clause, col(User.id).in_(member_ids))

    def can_access_organization(self, principal: Principal, organization_id: int) -> bool:
        if principal.is_blocked():
            return False
        if principal.tenant_scope_exempt:
            return True
        return principal.active_organization_id == organization_id
