from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from clinic_authz.domain.errors import (
    DuplicateNameError,
    ForbiddenError,
    OrganizationNotFoundError,
    PrincipalNotFoundError,
    RoleNotFoundError,
    ValidationError,
)
from clinic_authz.domain.models import (
    AuditAction,
    Organization,
    Role,
    User,
    UserCreate,
    UserOrganization,
    as_utc,
    now_utc,
)
from clinic_authz.domain.permissions import grants_full_catalog, is_tenant_exempt_role
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.audit import AuditRecorder
from clinic_authz.infra.db import get_engine
from clinic_authz.services.authorization_service import AuthorizationService
from clinic_authz.services.principal_service import PrincipalResolver

MAX_FAILED_LOGINS = int(os.getenv("MAX_FAILED_LOGINS", "5"))
LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))

logger = logging.getLogger(__name__)


class UserService:
    def __init__(
        self,
        audit: AuditRecorder | None = None,
        authz: AuthorizationService | None = None,
        resolver: PrincipalResolver | None = None,
    ) -> None:
        self._audit = audit or AuditRecorder()
        self._authz = authz or AuthorizationService()
        self._resolver = resolver or PrincipalResolver()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_visible_user(self, session: Session, actor: Principal, user_id: int) -> User:
        user = session.exec(select(User).where(User.id == user_id).where(self._authz.scope_users(actor))).first()
        if user is None:
            raise PrincipalNotFoundError(user_id)
        return user

    def _get_manageable_user(self, session: Session, actor: Principal, user_id: int) -> User:
        user = self._get_visible_user(session, actor, user_id)
        # Clinic-scoped actors cannot act on cross-tenant accounts homed in their clinic.
        if is_tenant_exempt_role(user.legacy_role) and not actor.tenant_scope_exempt:
            raise ForbiddenError(f"user {user_id} can only be managed by a superadmin")
        return user

    def create_user(self, actor: Principal, payload: UserCreate) -> User:
        if grants_full_catalog(payload.legacy_role) and not actor.tenant_scope_exempt:
            raise ForbiddenError(f"legacy role {payload.legacy_role!r} can only be granted by a superadmin")
        organization_id = payload.organization_id
        if organization_id is None and not actor.tenant_scope_exempt:
            organization_id = actor.active_organization_id
        if organization_id is not None and not self._authz.can_access_organization(actor, organization_id):
            raise OrganizationNotFoundError(organization_id)

        with self._session() as session:
            if organization_id is not None and session.get(Organization, organization_id) is None:
                raise OrganizationNotFoundError(organization_id)
            if payload.role_id is not None and session.get(Role, payload.role_id) is None:
                raise RoleNotFoundError(payload.role_id)
            if session.exec(select(User).where(User.username == payload.username)).first() is not None:
                raise DuplicateNameError("user", payload.username)

            user = User(
                username=payload.username,
                legacy_role=payload.legacy_role,
                role_id=payload.role_id,
                organization_id=organization_id,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateNameError("user", payload.username) from exc
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.CREATE_USER,
                entity_type="user",
                entity_id=user.id,
                organization_id=user.organization_id,
                details={
                    "username": user.username,
                    "legacy_role": user.legacy_role,
                    "role_id": user.role_id,
                    "organization_id": user.organization_id,
                },
            )
            session.commit()
            session.refresh(user)
            logger.info("user %s (%s) created by user %s", user.id, user.username, actor.user_id)
            return user

    def list_users(self, actor: Principal) -> list[User]:
        with self._session() as session:
            statement = select(User).where(self._authz.scope_users(actor)).order_by(User.id)
            return list(session.exec(statement).all())

    def get_user(self, actor: Principal, user_id: int) -> User:
        with self._session() as session:
            return self._get_visible_user(session, actor, user_id)

    def effective_permissions(self, actor: Principal, user_id: int) -> list[str]:
        with self._session() as session:
            user = self._get_visible_user(session, actor, user_id)
            principal = self._resolver.principal_for_user(session, user)
            return sorted(self._authz.resolve_in(session, principal))

    def set_user_active(self, actor: Principal, user_id: int, is_active: bool) -> User:
        if actor.user_id == user_id:
            raise ValidationError("cannot change your own account status")
        with self._session() as session:
            user = self._get_manageable_user(session, actor, user_id)
            previous = user.is_active
            user.is_active = is_active
            user.updated_at = now_utc()
            session.add(user)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.ACTIVATE_USER if is_active else AuditAction.DEACTIVATE_USER,
                entity_type="user",
                entity_id=user_id,
                organization_id=user.organization_id,
                details={"username": user.username, "previous": previous, "is_active": is_active},
            )
            session.commit()
            session.refresh(user)
            logger.info("user %s is_active=%s set by user %s", user_id, is_active, actor.user_id)
            return user

    def lock_user(self, actor: Principal, user_id: int, until: datetime, reason: str | None = None) -> User:
        if actor.user_id == user_id:
            raise ValidationError("cannot lock your own account")
        with self._session() as session:
            user = self._get_manageable_user(session, actor, user_id)
            user.locked_until = as_utc(until)
            user.updated_at = now_utc()
            session.add(user)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.LOCK_USER,
                entity_type="user",
                entity_id=user_id,
                organization_id=user.organization_id,
                details={"locked_until": as_utc(until).isoformat(), "reason": reason},
            )
            session.commit()
            session.refresh(user)
            return user

    def unlock_user(self, actor: Principal, user_id: int) -> User:
        with self._session() as session:
            user = self._get_manageable_user(session, actor, user_id)
            previous = user.locked_until
            user.locked_until = None
            user.failed_login_attempts = 0
            user.updated_at = now_utc()
            session.add(user)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.UNLOCK_USER,
                entity_type="user",
                entity_id=user_id,
                organization_id=user.organization_id,
                details={"previous_locked_until": as_utc(previous).isoformat() if previous else None},
            )
            session.commit()
            session.refresh(user)
            return user

    def register_failed_login(self, user_id: int) -> User:
        """Count a failed sign-in and lock the account once the threshold is reached.

        Called by the credential layer; there is no acting principal, so the
        resulting LOCK_USER entry has no actor.
        """
        with self._session() as session:
            user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
            if user is None:
                raise PrincipalNotFoundError(user_id)
            user.failed_login_attempts += 1
            user.updated_at = now_utc()
            if user.failed_login_attempts >= MAX_FAILED_LOGINS:
                user.locked_until = now_utc() + timedelta(minutes=LOCKOUT_MINUTES)
                session.add(user)
                session.flush()
                self._audit.record(
                    session,
                    actor_user_id=None,
                    action=AuditAction.LOCK_USER,
                    entity_type="user",
                    entity_id=user_id,
                    organization_id=user.organization_id,
                    details={
                        "reason": "too many failed login attempts",
                        "failed_login_attempts": user.failed_login_attempts,
                        "locked_until": user.locked_until.isoformat(),
                    },
                )
                logger.warning("user %s locked after %d failed logins", user_id, user.failed_login_attempts)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def list_user_memberships(self, actor: Principal, user_id: int) -> list[UserOrganization]:
        with self._session() as session:
            self._get_visible_user(session, actor, user_id)
            links = list(session.exec(select(UserOrganization).where(UserOrganization.user_id == user_id)).all())
            return sorted(links, key=lambda item: (not item.is_default, item.organization_id))
