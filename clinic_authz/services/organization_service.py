from __future__ import annotations

import logging

from sqlalchemy import false, true
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from clinic_authz.domain.errors import (
    DuplicateNameError,
    NotFoundError,
    OrganizationNotFoundError,
    PrincipalNotFoundError,
    RoleNotFoundError,
)
from clinic_authz.domain.models import (
    AuditAction,
    MembershipCreate,
    Organization,
    OrganizationCreate,
    Role,
    User,
    UserOrganization,
)
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.audit import AuditRecorder
from clinic_authz.infra.db import get_engine
from clinic_authz.services.authorization_service import AuthorizationService

logger = logging.getLogger(__name__)


class OrganizationService:
    def __init__(
        self,
        audit: AuditRecorder | None = None,
        authz: AuthorizationService | None = None,
    ) -> None:
        self._audit = audit or AuditRecorder()
        self._authz = authz or AuthorizationService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_visible_organization(self, session: Session, actor: Principal, organization_id: int) -> Organization:
        organization = session.get(Organization, organization_id)
        if organization is None or not self._authz.can_access_organization(actor, organization_id):
            raise OrganizationNotFoundError(organization_id)
        return organization

    def _get_member_candidate(self, session: Session, actor: Principal, user_id: int) -> User:
        user = session.exec(select(User).where(User.id == user_id).where(self._authz.scope_users(actor))).first()
        if user is None:
            raise PrincipalNotFoundError(user_id)
        return user

    def _clear_default(self, session: Session, user_id: int, keep_organization_id: int) -> None:
        links = session.exec(
            select(UserOrganization)
            .where(UserOrganization.user_id == user_id)
            .where(UserOrganization.is_default == True)  # noqa: E712
        ).all()
        for item in links:
            if item.organization_id == keep_organization_id:
                continue
            item.is_default = False
            session.add(item)
        # The partial unique index must see the old default cleared first.
        session.flush()

    def create_organization(self, actor: Principal, payload: OrganizationCreate) -> Organization:
        with self._session() as session:
            if session.exec(select(Organization).where(Organization.name == payload.name)).first() is not None:
                raise DuplicateNameError("organization", payload.name)
            organization = Organization(**payload.model_dump())
            session.add(organization)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateNameError("organization", payload.name) from exc
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.CREATE_ORGANIZATION,
                entity_type="organization",
                entity_id=organization.id,
                organization_id=organization.id,
                details={"name": organization.name},
            )
            session.commit()
            session.refresh(organization)
            logger.info("organization %s (%s) created by user %s", organization.id, organization.name, actor.user_id)
            return organization

    def list_organizations(self, actor: Principal) -> list[Organization]:
        if actor.is_blocked():
            clause = false()
        elif actor.tenant_scope_exempt:
            clause = true()
        elif actor.active_organization_id is None:
            clause = false()
        else:
            clause = Organization.id == actor.active_organization_id
        with self._session() as session:
            return list(session.exec(select(Organization).where(clause).order_by(Organization.name)).all())

    def get_organization(self, actor: Principal, organization_id: int) -> Organization:
        with self._session() as session:
            return self._get_visible_organization(session, actor, organization_id)

    def set_organization_active(self, actor: Principal, organization_id: int, is_active: bool) -> Organization:
        with self._session() as session:
            organization = self._get_visible_organization(session, actor, organization_id)
            previous = organization.is_active
            organization.is_active = is_active
            session.add(organization)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.UPDATE_ORGANIZATION_STATUS,
                entity_type="organization",
                entity_id=organization_id,
                organization_id=organization_id,
                details={"previous": previous, "is_active": is_active},
            )
            session.commit()
            session.refresh(organization)
            logger.info("organization %s is_active=%s set by user %s", organization_id, is_active, actor.user_id)
            return organization

    def add_member(self, actor: Principal, organization_id: int, payload: MembershipCreate) -> UserOrganization:
        with self._session() as session:
            self._get_visible_organization(session, actor, organization_id)
            self._get_member_candidate(session, actor, payload.user_id)
            if payload.role_id is not None and session.get(Role, payload.role_id) is None:
                raise RoleNotFoundError(payload.role_id)

            link = session.get(UserOrganization, (payload.user_id, organization_id))
            created = link is None
            if link is None:
                link = UserOrganization(
                    user_id=payload.user_id,
                    organization_id=organization_id,
                    role_id=payload.role_id,
                )
            elif payload.role_id is not None:
                link.role_id = payload.role_id

            if payload.is_default:
                self._clear_default(session, payload.user_id, organization_id)
                link.is_default = True

            session.add(link)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.ADD_ORGANIZATION_MEMBER,
                entity_type="organization",
                entity_id=organization_id,
                organization_id=organization_id,
                details={
                    "user_id": payload.user_id,
                    "role_id": link.role_id,
                    "is_default": link.is_default,
                    "created": created,
                },
            )
            session.commit()
            session.refresh(link)
            return link

    def remove_member(self, actor: Principal, organization_id: int, user_id: int) -> None:
        with self._session() as session:
            self._get_visible_organization(session, actor, organization_id)
            link = session.get(UserOrganization, (user_id, organization_id))
            if link is None:
                raise NotFoundError("membership not found")
            was_default = link.is_default
            session.delete(link)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.REMOVE_ORGANIZATION_MEMBER,
                entity_type="organization",
                entity_id=organization_id,
                organization_id=organization_id,
                details={"user_id": user_id, "was_default": was_default},
            )
            session.commit()

    def list_memberships(self, actor: Principal, organization_id: int) -> list[UserOrganization]:
        with self._session() as session:
            self._get_visible_organization(session, actor, organization_id)
            links = session.exec(
                select(UserOrganization)
                .where(UserOrganization.organization_id == organization_id)
                .order_by(UserOrganization.user_id)
            ).all()
            return list(links)

    def set_default_organization(self, actor: Principal, user_id: int, organization_id: int) -> UserOrganization:
        with self._session() as session:
            if user_id != actor.user_id:
                self._get_member_candidate(session, actor, user_id)
            link = session.get(UserOrganization, (user_id, organization_id))
            if link is None:
                raise NotFoundError("membership not found")
            organization = session.get(Organization, organization_id)
            if organization is None or not organization.is_active:
                raise OrganizationNotFoundError(organization_id)

            self._clear_default(session, user_id, organization_id)
            link.is_default = True
            session.add(link)
            session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.SET_DEFAULT_ORGANIZATION,
                entity_type="user",
                entity_id=user_id,
                organization_id=organization_id,
                details={"organization_id": organization_id},
            )
            session.commit()
            session.refresh(link)
            logger.info("user %s default organization set to %s by user %s", user_id, organization_id, actor.user_id)
            return link
