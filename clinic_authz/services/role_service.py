from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from clinic_authz.domain.errors import (
    AuditWriteError,
    AuthzError,
    ConflictError,
    DuplicateNameError,
    NotFoundError,
    PrincipalNotFoundError,
    RoleInUseError,
    RoleNotFoundError,
    UnknownPermissionError,
)
from clinic_authz.domain.models import (
    AuditAction,
    Permission,
    Role,
    RoleCreate,
    RolePermission,
    User,
    UserOrganization,
    now_utc,
)
from clinic_authz.domain.permissions import (
    PERM_CANCEL_APPOINTMENTS,
    PERM_CREATE_APPOINTMENTS,
    PERM_CREATE_CONSULTATION,
    PERM_CREATE_CONSULTATION_FORM,
    PERM_CREATE_INVOICE,
    PERM_CREATE_LAB_ORDER,
    PERM_CREATE_PATIENTS,
    PERM_CREATE_PRESCRIPTION,
    PERM_CREATE_REFERRAL,
    PERM_CREATE_VISIT,
    PERM_EDIT_APPOINTMENTS,
    PERM_EDIT_LAB_RESULTS,
    PERM_EDIT_PATIENTS,
    PERM_EDIT_VISITS,
    PERM_MANAGE_MEDICATIONS,
    PERM_MANAGE_ORGANIZATIONS,
    PERM_MANAGE_REFERRALS,
    PERM_MANAGE_ROLES,
    PERM_MANAGE_USERS,
    PERM_PROCESS_PAYMENT,
    PERM_UPLOAD_FILES,
    PERM_VIEW_APPOINTMENTS,
    PERM_VIEW_AUDIT_LOGS,
    PERM_VIEW_BILLING,
    PERM_VIEW_CONSULTATION,
    PERM_VIEW_DASHBOARD,
    PERM_VIEW_FILES,
    PERM_VIEW_LAB_RESULTS,
    PERM_VIEW_MEDICATIONS,
    PERM_VIEW_ORGANIZATIONS,
    PERM_VIEW_PATIENTS,
    PERM_VIEW_PRESCRIPTIONS,
    PERM_VIEW_REFERRALS,
    PERM_VIEW_REPORTS,
    PERM_VIEW_USERS,
    PERM_VIEW_VISITS,
)
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.audit import AuditRecorder
from clinic_authz.infra.db import get_engine
from clinic_authz.services.authorization_service import AuthorizationService
from clinic_authz.services.catalog_service import PermissionCatalogService

logger = logging.getLogger(__name__)


def _is_unique_violation(exc: IntegrityError) -> bool:
    # psycopg reports the SQLSTATE; SQLite only names the constraint in its message.
    if getattr(exc.orig, "sqlstate", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(exc.orig)


class RoleService:
    ROLE_TEMPLATES: tuple[dict[str, Any], ...] = (
        {
            "key": "doctor",
            "name": "doctor",
            "description": "physician with full clinical access",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_EDIT_PATIENTS,
                PERM_CREATE_PATIENTS,
                PERM_CREATE_VISIT,
                PERM_VIEW_VISITS,
                PERM_EDIT_VISITS,
                PERM_CREATE_PRESCRIPTION,
                PERM_VIEW_PRESCRIPTIONS,
                PERM_CREATE_LAB_ORDER,
                PERM_VIEW_LAB_RESULTS,
                PERM_CREATE_CONSULTATION,
                PERM_VIEW_CONSULTATION,
                PERM_CREATE_REFERRAL,
                PERM_VIEW_REFERRALS,
                PERM_MANAGE_REFERRALS,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "nurse",
            "name": "nurse",
            "description": "patient care and vital signs",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_EDIT_PATIENTS,
                PERM_CREATE_VISIT,
                PERM_VIEW_VISITS,
                PERM_VIEW_PRESCRIPTIONS,
                PERM_VIEW_LAB_RESULTS,
                PERM_VIEW_MEDICATIONS,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "pharmacist",
            "name": "pharmacist",
            "description": "medication dispensing and prescription review",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_VIEW_PRESCRIPTIONS,
                PERM_VIEW_MEDICATIONS,
                PERM_MANAGE_MEDICATIONS,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "physiotherapist",
            "name": "physiotherapist",
            "description": "physical therapy consultations and assessment forms",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_VIEW_VISITS,
                PERM_CREATE_CONSULTATION,
                PERM_VIEW_CONSULTATION,
                PERM_CREATE_CONSULTATION_FORM,
                PERM_UPLOAD_FILES,
                PERM_VIEW_FILES,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "receptionist",
            "name": "receptionist",
            "description": "front desk registration and scheduling",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_CREATE_PATIENTS,
                PERM_EDIT_PATIENTS,
                PERM_VIEW_APPOINTMENTS,
                PERM_CREATE_APPOINTMENTS,
                PERM_EDIT_APPOINTMENTS,
                PERM_CANCEL_APPOINTMENTS,
                PERM_VIEW_BILLING,
                PERM_CREATE_INVOICE,
                PERM_PROCESS_PAYMENT,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "lab_technician",
            "name": "lab_technician",
            "description": "laboratory orders and result entry",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_CREATE_LAB_ORDER,
                PERM_VIEW_LAB_RESULTS,
                PERM_EDIT_LAB_RESULTS,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "administrator",
            "name": "administrator",
            "description": "organization administration without clinical write access",
            "permissions": [
                PERM_MANAGE_USERS,
                PERM_VIEW_USERS,
                PERM_MANAGE_ROLES,
                PERM_MANAGE_ORGANIZATIONS,
                PERM_VIEW_ORGANIZATIONS,
                PERM_VIEW_REPORTS,
                PERM_VIEW_AUDIT_LOGS,
                PERM_VIEW_DASHBOARD,
            ],
        },
        {
            "key": "viewer",
            "name": "viewer",
            "description": "read-only access to patient and visit data",
            "permissions": [
                PERM_VIEW_PATIENTS,
                PERM_VIEW_VISITS,
                PERM_VIEW_LAB_RESULTS,
                PERM_VIEW_PRESCRIPTIONS,
                PERM_VIEW_REFERRALS,
                PERM_VIEW_DASHBOARD,
            ],
        },
    )

    def __init__(
        self,
        audit: AuditRecorder | None = None,
        authz: AuthorizationService | None = None,
    ) -> None:
        self._audit = audit or AuditRecorder()
        self._authz = authz or AuthorizationService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _commit(self, session: Session, role_name: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if _is_unique_violation(exc):
                raise DuplicateNameError("role", role_name) from exc
            raise ConflictError(f"role {role_name!r} conflicts with a concurrent change") from exc

    def _lock_role(self, session: Session, role_id: int, *, shared: bool = False) -> Role:
        role = session.exec(select(Role).where(Role.id == role_id).with_for_update(read=shared)).first()
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    def _load_permissions(self, session: Session, permission_ids: Iterable[int]) -> list[Permission]:
        requested = set(permission_ids)
        if not requested:
            return []
        permissions = list(session.exec(select(Permission).where(col(Permission.id).in_(requested))).all())
        missing = requested - {item.id for item in permissions}
        if missing:
            raise UnknownPermissionError(missing)
        return sorted(permissions, key=lambda item: item.name)

    def _permission_names(self, session: Session, role_id: int) -> list[str]:
        names = session.exec(
            select(Permission.name)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
        ).all()
        return sorted(names)

    def _role_payload(self, role: Role, permissions: list[str]) -> dict[str, Any]:
        return {
            "id": role.id,
            "name": role.name,
            "description": role.description,
            "created_at": role.created_at,
            "permissions": permissions,
        }

    def list_roles(self) -> list[dict[str, Any]]:
        with self._session() as session:
            roles = session.exec(select(Role).order_by(Role.name)).all()
            return [self._role_payload(role, self._permission_names(session, role.id)) for role in roles]

    def get_role(self, role_id: int) -> dict[str, Any]:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                raise RoleNotFoundError(role_id)
            return self._role_payload(role, self._permission_names(session, role_id))

    def create_role(self, actor: Principal, payload: RoleCreate) -> dict[str, Any]:
        with self._session() as session:
            if session.exec(select(Role).where(Role.name == payload.name)).first() is not None:
                raise DuplicateNameError("role", payload.name)
            permissions = self._load_permissions(session, payload.permission_ids)

            role = Role(name=payload.name, description=payload.description)
            session.add(role)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateNameError("role", payload.name) from exc

            for permission in permissions:
                session.add(RolePermission(role_id=role.id, permission_id=permission.id))
            names = [item.name for item in permissions]
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.CREATE_ROLE,
                entity_type="role",
                entity_id=role.id,
                details={"name": role.name, "permissions": names},
            )
            self._commit(session, payload.name)
            session.refresh(role)
            logger.info("role %s (%s) created by user %s", role.id, role.name, actor.user_id)
            return self._role_payload(role, names)

    def update_role_permissions(
        self,
        actor: Principal,
        role_id: int,
        permission_ids: list[int],
    ) -> dict[str, Any]:
        with self._session() as session:
            role = self._lock_role(session, role_id)
            permissions = self._load_permissions(session, permission_ids)
            before = self._permission_names(session, role_id)

            target_ids = {item.id for item in permissions}
            links = list(session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all())
            current_ids = {item.permission_id for item in links}
            for link in links:
                if link.permission_id not in target_ids:
                    session.delete(link)
            for permission_id in sorted(target_ids - current_ids):
                session.add(RolePermission(role_id=role_id, permission_id=permission_id))
            session.flush()

            after = [item.name for item in permissions]
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.UPDATE_ROLE_PERMISSIONS,
                entity_type="role",
                entity_id=role_id,
                details={
                    "before": before,
                    "after": after,
                    "added": sorted(set(after) - set(before)),
                    "removed": sorted(set(before) - set(after)),
                },
            )
            session.commit()
            logger.info("role %s permissions replaced by user %s", role_id, actor.user_id)
            return self._role_payload(role, after)

    def grant_permission(self, actor: Principal, role_id: int, permission_id: int) -> dict[str, Any]:
        with self._session() as session:
            role = self._lock_role(session, role_id)
            permission = self._load_permissions(session, [permission_id])[0]
            changed = session.get(RolePermission, (role_id, permission_id)) is None
            if changed:
                session.add(RolePermission(role_id=role_id, permission_id=permission_id))
                session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.GRANT_PERMISSION,
                entity_type="role",
                entity_id=role_id,
                details={"permission": permission.name, "changed": changed},
            )
            names = self._permission_names(session, role_id)
            session.commit()
            return self._role_payload(role, names)

    def revoke_permission(self, actor: Principal, role_id: int, permission_id: int) -> dict[str, Any]:
        with self._session() as session:
            role = self._lock_role(session, role_id)
            permission = self._load_permissions(session, [permission_id])[0]
            link = session.get(RolePermission, (role_id, permission_id))
            changed = link is not None
            if link is not None:
                session.delete(link)
                session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.REVOKE_PERMISSION,
                entity_type="role",
                entity_id=role_id,
                details={"permission": permission.name, "changed": changed},
            )
            names = self._permission_names(session, role_id)
            session.commit()
            return self._role_payload(role, names)

    def delete_role(self, actor: Principal, role_id: int) -> None:
        with self._session() as session:
            role = self._lock_role(session, role_id)
            user_count = session.exec(select(func.count()).select_from(User).where(User.role_id == role_id)).one()
            membership_count = session.exec(
                select(func.count()).select_from(UserOrganization).where(UserOrganization.role_id == role_id)
            ).one()
            if user_count or membership_count:
                raise RoleInUseError(role_id, user_count, membership_count)

            role_name = role.name
            names = self._permission_names(session, role_id)
            for link in session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all():
                session.delete(link)
            session.flush()
            session.delete(role)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"role {role_id} is still referenced") from exc

            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.DELETE_ROLE,
                entity_type="role",
                entity_id=role_id,
                details={"name": role_name, "permissions": names},
            )
            session.commit()
            logger.info("role %s (%s) deleted by user %s", role_id, role_name, actor.user_id)

    def assign_role(self, actor: Principal, user_id: int, role_id: int) -> User:
        with self._session() as session:
            role = self._lock_role(session, role_id, shared=True)
            user = session.exec(
                select(User).where(User.id == user_id).where(self._authz.scope_users(actor))
            ).first()
            if user is None:
                raise PrincipalNotFoundError(user_id)

            old_role_id = user.role_id
            if old_role_id != role_id:
                user.role_id = role_id
                user.updated_at = now_utc()
                session.add(user)
                session.flush()
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.ASSIGN_ROLE,
                entity_type="user",
                entity_id=user_id,
                organization_id=user.organization_id,
                details={"old_role_id": old_role_id, "new_role_id": role_id, "role_name": role.name},
            )
            session.commit()
            session.refresh(user)
            logger.info("role %s assigned to user %s by user %s", role_id, user_id, actor.user_id)
            return user

    def bulk_assign_role(self, actor: Principal, user_ids: list[int], role_id: int) -> dict[str, Any]:
        with self._session() as session:
            if session.get(Role, role_id) is None:
                raise RoleNotFoundError(role_id)

        results: list[dict[str, Any]] = []
        for user_id in user_ids:
            try:
                self.assign_role(actor, user_id, role_id)
            except AuditWriteError:
                raise
            except AuthzError as exc:
                results.append({"user_id": user_id, "status": "failed", "error": exc.code, "detail": str(exc)})
                continue
            results.append({"user_id": user_id, "status": "assigned", "error": None, "detail": None})

        succeeded = [item["user_id"] for item in results if item["status"] == "assigned"]
        failed = [{"user_id": item["user_id"], "error": item["error"]} for item in results if item["status"] == "failed"]
        with self._session() as session:
            self._audit.record(
                session,
                actor_user_id=actor.user_id,
                action=AuditAction.BULK_ASSIGN_ROLES,
                entity_type="role",
                entity_id=role_id,
                details={"requested": list(user_ids), "succeeded": succeeded, "failed": failed},
            )
            session.commit()
        logger.info(
            "bulk role %s assignment by user %s: %d assigned, %d failed",
            role_id,
            actor.user_id,
            len(succeeded),
            len(failed),
        )
        return {
            "role_id": role_id,
            "requested_count": len(user_ids),
            "success_count": len(succeeded),
            "failure_count": len(failed),
            "results": results,
        }

    def list_role_templates(self) -> list[dict[str, Any]]:
        return [
            {
                "key": str(item["key"]),
                "name": str(item["name"]),
                "description": str(item["description"]),
                "permissions": list(item["permissions"]),
            }
            for item in self.ROLE_TEMPLATES
        ]

    def create_role_from_template(
        self,
        actor: Principal,
        *,
        template_key: str,
        name: str | None = None,
    ) -> dict[str, Any]:
        template = next((item for item in self.ROLE_TEMPLATES if item["key"] == template_key), None)
        if template is None:
            raise NotFoundError("role template not found")

        template_permissions = list(template["permissions"])
        catalog = PermissionCatalogService(audit=self._audit).ensure_catalog()
        permission_ids = [item.id for item in catalog if item.name in template_permissions]
        payload = RoleCreate(
            name=name or str(template["name"]),
            description=str(template["description"]),
            permission_ids=[item for item in permission_ids if item is not None],
        )
        return self.create_role(actor, payload)
