from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AuditAction(StrEnum):
    CREATE_PERMISSION = "CREATE_PERMISSION"
    CREATE_ROLE = "CREATE_ROLE"
    UPDATE_ROLE_PERMISSIONS = "UPDATE_ROLE_PERMISSIONS"
    GRANT_PERMISSION = "GRANT_PERMISSION"
    REVOKE_PERMISSION = "REVOKE_PERMISSION"
    DELETE_ROLE = "DELETE_ROLE"
    ASSIGN_ROLE = "ASSIGN_ROLE"
    BULK_ASSIGN_ROLES = "BULK_ASSIGN_ROLES"
    CREATE_USER = "CREATE_USER"
    ACTIVATE_USER = "ACTIVATE_USER"
    DEACTIVATE_USER = "DEACTIVATE_USER"
    LOCK_USER = "LOCK_USER"
    UNLOCK_USER = "UNLOCK_USER"
    CREATE_ORGANIZATION = "CREATE_ORGANIZATION"
    UPDATE_ORGANIZATION_STATUS = "UPDATE_ORGANIZATION_STATUS"
    ADD_ORGANIZATION_MEMBER = "ADD_ORGANIZATION_MEMBER"
    REMOVE_ORGANIZATION_MEMBER = "REMOVE_ORGANIZATION_MEMBER"
    SET_DEFAULT_ORGANIZATION = "SET_DEFAULT_ORGANIZATION"
    BOOTSTRAP = "BOOTSTRAP"


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    theme_color: str | None = None
    logo_url: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    legacy_role: str = Field(default="staff", index=True)
    role_id: int | None = Field(default=None, foreign_key="roles.id", index=True)
    organization_id: int | None = Field(default=None, foreign_key="organizations.id", index=True)
    is_active: bool = Field(default=True)
    failed_login_attempts: int = Field(default=0)
    locked_until: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class UserOrganization(SQLModel, table=True):
    __tablename__ = "user_organizations"
    __table_args__ = (
        Index(
            "uq_user_organizations_single_default",
            "user_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
        Index("ix_user_organizations_role_id", "role_id"),
    )

    user_id: int = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    organization_id: int = Field(foreign_key="organizations.id", primary_key=True, ondelete="CASCADE")
    role_id: int | None = Field(default=None, foreign_key="roles.id")
    is_default: bool = Field(default=False)
    joined_at: datetime = Field(default_factory=now_utc, index=True)


class AuditLogEntry(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: int | None = Field(default=None, primary_key=True)
    actor_user_id: int | None = Field(default=None, index=True)
    organization_id: int | None = Field(default=None, index=True)
    action: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str | None = Field(default=None, index=True)
    details: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = Field(default_factory=now_utc, index=True)


class Patient(SQLModel, table=True):
    __tablename__ = "patients"

    id: int | None = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organizations.id", index=True)
    first_name: str
    last_name: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class BootstrapRequest(BaseModel):
    organization_name: str
    username: str


class BootstrapRead(BaseModel):
    organization_id: int
    user_id: int
    permission_count: int


class OrganizationCreate(BaseModel):
    name: str
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    theme_color: str | None = None
    logo_url: str | None = None


class OrganizationStatusUpdate(BaseModel):
    is_active: bool


class OrganizationRead(ORMReadModel):
    id: int
    name: str
    is_active: bool
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    theme_color: str | None = None
    logo_url: str | None = None
    created_at: datetime


class MembershipCreate(BaseModel):
    user_id: int
    role_id: int | None = None
    is_default: bool = False


class MembershipRead(ORMReadModel):
    user_id: int
    organization_id: int
    role_id: int | None = None
    is_default: bool
    joined_at: datetime


class PermissionCreate(BaseModel):
    name: str
    description: str | None = None


class PermissionRead(ORMReadModel):
    id: int
    name: str
    description: str | None = None
    created_at: datetime


class RoleCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    description: str | None = None
    permission_ids: list[int] = PydanticField(default_factory=list)


class RoleFromTemplateCreate(BaseModel):
    template_key: str
    name: str | None = None


class RolePermissionsUpdate(BaseModel):
    permission_ids: list[int]


class RoleRead(ORMReadModel):
    id: int
    name: str
    description: str | None = None
    created_at: datetime
    permissions: list[str] = PydanticField(default_factory=list)


class RoleTemplateRead(BaseModel):
    key: str
    name: str
    description: str
    permissions: list[str]


class UserCreate(BaseModel):
    username: str
    legacy_role: str = "staff"
    role_id: int | None = None
    organization_id: int | None = None
    is_active: bool = True


class UserRead(ORMReadModel):
    id: int
    username: str
    legacy_role: str
    role_id: int | None = None
    organization_id: int | None = None
    is_active: bool
    failed_login_attempts: int
    locked_until: datetime | None = None
    created_at: datetime


class UserStatusUpdate(BaseModel):
    is_active: bool


class UserLockRequest(BaseModel):
    minutes: int = PydanticField(default=30, gt=0)
    reason: str | None = None


class RoleAssignRequest(BaseModel):
    role_id: int


class BulkRoleAssignRequest(BaseModel):
    user_ids: list[int] = PydanticField(min_length=1)
    role_id: int


class BulkRoleAssignItemRead(BaseModel):
    user_id: int
    status: str
    error: str | None = None
    detail: str | None = None


class BulkRoleAssignRead(BaseModel):
    role_id: int
    requested_count: int
    success_count: int
    failure_count: int
    results: list[BulkRoleAssignItemRead]


class PrincipalRead(BaseModel):
    user_id: int
    username: str
    legacy_role: str
    role_id: int | None = None
    organization_role_id: int | None = None
    organization_id: int | None = None
    active_organization_id: int | None = None
    is_active: bool
    locked_until: datetime | None = None
    tenant_scope_exempt: bool
    permissions: list[str]


class AccessCheckRequest(BaseModel):
    permission: str


class AccessCheckRead(BaseModel):
    permission: str
    allowed: bool


class AuditLogRead(ORMReadModel):
    id: int
    actor_user_id: int | None = None
    organization_id: int | None = None
    action: AuditAction
    entity_type: str
    entity_id: str | None = None
    details: dict[str, Any]
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime


class PatientCreate(BaseModel):
    first_name: str
    last_name: str
    organization_id: int | None = None


class PatientRead(ORMReadModel):
    id: int
    organization_id: int
    first_name: str
    last_name: str
    created_at: datetime
