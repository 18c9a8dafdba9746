from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, col, create_engine, select

from clinic_authz.domain.errors import PrincipalInactiveError, PrincipalNotFoundError
from clinic_authz.domain.models import (
    Organization,
    Permission,
    RoleCreate,
    User,
    UserOrganization,
    now_utc,
)
from clinic_authz.domain.permissions import DEFAULT_PERMISSION_NAMES
from clinic_authz.domain.principal import Principal
from clinic_authz.infra import db
from clinic_authz.services.authorization_service import AuthorizationService
from clinic_authz.services.catalog_service import PermissionCatalogService
from clinic_authz.services.principal_service import PrincipalResolver
from clinic_authz.services.role_service import RoleService


@pytest.fixture()
def authz_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "resolution_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    PermissionCatalogService().ensure_catalog()
    yield test_engine
    test_engine.dispose()


def _permission_ids(*names: str) -> list[int]:
    with Session(db.get_engine()) as session:
        rows = session.exec(select(Permission).where(col(Permission.name).in_(names))).all()
        return [row.id for row in rows if row.id is not None]


def _create_org(name: str, *, is_active: bool = True) -> int:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        organization = Organization(name=name, is_active=is_active)
        session.add(organization)
        session.commit()
        return organization.id  # type: ignore[return-value]


def _create_user(
    username: str,
    *,
    organization_id: int | None = None,
    legacy_role: str = "staff",
    role_id: int | None = None,
    is_active: bool = True,
) -> int:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        user = User(
            username=username,
            organization_id=organization_id,
            legacy_role=legacy_role,
            role_id=role_id,
            is_active=is_active,
        )
        session.add(user)
        session.commit()
        return user.id  # type: ignore[return-value]


def _system_actor() -> Principal:
    return Principal(user_id=0, username="system", legacy_role="superadmin", tenant_scope_exempt=True)


def _create_role(name: str, *permission_names: str) -> int:
    role = RoleService().create_role(
        _system_actor(),
        RoleCreate(name=name, permission_ids=_permission_ids(*permission_names)),
    )
    return int(role["id"])


def test_user_without_role_resolves_to_empty_set(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    user_id = _create_user("norole", organization_id=org_id)

    principal = PrincipalResolver().resolve(user_id)
    service = AuthorizationService()

    assert service.resolve(principal) == frozenset()
    assert service.authorize(principal, "viewPatients") is False


def test_unknown_legacy_role_is_not_a_grant(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    user_id = _create_user("doctorish", organization_id=org_id, legacy_role="doctor")

    principal = PrincipalResolver().resolve(user_id)

    assert AuthorizationService().resolve(principal) == frozenset()


def test_role_permissions_are_resolved_through_the_join(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("nurse", "viewPatients", "viewVisits")
    user_id = _create_user("nina", organization_id=org_id, role_id=role_id)

    principal = PrincipalResolver().resolve(user_id)

    assert AuthorizationService().resolve(principal) == frozenset({"viewPatients", "viewVisits"})


def test_role_with_no_permissions_is_valid_and_empty(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("placeholder")
    user_id = _create_user("pat", organization_id=org_id, role_id=role_id)

    principal = PrincipalResolver().resolve(user_id)

    assert principal.effective_role_id == role_id
    assert AuthorizationService().resolve(principal) == frozenset()


def test_deactivation_overrides_every_grant(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("doctor", "viewPatients")
    user_id = _create_user("doc", organization_id=org_id, role_id=role_id)
    principal = PrincipalResolver().resolve(user_id)
    assert AuthorizationService().authorize(principal, "viewPatients") is True

    inactive = principal.model_copy(update={"is_active": False})
    assert AuthorizationService().resolve(inactive) == frozenset()

    superadmin = inactive.model_copy(update={"legacy_role": "superadmin", "tenant_scope_exempt": True})
    assert AuthorizationService().resolve(superadmin) == frozenset()


def test_resolver_rejects_missing_and_inactive_users(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    inactive_id = _create_user("gone", organization_id=org_id, is_active=False)

    with pytest.raises(PrincipalNotFoundError):
        PrincipalResolver().resolve(9999)
    with pytest.raises(PrincipalInactiveError):
        PrincipalResolver().resolve(inactive_id)


def test_locked_user_resolves_but_has_no_permissions(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("doctor", "viewPatients")
    user_id = _create_user("locked", organization_id=org_id, role_id=role_id)
    with Session(db.get_engine()) as session:
        user = session.get(User, user_id)
        assert user is not None
        user.locked_until = now_utc() + timedelta(minutes=10)
        session.add(user)
        session.commit()

    principal = PrincipalResolver().resolve(user_id)

    assert principal.is_locked() is True
    assert AuthorizationService().resolve(principal) == frozenset()


def test_expired_lock_no_longer_blocks(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("doctor", "viewPatients")
    user_id = _create_user("was-locked", organization_id=org_id, role_id=role_id)
    with Session(db.get_engine()) as session:
        user = session.get(User, user_id)
        assert user is not None
        user.locked_until = now_utc() - timedelta(minutes=1)
        session.add(user)
        session.commit()

    principal = PrincipalResolver().resolve(user_id)

    assert AuthorizationService().authorize(principal, "viewPatients") is True


def test_grant_and_revoke_take_effect_on_next_resolution(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("clerk", "viewPatients")
    user_id = _create_user("clerk", organization_id=org_id, role_id=role_id)
    principal = PrincipalResolver().resolve(user_id)
    service = AuthorizationService()
    roles = RoleService()
    [billing_id] = _permission_ids("viewBilling")

    assert service.authorize(principal, "viewBilling") is False
    roles.grant_permission(_system_actor(), role_id, billing_id)
    assert service.authorize(principal, "viewBilling") is True
    roles.revoke_permission(_system_actor(), role_id, billing_id)
    assert service.authorize(principal, "viewBilling") is False


@pytest.mark.parametrize("legacy_role", ["superadmin", "super_admin", "admin"])
def test_privileged_legacy_roles_get_the_whole_catalog(authz_engine: Engine, legacy_role: str) -> None:
    org_id = _create_org("clinic-a")
    user_id = _create_user(f"legacy-{legacy_role}", organization_id=org_id, legacy_role=legacy_role)

    principal = PrincipalResolver().resolve(user_id)

    assert AuthorizationService().resolve(principal) == frozenset(DEFAULT_PERMISSION_NAMES)
    assert principal.tenant_scope_exempt is (legacy_role != "admin")


def test_legacy_role_wins_over_normalized_role_and_warns(
    authz_engine: Engine,
    caplog: pytest.LogCaptureFixture,
) -> None:
    org_id = _create_org("clinic-a")
    role_id = _create_role("receptionist", "viewAppointments")
    user_id = _create_user("mixed", organization_id=org_id, legacy_role="superadmin", role_id=role_id)

    principal = PrincipalResolver().resolve(user_id)
    with caplog.at_level(logging.WARNING, logger="clinic_authz.services.authorization_service"):
        permissions = AuthorizationService().resolve(principal)

    assert permissions == frozenset(DEFAULT_PERMISSION_NAMES)
    assert any("legacy role takes precedence" in record.getMessage() for record in caplog.records)


def test_per_organization_role_overrides_user_role(authz_engine: Engine) -> None:
    org_a = _create_org("clinic-a")
    org_b = _create_org("clinic-b")
    home_role = _create_role("nurse", "viewPatients")
    override_role = _create_role("pharmacist", "manageMedications")
    user_id = _create_user("floater", organization_id=org_a, role_id=home_role)
    with Session(db.get_engine()) as session:
        session.add(UserOrganization(user_id=user_id, organization_id=org_a))
        session.add(
            UserOrganization(user_id=user_id, organization_id=org_b, role_id=override_role, is_default=True)
        )
        session.commit()

    principal = PrincipalResolver().resolve(user_id)

    assert principal.active_organization_id == org_b
    assert principal.effective_role_id == override_role
    assert AuthorizationService().resolve(principal) == frozenset({"manageMedications"})


def test_active_organization_falls_back_to_home_organization(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-a")
    user_id = _create_user("homebody", organization_id=org_id)

    principal = PrincipalResolver().resolve(user_id)

    assert principal.active_organization_id == org_id
    assert principal.organization_role_id is None


def test_suspended_organization_is_not_active(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-suspended", is_active=False)
    user_id = _create_user("suspended-staff", organization_id=org_id)

    principal = PrincipalResolver().resolve(user_id)

    assert principal.active_organization_id is None


def test_lab_technician_permissions_follow_role_updates(authz_engine: Engine) -> None:
    org_id = _create_org("clinic-lab")
    role_id = _create_role("lab_technician", "viewPatients", "createLabOrder", "viewLabResults")
    user_id = _create_user("labtech", organization_id=org_id)
    roles = RoleService()
    roles.assign_role(_system_actor(), user_id, role_id)

    principal = PrincipalResolver().resolve(user_id)
    service = AuthorizationService()
    assert service.authorize(principal, "createLabOrder") is True
    assert service.authorize(principal, "deletePatients") is False

    roles.update_role_permissions(_system_actor(), role_id, _permission_ids("viewPatients"))

    assert service.authorize(principal, "createLabOrder") is False
    assert service.authorize(principal, "viewPatients") is True
