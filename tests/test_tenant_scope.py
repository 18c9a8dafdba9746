from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from clinic_authz import main as app_main
from clinic_authz.domain.models import Patient, Role, now_utc
from clinic_authz.domain.principal import Principal
from clinic_authz.infra import db
from clinic_authz.infra.auth import create_access_token
from clinic_authz.services.authorization_service import AuthorizationService


@pytest.fixture()
def tenant_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "tenant_test.db"
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
    client = TestClient(app_main.app)
    yield client
    client.close()
    test_engine.dispose()


def _auth_header(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


def _setup_two_clinics(client: TestClient) -> dict[str, int]:
    boot = client.post("/api/bootstrap", json={"organization_name": "Head Office", "username": "root"})
    assert boot.status_code == 201
    root_id = boot.json()["user_id"]
    ids = {"root": root_id}
    for suffix in ("a", "b"):
        org = client.post("/api/organizations", json={"name": f"Clinic {suffix.upper()}"}, headers=_auth_header(root_id))
        assert org.status_code == 201
        ids[f"org_{suffix}"] = org.json()["id"]
        admin = client.post(
            "/api/users",
            json={"username": f"admin-{suffix}", "legacy_role": "admin", "organization_id": ids[f"org_{suffix}"]},
            headers=_auth_header(root_id),
        )
        assert admin.status_code == 201
        ids[f"admin_{suffix}"] = admin.json()["id"]
        patient = client.post(
            "/api/patients",
            json={"first_name": "Pat", "last_name": suffix.upper()},
            headers=_auth_header(ids[f"admin_{suffix}"]),
        )
        assert patient.status_code == 201
        assert patient.json()["organization_id"] == ids[f"org_{suffix}"]
        ids[f"patient_{suffix}"] = patient.json()["id"]
    return ids


def test_patients_are_isolated_between_clinics(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    headers_a = _auth_header(ids["admin_a"])

    listed = tenant_client.get("/api/patients", headers=headers_a)
    assert [item["id"] for item in listed.json()] == [ids["patient_a"]]

    assert tenant_client.get(f"/api/patients/{ids['patient_a']}", headers=headers_a).status_code == 200
    assert tenant_client.get(f"/api/patients/{ids['patient_b']}", headers=headers_a).status_code == 404

    cross_create = tenant_client.post(
        "/api/patients",
        json={"first_name": "Sneaky", "last_name": "Insert", "organization_id": ids["org_b"]},
        headers=headers_a,
    )
    assert cross_create.status_code == 404


def test_superadmin_sees_every_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)

    listed = tenant_client.get("/api/patients", headers=_auth_header(ids["root"]))

    assert {item["id"] for item in listed.json()} == {ids["patient_a"], ids["patient_b"]}
    organizations = tenant_client.get("/api/organizations", headers=_auth_header(ids["root"]))
    assert len(organizations.json()) == 3


def test_clinic_admin_stays_inside_its_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    headers_a = _auth_header(ids["admin_a"])

    organizations = tenant_client.get("/api/organizations", headers=headers_a)
    assert [item["id"] for item in organizations.json()] == [ids["org_a"]]
    assert tenant_client.get(f"/api/organizations/{ids['org_b']}", headers=headers_a).status_code == 404

    users = tenant_client.get("/api/users", headers=headers_a)
    assert [item["username"] for item in users.json()] == ["admin-a"]
    assert tenant_client.get(f"/api/users/{ids['admin_b']}", headers=headers_a).status_code == 404


def test_cross_clinic_role_assignment_is_not_found(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    role = tenant_client.post("/api/roles", json={"name": "nurse"}, headers=_auth_header(ids["root"]))
    assert role.status_code == 201

    response = tenant_client.put(
        f"/api/users/{ids['admin_b']}/role",
        json={"role_id": role.json()["id"]},
        headers=_auth_header(ids["admin_a"]),
    )

    assert response.status_code == 404
    target = tenant_client.get(f"/api/users/{ids['admin_b']}", headers=_auth_header(ids["root"]))
    assert target.json()["role_id"] is None


def test_membership_makes_user_visible_to_other_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    floater = tenant_client.post(
        "/api/users",
        json={"username": "floater", "organization_id": ids["org_b"]},
        headers=_auth_header(ids["admin_b"]),
    )
    floater_id = floater.json()["id"]
    assert tenant_client.get(f"/api/users/{floater_id}", headers=_auth_header(ids["admin_a"])).status_code == 404

    member = tenant_client.post(
        f"/api/organizations/{ids['org_a']}/members",
        json={"user_id": floater_id},
        headers=_auth_header(ids["root"]),
    )
    assert member.status_code == 201

    assert tenant_client.get(f"/api/users/{floater_id}", headers=_auth_header(ids["admin_a"])).status_code == 200


def test_user_created_by_clinic_admin_lands_in_their_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)

    response = tenant_client.post("/api/users", json={"username": "new-nurse"}, headers=_auth_header(ids["admin_a"]))

    assert response.status_code == 201
    assert response.json()["organization_id"] == ids["org_a"]


def test_scope_filter_edge_cases(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    service = AuthorizationService()
    scoped = Principal(
        user_id=ids["admin_a"],
        username="admin-a",
        legacy_role="admin",
        organization_id=ids["org_a"],
        active_organization_id=ids["org_a"],
    )
    no_clinic = scoped.model_copy(update={"active_organization_id": None})
    locked = scoped.model_copy(update={"locked_until": now_utc() + timedelta(minutes=5)})
    locked_superadmin = locked.model_copy(update={"legacy_role": "superadmin", "tenant_scope_exempt": True})
    superadmin = scoped.model_copy(update={"legacy_role": "superadmin", "tenant_scope_exempt": True})

    with Session(db.get_engine()) as session:

        def _visible(principal: Principal, predicate=None) -> set[int]:
            statement = select(Patient).where(service.scope_filter(principal, Patient, predicate))
            return {row.id for row in session.exec(statement).all() if row.id is not None}

        assert _visible(scoped) == {ids["patient_a"]}
        assert _visible(no_clinic) == set()
        assert _visible(locked) == set()
        assert _visible(locked_superadmin) == set()
        assert _visible(superadmin) == {ids["patient_a"], ids["patient_b"]}
        assert _visible(superadmin, Patient.id == ids["patient_b"]) == {ids["patient_b"]}
        assert _visible(scoped, Patient.id == ids["patient_b"]) == set()

    with pytest.raises(TypeError):
        service.scope_filter(scoped, Role)


@pytest.mark.parametrize("legacy_role", ["superadmin", "super_admin", "admin"])
def test_clinic_admin_cannot_create_privileged_accounts(tenant_client: TestClient, legacy_role: str) -> None:
    ids = _setup_two_clinics(tenant_client)
    headers_a = _auth_header(ids["admin_a"])

    response = tenant_client.post(
        "/api/users",
        json={"username": "mole", "legacy_role": legacy_role},
        headers=headers_a,
    )

    assert response.status_code == 403
    users = tenant_client.get("/api/users", headers=headers_a)
    assert [item["username"] for item in users.json()] == ["admin-a"]
    listed = tenant_client.get("/api/patients", headers=headers_a)
    assert [item["id"] for item in listed.json()] == [ids["patient_a"]]


def test_superadmin_can_still_create_privileged_accounts(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)

    response = tenant_client.post(
        "/api/users",
        json={"username": "deputy", "legacy_role": "superadmin", "organization_id": ids["org_a"]},
        headers=_auth_header(ids["root"]),
    )

    assert response.status_code == 201
    assert response.json()["legacy_role"] == "superadmin"


def test_clinic_admin_cannot_manage_superadmin_homed_in_their_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)
    deputy = tenant_client.post(
        "/api/users",
        json={"username": "deputy", "legacy_role": "superadmin", "organization_id": ids["org_a"]},
        headers=_auth_header(ids["root"]),
    )
    deputy_id = deputy.json()["id"]
    headers_a = _auth_header(ids["admin_a"])

    deactivate = tenant_client.patch(f"/api/users/{deputy_id}/status", json={"is_active": False}, headers=headers_a)
    lock = tenant_client.post(f"/api/users/{deputy_id}/lock", json={"minutes": 60}, headers=headers_a)
    unlock = tenant_client.post(f"/api/users/{deputy_id}/unlock", headers=headers_a)

    assert [deactivate.status_code, lock.status_code, unlock.status_code] == [403, 403, 403]
    target = tenant_client.get(f"/api/users/{deputy_id}", headers=_auth_header(ids["root"])).json()
    assert target["is_active"] is True
    assert target["locked_until"] is None

    # Ordinary clinic staff remain manageable.
    nurse = tenant_client.post("/api/users", json={"username": "nurse-a"}, headers=headers_a)
    nurse_lock = tenant_client.post(f"/api/users/{nurse.json()['id']}/lock", json={"minutes": 5}, headers=headers_a)
    assert nurse_lock.status_code == 200


def test_audit_trail_is_scoped_to_the_readers_clinic(tenant_client: TestClient) -> None:
    ids = _setup_two_clinics(tenant_client)

    scoped = tenant_client.get("/api/audit", params={"action": "CREATE_USER"}, headers=_auth_header(ids["admin_a"]))
    assert scoped.status_code == 200
    assert [item["entity_id"] for item in scoped.json()] == [str(ids["admin_a"])]
    assert {item["organization_id"] for item in scoped.json()} == {ids["org_a"]}

    everything = tenant_client.get("/api/audit", params={"action": "CREATE_USER"}, headers=_auth_header(ids["root"]))
    assert {item["entity_id"] for item in everything.json()} == {str(ids["admin_a"]), str(ids["admin_b"])}
    hidden = tenant_client.get(
        "/api/audit",
        params={"entity_type": "user", "entity_id": str(ids["admin_b"])},
        headers=_auth_header(ids["admin_a"]),
    )
    assert hidden.json() == []
