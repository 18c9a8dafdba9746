from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from clinic_authz.domain.errors import AuditWriteError
from clinic_authz.domain.models import AuditAction, AuditLogEntry
from clinic_authz.domain.principal import Principal
from clinic_authz.infra import db
from clinic_authz.infra.audit import AuditRecorder, ImmutableAuditLogError
from clinic_authz.infra.tenant import set_request_context
from clinic_authz.services.audit_service import AuditLogService


@pytest.fixture()
def audit_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "audit_test.db"
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
    yield test_engine
    set_request_context(None, None)
    test_engine.dispose()


def _record(
    action: AuditAction,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = 1,
    organization_id: int | None = None,
) -> int:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        entry = AuditRecorder().record(
            session,
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details={"note": action.value.lower()},
            organization_id=organization_id,
        )
        session.commit()
        return entry.id  # type: ignore[return-value]


def _reader(**overrides: object) -> Principal:
    fields: dict[str, object] = {
        "user_id": 50,
        "username": "auditor",
        "legacy_role": "staff",
        "organization_id": 1,
        "active_organization_id": 1,
    }
    fields.update(overrides)
    return Principal(**fields)  # type: ignore[arg-type]


def test_entries_pick_up_request_context(audit_engine: Engine) -> None:
    set_request_context(7, 1, client_ip="10.0.0.8", user_agent="pytest-agent")

    entry_id = _record(AuditAction.CREATE_ROLE, "role", 3)

    with Session(audit_engine) as session:
        entry = session.get(AuditLogEntry, entry_id)
        assert entry is not None
        assert entry.ip_address == "10.0.0.8"
        assert entry.user_agent == "pytest-agent"
        assert entry.entity_id == "3"
        assert entry.action == "CREATE_ROLE"


def test_entries_cannot_be_updated(audit_engine: Engine) -> None:
    entry_id = _record(AuditAction.DELETE_ROLE, "role", 4)

    with Session(audit_engine) as session:
        entry = session.get(AuditLogEntry, entry_id)
        assert entry is not None
        entry.details = {"note": "rewritten"}
        session.add(entry)
        with pytest.raises(ImmutableAuditLogError):
            session.commit()

    with Session(audit_engine) as session:
        assert session.get(AuditLogEntry, entry_id).details == {"note": "delete_role"}  # type: ignore[union-attr]


def test_entries_cannot_be_deleted(audit_engine: Engine) -> None:
    entry_id = _record(AuditAction.ASSIGN_ROLE, "user", 5)

    with Session(audit_engine) as session:
        entry = session.get(AuditLogEntry, entry_id)
        session.delete(entry)
        with pytest.raises(ImmutableAuditLogError):
            session.commit()

    with Session(audit_engine) as session:
        assert session.get(AuditLogEntry, entry_id) is not None


def test_storage_failure_becomes_audit_write_error(tmp_path: Path) -> None:
    # No tables exist on this engine, so the insert fails at flush time.
    empty_engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    with Session(empty_engine) as session:
        with pytest.raises(AuditWriteError):
            AuditRecorder().record(
                session,
                actor_user_id=1,
                action=AuditAction.CREATE_USER,
                entity_type="user",
                entity_id=1,
            )
    empty_engine.dispose()


def test_list_entries_filters_and_orders_newest_first(audit_engine: Engine) -> None:
    first = _record(AuditAction.CREATE_ROLE, "role", 1)
    second = _record(AuditAction.CREATE_ROLE, "role", 2, actor_user_id=2)
    _record(AuditAction.CREATE_USER, "user", 9)
    service = AuditLogService()
    reader = _reader(tenant_scope_exempt=True)

    assert [item.id for item in service.list_entries(reader, action=AuditAction.CREATE_ROLE)] == [second, first]
    assert [item.id for item in service.list_entries(reader, entity_type="role", actor_user_id=2)] == [second]
    assert [item.id for item in service.list_entries(reader, entity_type="role", entity_id="1")] == [first]
    assert len(service.list_entries(reader, limit=1)) == 1


def test_system_entries_have_no_actor(audit_engine: Engine) -> None:
    _record(AuditAction.LOCK_USER, "user", 11, actor_user_id=None)

    with Session(audit_engine) as session:
        [entry] = session.exec(select(AuditLogEntry).where(AuditLogEntry.entity_id == "11")).all()
        assert entry.actor_user_id is None
        assert entry.timestamp is not None


def test_explicit_clinic_wins_over_request_context(audit_engine: Engine) -> None:
    set_request_context(7, 1)

    stamped = _record(AuditAction.CREATE_USER, "user", 12, organization_id=3)
    fallback = _record(AuditAction.CREATE_ROLE, "role", 13)

    with Session(audit_engine) as session:
        assert session.get(AuditLogEntry, stamped).organization_id == 3  # type: ignore[union-attr]
        assert session.get(AuditLogEntry, fallback).organization_id == 7  # type: ignore[union-attr]


def test_clinic_scoped_reader_only_sees_own_clinic(audit_engine: Engine) -> None:
    own = _record(AuditAction.CREATE_USER, "user", 21, organization_id=1)
    _record(AuditAction.CREATE_USER, "user", 22, organization_id=2)
    _record(AuditAction.CREATE_PERMISSION, "permission", 23)
    service = AuditLogService()

    assert [item.id for item in service.list_entries(_reader())] == [own]
    assert service.list_entries(_reader(), entity_id="22") == []
    assert service.list_entries(_reader(active_organization_id=None)) == []
    assert len(service.list_entries(_reader(tenant_scope_exempt=True))) == 3
