from __future__ import annotations

from sqlmodel import Session, select

from clinic_authz.domain.errors import NotFoundError, OrganizationNotFoundError, ValidationError
from clinic_authz.domain.models import Organization, Patient, PatientCreate
from clinic_authz.domain.principal import Principal
from clinic_authz.infra.db import get_engine
from clinic_authz.services.authorization_service import AuthorizationService


class PatientService:
    """Tenant-scoped clinical records; every read goes through scope_filter."""

    def __init__(self, authz: AuthorizationService | None = None) -> None:
        self._authz = authz or AuthorizationService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_patient(self, actor: Principal, payload: PatientCreate) -> Patient:
        organization_id = payload.organization_id
        if organization_id is None:
            organization_id = actor.active_organization_id
        if organization_id is None:
            raise ValidationError("no active organization for new patient")
        if not self._authz.can_access_organization(actor, organization_id):
            raise OrganizationNotFoundError(organization_id)

        with self._session() as session:
            if session.get(Organization, organization_id) is None:
                raise OrganizationNotFoundError(organization_id)
            patient = Patient(
                organization_id=organization_id,
                first_name=payload.first_name,
                last_name=payload.last_name,
            )
            session.add(patient)
            session.commit()
            session.refresh(patient)
            return patient

    def list_patients(self, actor: Principal) -> list[Patient]:
        with self._session() as session:
            statement = select(Patient).where(self._authz.scope_filter(actor, Patient)).order_by(Patient.id)
            return list(session.exec(statement).all())

    def get_patient(self, actor: Principal, patient_id: int) -> Patient:
        with self._session() as session:
            patient = session.exec(
                select(Patient).where(self._authz.scope_filter(actor, Patient, Patient.id == patient_id))
            ).first()
            if patient is None:
                raise NotFoundError("patient not found")
            return patient
