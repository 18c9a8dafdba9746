from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from clinic_authz.api.deps import CurrentPrincipal, handle_service_error, require_perm
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import PatientCreate, PatientRead
from clinic_authz.domain.permissions import PERM_CREATE_PATIENTS, PERM_VIEW_PATIENTS
from clinic_authz.services.patient_service import PatientService

router = APIRouter()


def get_patient_service() -> PatientService:
    return PatientService()


Service = Annotated[PatientService, Depends(get_patient_service)]


@router.get(
    "",
    response_model=list[PatientRead],
    dependencies=[Depends(require_perm(PERM_VIEW_PATIENTS))],
)
def list_patients(principal: CurrentPrincipal, service: Service) -> list[PatientRead]:
    return [PatientRead.model_validate(item) for item in service.list_patients(principal)]


@router.post(
    "",
    response_model=PatientRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_CREATE_PATIENTS))],
)
def create_patient(payload: PatientCreate, principal: CurrentPrincipal, service: Service) -> PatientRead:
    try:
        patient = service.create_patient(principal, payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return PatientRead.model_validate(patient)


@router.get(
    "/{patient_id}",
    response_model=PatientRead,
    dependencies=[Depends(require_perm(PERM_VIEW_PATIENTS))],
)
def get_patient(patient_id: int, principal: CurrentPrincipal, service: Service) -> PatientRead:
    try:
        patient = service.get_patient(principal, patient_id)
    except AuthzError as exc:
        handle_service_error(exc)
    return PatientRead.model_validate(patient)
