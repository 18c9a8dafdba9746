from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from clinic_authz.api.deps import handle_service_error
from clinic_authz.domain.errors import AuthzError
from clinic_authz.domain.models import BootstrapRead, BootstrapRequest
from clinic_authz.services.bootstrap_service import BootstrapService

router = APIRouter()


def get_bootstrap_service() -> BootstrapService:
    return BootstrapService()


Service = Annotated[BootstrapService, Depends(get_bootstrap_service)]


@router.post("", response_model=BootstrapRead, status_code=status.HTTP_201_CREATED)
def bootstrap(payload: BootstrapRequest, service: Service) -> BootstrapRead:
    try:
        result = service.bootstrap(payload)
    except AuthzError as exc:
        handle_service_error(exc)
    return BootstrapRead.model_validate(result)
