from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from clinic_authz.domain.models import as_utc, now_utc


class Principal(BaseModel):
    """The acting user as seen by the resolution engine.

    Built fresh from storage for every request; never taken from token claims.
    `organization_role_id` is the role override of the membership that supplied
    `active_organization_id`, if any.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    legacy_role: str
    role_id: int | None = None
    organization_role_id: int | None = None
    organization_id: int | None = None
    active_organization_id: int | None = None
    is_active: bool = True
    locked_until: datetime | None = None
    tenant_scope_exempt: bool = False

    @property
    def effective_role_id(self) -> int | None:
        if self.organization_role_id is not None:
            return self.organization_role_id
        return self.role_id

    def is_locked(self, at: datetime | None = None) -> bool:
        if self.locked_until is None:
            return False
        return as_utc(self.locked_until) > (at or now_utc())

    def is_blocked(self, at: datetime | None = None) -> bool:
        return not self.is_active or self.is_locked(at)
