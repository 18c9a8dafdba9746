from __future__ import annotations

from collections.abc import Iterable


class AuthzError(Exception):
    code = "AuthzError"


class NotFoundError(AuthzError):
    code = "NotFound"


class RoleNotFoundError(NotFoundError):
    code = "RoleNotFound"

    def __init__(self, role_id: int) -> None:
        super().__init__(f"role {role_id} not found")
        self.role_id = role_id


class OrganizationNotFoundError(NotFoundError):
    code = "OrganizationNotFound"

    def __init__(self, organization_id: int) -> None:
        super().__init__(f"organization {organization_id} not found")
        self.organization_id = organization_id


class ConflictError(AuthzError):
    code = "Conflict"


class DuplicateNameError(ConflictError):
    code = "DuplicateName"

    def __init__(self, entity_type: str, name: str) -> None:
        super().__init__(f"{entity_type} name already exists: {name}")
        self.entity_type = entity_type
        self.name = name


class RoleInUseError(ConflictError):
    code = "RoleInUse"

    def __init__(self, role_id: int, user_count: int, membership_count: int) -> None:
        super().__init__(
            f"role {role_id} is still assigned to {user_count} user(s) "
            f"and {membership_count} organization membership(s)"
        )
        self.role_id = role_id
        self.user_count = user_count
        self.membership_count = membership_count


class ValidationError(AuthzError):
    code = "Validation"


class UnknownPermissionError(ValidationError):
    code = "UnknownPermission"

    def __init__(self, permission_ids: Iterable[int]) -> None:
        self.permission_ids = sorted(set(permission_ids))
        super().__init__(f"unknown permission id(s): {', '.join(str(item) for item in self.permission_ids)}")


class ForbiddenError(AuthzError):
    code = "Forbidden"


class PrincipalError(AuthzError):
    code = "Principal"


class PrincipalNotFoundError(PrincipalError):
    code = "PrincipalNotFound"

    def __init__(self, user_id: int) -> None:
        super().__init__(f"user {user_id} not found")
        self.user_id = user_id


class PrincipalInactiveError(PrincipalError):
    code = "PrincipalInactive"

    def __init__(self, user_id: int) -> None:
        super().__init__(f"user {user_id} is inactive")
        self.user_id = user_id


class AuditWriteError(AuthzError):
    code = "AuditWriteError"
