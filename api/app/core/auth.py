from dataclasses import dataclass
from enum import Enum


class AdminRole(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    CAMPUS_ADMIN = "CAMPUS_ADMIN"
    DEPT_ADMIN = "DEPT_ADMIN"


STUDENT_ROLE = "student"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None
    campus_id: int | None = None
    department: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


@dataclass(frozen=True, slots=True)
class QueryScope:
    """Which grievances an admin may see: ``None`` fields are not filtered."""

    campus_id: int | None = None
    department: str | None = None

    @property
    def unrestricted(self) -> bool:
        return self.campus_id is None and self.department is None


def resolve_query_scope(principal: Principal) -> QueryScope:
    try:
        role = AdminRole(principal.role)
    except ValueError as exc:
        raise PermissionError(f"role {principal.role!r} has no grievance scope") from exc

    if role is AdminRole.SUPER_ADMIN:
        return QueryScope()

    if principal.campus_id is None:
        raise PermissionError(f"{role.value} requires a campus assignment")
    if role is AdminRole.CAMPUS_ADMIN:
        return QueryScope(campus_id=principal.campus_id)

    if not principal.department:
        raise PermissionError(f"{role.value} requires a department assignment")
    return QueryScope(campus_id=principal.campus_id, department=principal.department)
