from dataclasses import dataclass, field
from enum import Enum

from fastapi import HTTPException, Request, status


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    LEAD = "LEAD"
    EMPLOYEE = "EMPLOYEE"


class Capability(str, Enum):
    BYPASS_GEOFENCE = "BYPASS_GEOFENCE"
    OVERRIDE_PHOTO_REQUIREMENT = "OVERRIDE_PHOTO_REQUIREMENT"
    FORCE_COMPLETE = "FORCE_COMPLETE"
    TRANSFER_ANY = "TRANSFER_ANY"
    CANCEL_TASKS = "CANCEL_TASKS"
    MANAGE_STORE_TASKS = "MANAGE_STORE_TASKS"


ADMINISTRATIVE_CAPABILITIES = frozenset(Capability)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: ADMINISTRATIVE_CAPABILITIES,
    Role.MANAGER: ADMINISTRATIVE_CAPABILITIES,
    Role.LEAD: frozenset(),
    Role.EMPLOYEE: frozenset(),
}


def capabilities_for(role: Role) -> frozenset[Capability]:
    return ROLE_CAPABILITIES.get(role, frozenset())


@dataclass
class Principal:
    id: int
    username: str
    role: Role
    store_id: int | None
    active: bool
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def build_principal(*, id: int, username: str, role: Role, store_id: int | None, active: bool = True) -> Principal:
    return Principal(
        id=id,
        username=username,
        role=role,
        store_id=store_id,
        active=active,
        capabilities=capabilities_for(role),
    )


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def is_admin_role(role: Role) -> bool:
    return role in {Role.ADMIN, Role.MANAGER}


def assert_store_scope(principal: Principal, target_store_id: int) -> None:
    if is_admin_role(principal.role):
        return
    if principal.store_id != target_store_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
