from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from app.core.errors import Unauthorized


class Role(str, Enum):
    CUSTOMER = "customer"
    PRESCRIPTION_READER = "prescription-reader"
    PHARMACY = "pharmacy"
    VENDOR = "vendor"
    ADMIN = "admin"


REVIEWER_ROLES: FrozenSet[Role] = frozenset(
    {Role.PRESCRIPTION_READER, Role.PHARMACY, Role.ADMIN})
FULFILLER_ROLES: FrozenSet[Role] = frozenset({Role.PHARMACY, Role.VENDOR})


class Capability(str, Enum):
    PRESCRIPTION_SUBMIT = "prescription.submit"
    PRESCRIPTION_REVIEW = "prescription.review"
    PRESCRIPTION_VIEW_ALL = "prescription.view_all"
    ORDER_CREATE = "order.create"
    ORDER_FULFIL = "order.fulfil"
    ORDER_VIEW_ALL = "order.view_all"
    RETURN_REQUEST = "return.request"
    RETURN_PROCESS = "return.process"
    CREDIT_GRANT = "credit.grant"


# Closed role -> capability table; every role gate goes through here.
CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.CUSTOMER: frozenset({
        Capability.PRESCRIPTION_SUBMIT,
        Capability.ORDER_CREATE,
        Capability.RETURN_REQUEST,
    }),
    Role.PRESCRIPTION_READER: frozenset({
        Capability.PRESCRIPTION_REVIEW,
        Capability.PRESCRIPTION_VIEW_ALL,
    }),
    Role.PHARMACY: frozenset({
        Capability.PRESCRIPTION_REVIEW,
        Capability.PRESCRIPTION_VIEW_ALL,
        Capability.ORDER_FULFIL,
    }),
    Role.VENDOR: frozenset({
        Capability.ORDER_FULFIL,
    }),
    Role.ADMIN: frozenset(Capability),
}


@dataclass(frozen=True)
class Actor:
    """
    Already-authenticated caller. For pharmacies / vendors id is also the fulfiller id.
    """
    id: int
    role: Role
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_fulfiller(self) -> bool:
        return self.role in FULFILLER_ROLES


def as_role(x: Any) -> Optional[Role]:
    """
    Normalize role safely: Role -> Role, "pharmacy" -> Role.PHARMACY, junk -> None.
    """
    if isinstance(x, Role):
        return x
    if isinstance(x, str):
        try:
            return Role(x.strip().lower())
        except ValueError:
            return None
    return None


def has_capability(actor: Any, capability: Capability) -> bool:
    role = as_role(getattr(actor, "role", None))
    if role is None:
        return False
    return capability in CAPABILITIES.get(role, frozenset())


def require_capability(actor: Any,
                       capability: Capability,
                       *,
                       message: Optional[str] = None) -> None:
    if has_capability(actor, capability):
        return
    raise Unauthorized(message or
                       "You do not have permission to perform this action.")


def require_any_role(actor: Any,
                     roles: Iterable[Role],
                     *,
                     message: Optional[str] = None) -> None:
    role = as_role(getattr(actor, "role", None))
    if role is not None and role in set(roles):
        return
    raise Unauthorized(message or
                       "You do not have permission to perform this action.")
