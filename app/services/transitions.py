# FILE: app/services/transitions.py
"""
Status transition tables for prescriptions and orders.

can_transition() is pure: same (kind, from, to, role) -> same answer, no I/O.
"""
from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional, Union

from app.core.errors import InvalidTransition
from app.core.rbac import Role, as_role
from app.models.order import OrderStatus
from app.models.prescription import PrescriptionStatus


class EntityKind(str, enum.Enum):
    PRESCRIPTION = "prescription"
    ORDER = "order"


P = PrescriptionStatus
O = OrderStatus

PRESCRIPTION_EDGES: Dict[str, FrozenSet[str]] = {
    P.SUBMITTED.value: frozenset({P.REVIEWING.value, P.APPROVED.value,
                                  P.CANCELLED.value, P.SUSPENDED.value}),
    P.REVIEWING.value: frozenset({P.APPROVED.value, P.REJECTED.value,
                                  P.SUSPENDED.value}),
    P.APPROVED.value: frozenset({P.CANCELLED.value}),
    P.REJECTED.value: frozenset({P.SUBMITTED.value}),
    P.SUSPENDED.value: frozenset({P.REVIEWING.value, P.APPROVED.value,
                                  P.REJECTED.value}),
    P.CANCELLED.value: frozenset(),
}

_REVIEW_TARGETS = frozenset({P.REVIEWING.value, P.APPROVED.value,
                             P.REJECTED.value, P.SUSPENDED.value})

PRESCRIPTION_ROLE_TARGETS: Dict[Role, FrozenSet[str]] = {
    Role.CUSTOMER: frozenset({P.CANCELLED.value}),
    Role.PRESCRIPTION_READER: _REVIEW_TARGETS,
    Role.PHARMACY: _REVIEW_TARGETS,
    Role.ADMIN: _REVIEW_TARGETS | {P.CANCELLED.value},
}

ORDER_EDGES: Dict[str, FrozenSet[str]] = {
    O.PENDING.value: frozenset({O.CONFIRMED.value, O.CANCELLED.value}),
    O.CONFIRMED.value: frozenset({O.PREPARING.value, O.CANCELLED.value}),
    O.PREPARING.value: frozenset({O.READY.value, O.CANCELLED.value}),
    O.READY.value: frozenset({O.OUT_FOR_DELIVERY.value}),
    O.OUT_FOR_DELIVERY.value: frozenset({O.DELIVERED.value}),
    O.DELIVERED.value: frozenset({O.REFUNDED.value}),
    O.CANCELLED.value: frozenset(),
    O.REFUNDED.value: frozenset(),
}

# customer may only cancel, and only before preparation starts
CUSTOMER_CANCELLABLE: FrozenSet[str] = frozenset(
    {O.PENDING.value, O.CONFIRMED.value})

_ALL_ORDER_TARGETS = frozenset(s.value for s in OrderStatus)

ORDER_ROLE_TARGETS: Dict[Role, FrozenSet[str]] = {
    Role.CUSTOMER: frozenset({O.CANCELLED.value}),
    Role.PHARMACY: _ALL_ORDER_TARGETS,
    Role.VENDOR: _ALL_ORDER_TARGETS,
    Role.ADMIN: _ALL_ORDER_TARGETS,
}

TERMINAL_PRESCRIPTION = frozenset({P.CANCELLED.value})
TERMINAL_ORDER = frozenset({O.CANCELLED.value, O.REFUNDED.value})


def _val(x: Union[str, enum.Enum, None]) -> Optional[str]:
    if x is None:
        return None
    if isinstance(x, enum.Enum):
        return str(x.value)
    return str(x)


def can_transition(kind: Union[EntityKind, str], from_status, to_status,
                   role) -> bool:
    kind = EntityKind(_val(kind))
    frm = _val(from_status)
    to = _val(to_status)
    r = as_role(role)
    if r is None:
        return False

    if kind == EntityKind.PRESCRIPTION:
        edges, role_targets = PRESCRIPTION_EDGES, PRESCRIPTION_ROLE_TARGETS
    else:
        edges, role_targets = ORDER_EDGES, ORDER_ROLE_TARGETS

    if to not in edges.get(frm, frozenset()):
        return False
    if to not in role_targets.get(r, frozenset()):
        return False

    if (kind == EntityKind.ORDER and r == Role.CUSTOMER
            and frm not in CUSTOMER_CANCELLABLE):
        return False
    return True


def ensure_transition(kind: Union[EntityKind, str], from_status, to_status,
                      role) -> None:
    if not can_transition(kind, from_status, to_status, role):
        raise InvalidTransition(
            f"Cannot move {_val(kind)} from {_val(from_status)} to "
            f"{_val(to_status)} as {_val(as_role(role)) or role}.",
            details={
                "from": _val(from_status),
                "to": _val(to_status),
                "role": _val(as_role(role)) or _val(role),
            },
        )
