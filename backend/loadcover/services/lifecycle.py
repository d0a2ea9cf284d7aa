"""Transition tables for load, check-call and fall-off lifecycles."""
from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar

from loadcover.models.coverage import CheckCallStatus, FallOffStatus, LoadStatus

S = TypeVar("S", bound=Enum)


class InvalidTransitionError(ValueError):
    """Raised when a lifecycle change is not present in the transition table."""

    def __init__(self, entity: str, current: Enum, target: Enum, allowed: frozenset) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid {entity} transition {current.value} -> {target.value}. "
            f"Allowed: {sorted(s.value for s in allowed)}"
        )


_IN_FLIGHT_FORWARD = frozenset(
    {
        LoadStatus.AT_PICKUP,
        LoadStatus.LOADED,
        LoadStatus.IN_TRANSIT,
        LoadStatus.AT_DELIVERY,
        LoadStatus.DELIVERED,
    }
)

LOAD_TRANSITIONS: Mapping[LoadStatus, frozenset] = {
    LoadStatus.POSTED: frozenset({LoadStatus.TENDERED, LoadStatus.BOOKED, LoadStatus.CANCELLED}),
    LoadStatus.TENDERED: frozenset({LoadStatus.POSTED, LoadStatus.BOOKED, LoadStatus.CANCELLED}),
    LoadStatus.BOOKED: frozenset(
        {LoadStatus.CONFIRMED, LoadStatus.DISPATCHED, LoadStatus.POSTED, LoadStatus.CANCELLED}
    )
    | _IN_FLIGHT_FORWARD,
    LoadStatus.CONFIRMED: frozenset({LoadStatus.DISPATCHED, LoadStatus.POSTED, LoadStatus.CANCELLED})
    | _IN_FLIGHT_FORWARD,
    LoadStatus.DISPATCHED: frozenset({LoadStatus.POSTED, LoadStatus.CANCELLED}) | _IN_FLIGHT_FORWARD,
    LoadStatus.AT_PICKUP: frozenset(
        {
            LoadStatus.POSTED,
            LoadStatus.LOADED,
            LoadStatus.IN_TRANSIT,
            LoadStatus.AT_DELIVERY,
            LoadStatus.DELIVERED,
        }
    ),
    LoadStatus.LOADED: frozenset({LoadStatus.IN_TRANSIT, LoadStatus.AT_DELIVERY, LoadStatus.DELIVERED}),
    LoadStatus.IN_TRANSIT: frozenset({LoadStatus.AT_DELIVERY, LoadStatus.DELIVERED}),
    LoadStatus.AT_DELIVERY: frozenset({LoadStatus.DELIVERED}),
    LoadStatus.DELIVERED: frozenset({LoadStatus.COMPLETED}),
    LoadStatus.COMPLETED: frozenset(),
    LoadStatus.CANCELLED: frozenset(),
}

# SENT -> SENT is the single retry step.
CHECK_CALL_TRANSITIONS: Mapping[CheckCallStatus, frozenset] = {
    CheckCallStatus.PENDING: frozenset({CheckCallStatus.SENT}),
    CheckCallStatus.SENT: frozenset(
        {CheckCallStatus.SENT, CheckCallStatus.RESPONDED, CheckCallStatus.ESCALATED}
    ),
    CheckCallStatus.RESPONDED: frozenset(),
    CheckCallStatus.ESCALATED: frozenset(),
}

FALL_OFF_TRANSITIONS: Mapping[FallOffStatus, frozenset] = {
    FallOffStatus.ACTIVE: frozenset({FallOffStatus.RECOVERED}),
    FallOffStatus.RECOVERED: frozenset(),
}


def _ensure(entity: str, table: Mapping[S, frozenset], current: S, target: S) -> S:
    allowed = table.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(entity, current, target, allowed)
    return target


def ensure_load_transition(current: LoadStatus, target: LoadStatus) -> LoadStatus:
    if current == target:
        return target
    return _ensure("load", LOAD_TRANSITIONS, current, target)


def ensure_check_call_transition(current: CheckCallStatus, target: CheckCallStatus) -> CheckCallStatus:
    return _ensure("check-call", CHECK_CALL_TRANSITIONS, current, target)


def ensure_fall_off_transition(current: FallOffStatus, target: FallOffStatus) -> FallOffStatus:
    return _ensure("fall-off", FALL_OFF_TRANSITIONS, current, target)
