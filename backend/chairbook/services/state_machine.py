from typing import Dict, FrozenSet, Iterable

from chairbook.services.errors import InvalidTransitionError
from chairbook.services.providers import FREELANCER, SHOP_OWNER, STAFF, Provider

PENDING = "pending"
ASSIGNED = "assigned"
REASSIGNED = "reassigned"
RESCHEDULED = "rescheduled"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "noShow"
REJECTED = "rejected"
FREELANCER_REJECTED = "freelancer_rejected"
REJECTED_BARBER = "rejected_barber"
SHOP_OWNER_REJECTED = "shop_owner_rejected"

ALL_STATUSES = frozenset(
    {
        PENDING,
        ASSIGNED,
        REASSIGNED,
        RESCHEDULED,
        CONFIRMED,
        COMPLETED,
        CANCELLED,
        NO_SHOW,
        REJECTED,
        FREELANCER_REJECTED,
        REJECTED_BARBER,
        SHOP_OWNER_REJECTED,
    }
)
INITIAL_STATUS = PENDING
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, NO_SHOW})
# Statuses that occupy their slot. Kept in step with ACTIVE_STATUS_SQL in the database module.
ACTIVE_STATUSES = frozenset({PENDING, ASSIGNED, CONFIRMED, REASSIGNED, RESCHEDULED})
REJECTION_STATUSES = frozenset({REJECTED, FREELANCER_REJECTED, REJECTED_BARBER, SHOP_OWNER_REJECTED})

PROVIDER_RESPONSE_SOURCES = frozenset({PENDING, ASSIGNED, RESCHEDULED, REASSIGNED, REJECTED_BARBER, FREELANCER_REJECTED})
APPROVAL_SOURCES = frozenset({PENDING, RESCHEDULED})
REASSIGN_SOURCES = frozenset({REJECTED, REJECTED_BARBER, PENDING, ASSIGNED, RESCHEDULED})
AUTO_RESCHEDULE_EXCLUDED = frozenset(
    {CONFIRMED, COMPLETED, CANCELLED, NO_SHOW, REJECTED, FREELANCER_REJECTED, REJECTED_BARBER, RESCHEDULED}
)
AUTO_RESCHEDULE_SOURCES = ALL_STATUSES - AUTO_RESCHEDULE_EXCLUDED

CUSTOMER = "customer"
PROVIDER = "provider"
OWNER = "shop_owner"
SYSTEM = "system"
ACTORS = (CUSTOMER, PROVIDER, OWNER, SYSTEM)


def _build(*rules: tuple) -> Dict[str, FrozenSet[str]]:
    table: Dict[str, set] = {}
    for sources, targets in rules:
        for source in sources:
            table.setdefault(source, set()).update(targets)
    return {source: frozenset(targets) for source, targets in table.items()}


TRANSITIONS: Dict[str, Dict[str, FrozenSet[str]]] = {
    CUSTOMER: _build(({PENDING}, {CANCELLED})),
    PROVIDER: _build(
        (PROVIDER_RESPONSE_SOURCES, {CONFIRMED} | REJECTION_STATUSES),
    ),
    OWNER: _build(
        (APPROVAL_SOURCES, {CONFIRMED, ASSIGNED, PENDING}),
        (REASSIGN_SOURCES, {CONFIRMED, REASSIGNED}),
    ),
    SYSTEM: _build(
        ({PENDING}, {ASSIGNED, CONFIRMED}),
        (AUTO_RESCHEDULE_SOURCES, {RESCHEDULED}),
        ({CONFIRMED}, {COMPLETED, NO_SHOW}),
    ),
}


def allowed_targets(actor: str, current: str) -> FrozenSet[str]:
    return TRANSITIONS.get(actor, {}).get(current, frozenset())


def can_transition(actor: str, current: str, target: str) -> bool:
    return target in allowed_targets(actor, current)


def assert_transition(actor: str, current: str, target: str) -> str:
    if not can_transition(actor, current, target):
        raise InvalidTransitionError(current=current, target=target, actor=actor)
    return target


def assert_source(actor: str, current: str, sources: Iterable[str], target: str) -> None:
    """Reject a use-case whose own source set does not include ``current``."""
    if current not in sources:
        raise InvalidTransitionError(current=current, target=target, actor=actor)


def rejection_status_for(provider: Provider) -> str:
    if provider.kind == SHOP_OWNER:
        return SHOP_OWNER_REJECTED
    if provider.kind == FREELANCER:
        return FREELANCER_REJECTED
    if provider.kind == STAFF and provider.is_shop_bound:
        return REJECTED_BARBER
    return REJECTED


def approval_status_for(service_type: str, provider: Provider) -> str:
    if service_type == "shopBased":
        return CONFIRMED
    if provider.kind == FREELANCER:
        return ASSIGNED
    return PENDING
