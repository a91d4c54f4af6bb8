from __future__ import annotations

from app.models import PurchaseOrderStatus as S

LEGACY_POLICY = 'legacy'
STRICT_POLICY = 'strict'

# Legacy rules are a blacklist: anything not listed here is allowed,
# including Delivered -> Cancelled and Delivered -> Returned.
FORBIDDEN_TRANSITIONS: dict[S, frozenset[S]] = {
    S.DELIVERED: frozenset({S.DRAFT, S.PENDING, S.CONFIRMED, S.SHIPPED}),
    S.CANCELLED: frozenset({S.DRAFT, S.PENDING, S.CONFIRMED, S.SHIPPED, S.DELIVERED, S.RETURNED}),
    S.RETURNED: frozenset({S.DRAFT, S.PENDING, S.CONFIRMED, S.SHIPPED}),
}

ALLOWED_TRANSITIONS: dict[S, frozenset[S]] = {
    S.DRAFT: frozenset({S.PENDING, S.CONFIRMED, S.CANCELLED}),
    S.PENDING: frozenset({S.DRAFT, S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.RETURNED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.RETURNED}),
    S.CANCELLED: frozenset(),
    S.RETURNED: frozenset(),
}

EDIT_LOCKED_STATUSES = frozenset({S.DELIVERED, S.CANCELLED})
DELETE_LOCKED_STATUSES = frozenset({S.SHIPPED, S.DELIVERED})


def parse_status(value: str | S | None) -> S | None:
    if isinstance(value, S):
        return value
    raw = (value or '').strip()
    for member in S:
        if raw.lower() == member.value.lower():
            return member
    return None


def is_transition_allowed(current: S, new: S, policy: str = LEGACY_POLICY) -> bool:
    if policy == STRICT_POLICY:
        return new == current or new in ALLOWED_TRANSITIONS[current]
    if policy != LEGACY_POLICY:
        raise ValueError(f'Unknown status transition policy: {policy}')
    return new not in FORBIDDEN_TRANSITIONS.get(current, frozenset())


def allowed_next_statuses(current: S, policy: str = LEGACY_POLICY) -> list[S]:
    return [status for status in S if is_transition_allowed(current, status, policy)]
