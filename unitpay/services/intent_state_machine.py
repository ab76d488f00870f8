"""Payment intent state machine. Pure logic, no DB dependency.

Defines the canonical status vocabulary, allowed transitions, actors,
the status history hash chain, and helpers for validation, action
discovery and forward-path computation used by reconciliation.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import StrEnum

from unitpay.core.errors import InvalidTransitionError, ValidationError


class IntentStatus(StrEnum):
    CREATED = "created"
    CLAIMED = "claimed"
    PAID = "paid"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"
    SETTLEMENT_FAILED = "settlement_failed"


class IntentAction(StrEnum):
    CLAIM = "claim"
    MARK_PAID = "mark_paid"
    CONFIRM = "confirm"
    SETTLE = "settle"
    CANCEL = "cancel"
    EXPIRE = "expire"
    FAIL = "fail"
    SETTLEMENT_FAIL = "settlement_fail"
    REFUND = "refund"


class Actor(StrEnum):
    USER = "user"
    LP = "lp"
    SYSTEM = "system"


# Superseded vocabularies still seen in inbound filters
STATUS_ALIASES: dict[str, IntentStatus] = {
    "processing": IntentStatus.CLAIMED,
    "completed": IntentStatus.SETTLED,
}

_SYSTEM = frozenset({Actor.SYSTEM})

# Mapping: (current_status, action) → (new_status, frozenset_of_allowed_actors)
TRANSITIONS: dict[tuple[IntentStatus, IntentAction], tuple[IntentStatus, frozenset[Actor]]] = {
    # Main line
    (IntentStatus.CREATED, IntentAction.CLAIM): (
        IntentStatus.CLAIMED,
        frozenset({Actor.LP}),
    ),
    (IntentStatus.CLAIMED, IntentAction.MARK_PAID): (
        IntentStatus.PAID,
        frozenset({Actor.LP, Actor.SYSTEM}),
    ),
    (IntentStatus.PAID, IntentAction.CONFIRM): (
        IntentStatus.CONFIRMED,
        frozenset({Actor.USER, Actor.SYSTEM}),
    ),
    (IntentStatus.CONFIRMED, IntentAction.SETTLE): (IntentStatus.SETTLED, _SYSTEM),
    # Cancellation, pre-lock only (lock check lives in the store)
    (IntentStatus.CREATED, IntentAction.CANCEL): (
        IntentStatus.CANCELLED,
        frozenset({Actor.USER}),
    ),
    (IntentStatus.CLAIMED, IntentAction.CANCEL): (
        IntentStatus.CANCELLED,
        frozenset({Actor.USER, Actor.LP}),
    ),
    # Expiration
    (IntentStatus.CREATED, IntentAction.EXPIRE): (IntentStatus.EXPIRED, _SYSTEM),
    (IntentStatus.CLAIMED, IntentAction.EXPIRE): (IntentStatus.EXPIRED, _SYSTEM),
    # Failure
    (IntentStatus.CLAIMED, IntentAction.FAIL): (IntentStatus.FAILED, _SYSTEM),
    (IntentStatus.PAID, IntentAction.FAIL): (IntentStatus.FAILED, _SYSTEM),
    (IntentStatus.CONFIRMED, IntentAction.SETTLEMENT_FAIL): (
        IntentStatus.SETTLEMENT_FAILED,
        _SYSTEM,
    ),
    (IntentStatus.SETTLEMENT_FAILED, IntentAction.SETTLE): (IntentStatus.SETTLED, _SYSTEM),
    # Refund, compensating
    (IntentStatus.CLAIMED, IntentAction.REFUND): (IntentStatus.REFUNDED, _SYSTEM),
    (IntentStatus.PAID, IntentAction.REFUND): (IntentStatus.REFUNDED, _SYSTEM),
    (IntentStatus.CONFIRMED, IntentAction.REFUND): (IntentStatus.REFUNDED, _SYSTEM),
    (IntentStatus.SETTLED, IntentAction.REFUND): (IntentStatus.REFUNDED, _SYSTEM),
    (IntentStatus.SETTLEMENT_FAILED, IntentAction.REFUND): (IntentStatus.REFUNDED, _SYSTEM),
}

TERMINAL_STATUSES: frozenset[IntentStatus] = frozenset({
    IntentStatus.SETTLED,
    IntentStatus.CANCELLED,
    IntentStatus.EXPIRED,
    IntentStatus.FAILED,
    IntentStatus.REFUNDED,
})

# Statuses holding LP quota
QUOTA_HOLDING_STATUSES: frozenset[IntentStatus] = frozenset({
    IntentStatus.CLAIMED,
    IntentStatus.PAID,
    IntentStatus.CONFIRMED,
    IntentStatus.SETTLEMENT_FAILED,
})

# Statuses after which quota must have been returned
QUOTA_RELEASING_STATUSES: frozenset[IntentStatus] = frozenset({
    IntentStatus.SETTLED,
    IntentStatus.CANCELLED,
    IntentStatus.EXPIRED,
    IntentStatus.FAILED,
    IntentStatus.REFUNDED,
})

MAIN_LINE: tuple[IntentStatus, ...] = (
    IntentStatus.CREATED,
    IntentStatus.CLAIMED,
    IntentStatus.PAID,
    IntentStatus.CONFIRMED,
    IntentStatus.SETTLED,
)

_MAIN_LINE_ACTIONS: dict[IntentStatus, IntentAction] = {
    IntentStatus.CLAIMED: IntentAction.CLAIM,
    IntentStatus.PAID: IntentAction.MARK_PAID,
    IntentStatus.CONFIRMED: IntentAction.CONFIRM,
    IntentStatus.SETTLED: IntentAction.SETTLE,
}


def parse_status(value: str) -> IntentStatus:
    """Parse a status filter, accepting superseded aliases."""
    value = value.strip().lower()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    try:
        return IntentStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown status: {value!r}")


def validate_transition(
    current: str, action: str, actor: str,
) -> IntentStatus:
    """Validate and return the new status for a transition.

    Raises InvalidTransitionError if the transition is not allowed.
    """
    try:
        current_status = IntentStatus(current)
        intent_action = IntentAction(action)
        actor_enum = Actor(actor)
    except ValueError:
        raise InvalidTransitionError(current, action, actor)

    key = (current_status, intent_action)
    if key not in TRANSITIONS:
        raise InvalidTransitionError(current, action, actor)

    new_status, allowed_actors = TRANSITIONS[key]
    if actor_enum not in allowed_actors:
        raise InvalidTransitionError(current, action, actor)

    return new_status


def get_available_actions(current: str, actor: str) -> list[str]:
    """Return list of action names available for the given status and actor."""
    try:
        current_status = IntentStatus(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    actions: list[str] = []
    for (status, action), (_, allowed_actors) in TRANSITIONS.items():
        if status == current_status and actor_enum in allowed_actors:
            actions.append(action.value)
    return actions


def main_line_rank(status: str) -> int | None:
    """Position on the main line, or None for side-exit statuses."""
    try:
        return MAIN_LINE.index(IntentStatus(status))
    except ValueError:
        return None


def forward_path(current: str, target: str) -> list[IntentAction]:
    """Actions that walk ``current`` forward to ``target``.

    Returns an empty list when already there. Raises InvalidTransitionError
    when the target is behind the current status or no legal path exists.
    """
    current_status = IntentStatus(current)
    target_status = IntentStatus(target)
    if current_status == target_status:
        return []

    if target_status == IntentStatus.REFUNDED:
        if (current_status, IntentAction.REFUND) in TRANSITIONS:
            return [IntentAction.REFUND]
        raise InvalidTransitionError(current, IntentAction.REFUND, Actor.SYSTEM)

    if current_status == IntentStatus.SETTLEMENT_FAILED and target_status == IntentStatus.SETTLED:
        return [IntentAction.SETTLE]

    start = main_line_rank(current_status)
    end = main_line_rank(target_status)
    if start is None or end is None or end < start:
        raise InvalidTransitionError(current, f"advance_to_{target}", Actor.SYSTEM)
    return [_MAIN_LINE_ACTIONS[status] for status in MAIN_LINE[start + 1:end + 1]]


def is_monotonic(statuses: list[str]) -> bool:
    """True when every consecutive pair in ``statuses`` is a legal transition."""
    for previous, following in zip(statuses, statuses[1:]):
        if previous == following:
            continue
        if not any(
            src == previous and dst == following
            for (src, _), (dst, _) in TRANSITIONS.items()
        ):
            return False
    return True


# ---------------------------------------------------------------------------
# Status history
# ---------------------------------------------------------------------------


def _entry_hash(entry: dict) -> str:
    payload = {k: v for k, v in entry.items() if k != "hash"}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_history_entry(
    history: list[dict],
    status: str,
    *,
    actor: str,
    note: str = "",
    tx_hash: str | None = None,
    network: str | None = None,
    at: datetime | None = None,
) -> dict:
    """Build the next hash-chained entry for ``history`` (not appended)."""
    entry = {
        "status": str(status),
        "timestamp": (at or datetime.now(timezone.utc)).isoformat(),
        "note": note,
        "tx_hash": tx_hash,
        "network": network,
        "actor": str(actor),
        "previous_hash": history[-1]["hash"] if history else None,
    }
    entry["hash"] = _entry_hash(entry)
    return entry


def verify_history(history: list[dict]) -> bool:
    """Re-derive the hash chain; False if any entry was altered or reordered."""
    previous = None
    for entry in history:
        if entry.get("previous_hash") != previous:
            return False
        if entry.get("hash") != _entry_hash(entry):
            return False
        previous = entry["hash"]
    return True
