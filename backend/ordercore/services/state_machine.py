# Overview: Transition tables and the single guard used for every lead and order status write.

"""
Order & Lead State Machine

WHY: An order's legal next statuses depend on how it is fulfilled. A local
rider order goes assigned -> sent_for_delivery; a courier order goes
dispatched -> rto_*; a point-of-sale order is handed over at the counter.
Keeping one table keyed by (channel, from_status) and ONE guard means every
caller gets the same answer, and adding a transition is a one-line change.

RULES (applied by check_transition, in order):
1. Channel and target status must be known (ValidationError otherwise).
2. Channel exclusivity: local-only statuses are never valid for courier or
   POS orders and vice versa, even with an override.
3. A transition listed in the table is allowed.
4. Anything else (terminal exits, moving delivered backward into processing,
   off-table jumps) needs an explicit Override(reason). The override is passed
   into the specific call and recorded in the order's activity trail.
5. Otherwise InvalidTransition(from, to, channel).

The guard is pure: it never touches the database. order_service calls it
inside the same unit of work as the status write.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidTransition, ValidationError


# =============================================================================
# CHANNELS
# =============================================================================

CHANNEL_LOCAL = "inside_local_delivery"
CHANNEL_COURIER = "outside_courier_delivery"
CHANNEL_POS = "point_of_sale"

CHANNELS = (CHANNEL_LOCAL, CHANNEL_COURIER, CHANNEL_POS)


# =============================================================================
# ORDER STATUS CONSTANTS
# =============================================================================

STATUS_INTAKE = "intake"
STATUS_PACKED = "packed"
STATUS_ASSIGNED = "assigned"
STATUS_SENT_FOR_DELIVERY = "sent_for_delivery"
STATUS_REJECTED = "rejected"
STATUS_NEXT_ATTEMPT = "next_attempt"
STATUS_DISPATCHED = "dispatched"
STATUS_REDIRECTED = "redirected"
STATUS_HOLD = "hold"
STATUS_DELIVERED = "delivered"
STATUS_RETURN_RECEIVED = "return_received"
STATUS_REFUND_REQUESTED = "refund_requested"
STATUS_REFUNDED = "refunded"
STATUS_EXCHANGED = "exchanged"
STATUS_CANCELLED = "cancelled"
STATUS_RTO_INITIATED = "rto_initiated"
STATUS_RTO_VERIFICATION_PENDING = "rto_verification_pending"
STATUS_RETURNED = "returned"
STATUS_LOST_IN_TRANSIT = "lost_in_transit"

ORDER_STATUSES = frozenset({
    STATUS_INTAKE, STATUS_PACKED, STATUS_ASSIGNED, STATUS_SENT_FOR_DELIVERY,
    STATUS_REJECTED, STATUS_NEXT_ATTEMPT, STATUS_DISPATCHED, STATUS_REDIRECTED,
    STATUS_HOLD, STATUS_DELIVERED, STATUS_RETURN_RECEIVED, STATUS_REFUND_REQUESTED,
    STATUS_REFUNDED, STATUS_EXCHANGED, STATUS_CANCELLED, STATUS_RTO_INITIATED,
    STATUS_RTO_VERIFICATION_PENDING, STATUS_RETURNED, STATUS_LOST_IN_TRANSIT,
})

TERMINAL_STATUSES = frozenset({
    STATUS_DELIVERED, STATUS_REFUNDED, STATUS_EXCHANGED, STATUS_CANCELLED,
    STATUS_RETURNED, STATUS_LOST_IN_TRANSIT,
})

PROCESSING_STATUSES = frozenset({
    STATUS_INTAKE, STATUS_PACKED, STATUS_ASSIGNED, STATUS_SENT_FOR_DELIVERY, STATUS_DISPATCHED,
})

LOCAL_ONLY_STATUSES = frozenset({
    STATUS_ASSIGNED, STATUS_SENT_FOR_DELIVERY, STATUS_REJECTED, STATUS_NEXT_ATTEMPT,
})

COURIER_ONLY_STATUSES = frozenset({
    STATUS_DISPATCHED, STATUS_RTO_INITIATED, STATUS_RTO_VERIFICATION_PENDING,
})

# Entering one of these means the goods physically left the building.
DEPARTURE_STATUSES = {
    CHANNEL_LOCAL: STATUS_SENT_FOR_DELIVERY,
    CHANNEL_COURIER: STATUS_DISPATCHED,
    CHANNEL_POS: STATUS_DELIVERED,
}

# Statuses an order can only be in once its goods have left on_hand.
# An override can jump past the departure status straight into one of these.
POST_DEPARTURE_STATUSES = frozenset({
    STATUS_DELIVERED, STATUS_REJECTED, STATUS_RETURN_RECEIVED, STATUS_RTO_INITIATED,
    STATUS_RTO_VERIFICATION_PENDING, STATUS_RETURNED, STATUS_LOST_IN_TRANSIT,
    STATUS_REFUND_REQUESTED, STATUS_REFUNDED, STATUS_EXCHANGED,
})


def has_departed(channel: str, status: str) -> bool:
    return status == DEPARTURE_STATUSES.get(channel) or status in POST_DEPARTURE_STATUSES


# =============================================================================
# TRANSITION TABLE
# =============================================================================

def _table(rows: dict[str, set[str]]) -> dict[str, frozenset[str]]:
    return {from_status: frozenset(to) for from_status, to in rows.items()}


ORDER_TRANSITIONS: dict[str, dict[str, frozenset[str]]] = {
    CHANNEL_LOCAL: _table({
        STATUS_INTAKE: {STATUS_PACKED, STATUS_HOLD, STATUS_CANCELLED},
        STATUS_PACKED: {STATUS_ASSIGNED, STATUS_HOLD, STATUS_CANCELLED},
        STATUS_ASSIGNED: {STATUS_SENT_FOR_DELIVERY, STATUS_HOLD, STATUS_CANCELLED, STATUS_PACKED},
        STATUS_SENT_FOR_DELIVERY: {
            STATUS_DELIVERED, STATUS_REJECTED, STATUS_HOLD, STATUS_NEXT_ATTEMPT, STATUS_RETURN_RECEIVED,
        },
        STATUS_REJECTED: {
            STATUS_NEXT_ATTEMPT, STATUS_RETURN_RECEIVED, STATUS_HOLD, STATUS_CANCELLED, STATUS_REDIRECTED,
        },
        STATUS_NEXT_ATTEMPT: {
            STATUS_SENT_FOR_DELIVERY, STATUS_ASSIGNED, STATUS_CANCELLED, STATUS_HOLD, STATUS_REDIRECTED,
        },
        STATUS_HOLD: {STATUS_ASSIGNED, STATUS_PACKED, STATUS_CANCELLED, STATUS_REDIRECTED},
        STATUS_RETURN_RECEIVED: {
            STATUS_RETURNED, STATUS_EXCHANGED, STATUS_REFUND_REQUESTED, STATUS_CANCELLED,
        },
        STATUS_REFUND_REQUESTED: {STATUS_REFUNDED, STATUS_EXCHANGED},
    }),
    CHANNEL_COURIER: _table({
        STATUS_INTAKE: {STATUS_PACKED, STATUS_HOLD, STATUS_CANCELLED},
        STATUS_PACKED: {STATUS_DISPATCHED, STATUS_HOLD, STATUS_CANCELLED},
        STATUS_DISPATCHED: {
            STATUS_DELIVERED, STATUS_RETURN_RECEIVED, STATUS_REDIRECTED, STATUS_HOLD,
            STATUS_RTO_INITIATED, STATUS_LOST_IN_TRANSIT,
        },
        STATUS_REDIRECTED: {STATUS_DISPATCHED, STATUS_CANCELLED, STATUS_HOLD},
        STATUS_HOLD: {STATUS_PACKED, STATUS_DISPATCHED, STATUS_CANCELLED, STATUS_REDIRECTED},
        STATUS_RTO_INITIATED: {STATUS_RTO_VERIFICATION_PENDING, STATUS_RETURNED, STATUS_LOST_IN_TRANSIT},
        STATUS_RTO_VERIFICATION_PENDING: {STATUS_RETURNED, STATUS_LOST_IN_TRANSIT},
        STATUS_RETURN_RECEIVED: {
            STATUS_RETURNED, STATUS_EXCHANGED, STATUS_REFUND_REQUESTED, STATUS_CANCELLED,
        },
        STATUS_REFUND_REQUESTED: {STATUS_REFUNDED, STATUS_EXCHANGED},
    }),
    CHANNEL_POS: _table({
        STATUS_INTAKE: {STATUS_PACKED, STATUS_HOLD, STATUS_CANCELLED},
        STATUS_PACKED: {STATUS_DELIVERED, STATUS_CANCELLED, STATUS_HOLD},
        STATUS_HOLD: {STATUS_PACKED, STATUS_DELIVERED, STATUS_CANCELLED},
        STATUS_DELIVERED: {STATUS_RETURN_RECEIVED, STATUS_EXCHANGED},
        STATUS_RETURN_RECEIVED: {STATUS_REFUND_REQUESTED, STATUS_EXCHANGED},
        STATUS_REFUND_REQUESTED: {STATUS_REFUNDED},
    }),
}


@dataclass(frozen=True)
class Override:
    """
    Explicit privileged permission to leave the transition table.

    Passed to the one call that needs it and written to the audit trail.
    There is no global or session-level override.
    """
    reason: str
    actor_id: int | None = None

    def __post_init__(self):
        if not isinstance(self.reason, str) or not self.reason.strip():
            raise ValidationError("override requires a non-empty reason")


def allowed_transitions(channel: str, from_status: str) -> frozenset[str]:
    return ORDER_TRANSITIONS.get(channel, {}).get(from_status, frozenset())


def _violates_channel(channel: str, to_status: str) -> bool:
    if channel == CHANNEL_LOCAL:
        return to_status in COURIER_ONLY_STATUSES
    if channel == CHANNEL_COURIER:
        return to_status in LOCAL_ONLY_STATUSES
    return to_status in LOCAL_ONLY_STATUSES or to_status in COURIER_ONLY_STATUSES


def check_transition(
    channel: str,
    from_status: str,
    to_status: str,
    override: Override | None = None,
) -> bool:
    """
    Validate an order status change.

    Returns True when the move was only allowed because of `override`,
    False for an ordinary table transition. Raises InvalidTransition otherwise.
    """
    if channel not in ORDER_TRANSITIONS:
        raise ValidationError(f"unknown fulfillment channel: {channel}", {"channel": channel})
    if to_status not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {to_status}", {"status": to_status})

    if _violates_channel(channel, to_status):
        raise InvalidTransition(from_status, to_status, channel, "status not available for this channel")

    if from_status == to_status:
        raise InvalidTransition(from_status, to_status, channel, "order is already in this status")

    if to_status in allowed_transitions(channel, from_status):
        return False

    if override is not None:
        return True

    if from_status == STATUS_DELIVERED and to_status in PROCESSING_STATUSES:
        raise InvalidTransition(from_status, to_status, channel, "delivered orders cannot move back into processing")
    if from_status in TERMINAL_STATUSES:
        raise InvalidTransition(from_status, to_status, channel, "terminal status requires an override")
    raise InvalidTransition(from_status, to_status, channel)


# =============================================================================
# LEADS
# =============================================================================

LEAD_INTAKE = "INTAKE"
LEAD_FOLLOW_UP = "FOLLOW_UP"
LEAD_BUSY = "BUSY"
LEAD_CANCELLED = "CANCELLED"
LEAD_CONVERTED = "CONVERTED"

LEAD_STATUSES = frozenset({LEAD_INTAKE, LEAD_FOLLOW_UP, LEAD_BUSY, LEAD_CANCELLED, LEAD_CONVERTED})
LEAD_OPEN_STATUSES = frozenset({LEAD_INTAKE, LEAD_FOLLOW_UP, LEAD_BUSY})

LEAD_TRANSITIONS: dict[str, frozenset[str]] = _table({
    LEAD_INTAKE: {LEAD_FOLLOW_UP, LEAD_CANCELLED, LEAD_CONVERTED},
    LEAD_FOLLOW_UP: {LEAD_CANCELLED, LEAD_CONVERTED, LEAD_BUSY, LEAD_INTAKE},
    LEAD_BUSY: {LEAD_FOLLOW_UP, LEAD_CANCELLED, LEAD_CONVERTED},
})


def check_lead_transition(from_status: str, to_status: str, override: Override | None = None) -> bool:
    """Same contract as check_transition, for the sales pipeline."""
    if to_status not in LEAD_STATUSES:
        raise ValidationError(f"unknown lead status: {to_status}", {"status": to_status})
    if from_status == to_status:
        raise InvalidTransition(from_status, to_status, "lead", "lead is already in this status")
    if to_status in LEAD_TRANSITIONS.get(from_status, frozenset()):
        return False
    if override is not None and from_status == LEAD_CANCELLED and to_status in LEAD_OPEN_STATUSES:
        return True
    if from_status in (LEAD_CANCELLED, LEAD_CONVERTED):
        raise InvalidTransition(from_status, to_status, "lead", "lead is locked")
    raise InvalidTransition(from_status, to_status, "lead")
