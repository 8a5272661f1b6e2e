"""
Transition table law: for every channel and every (from, to) pair the guard
accepts exactly the table's edges, and everything else needs an override
(or is refused outright for the other channel's statuses).
"""

import pytest

from ordercore.errors import InvalidTransition, ValidationError
from ordercore.services.state_machine import (
    CHANNELS,
    CHANNEL_COURIER,
    CHANNEL_LOCAL,
    CHANNEL_POS,
    COURIER_ONLY_STATUSES,
    LEAD_BUSY,
    LEAD_CANCELLED,
    LEAD_CONVERTED,
    LEAD_FOLLOW_UP,
    LEAD_INTAKE,
    LOCAL_ONLY_STATUSES,
    ORDER_STATUSES,
    Override,
    STATUS_DELIVERED,
    STATUS_DISPATCHED,
    STATUS_PACKED,
    STATUS_REDIRECTED,
    STATUS_SENT_FOR_DELIVERY,
    TERMINAL_STATUSES,
    allowed_transitions,
    check_lead_transition,
    check_transition,
)


def _foreign_statuses(channel):
    if channel == CHANNEL_LOCAL:
        return COURIER_ONLY_STATUSES
    if channel == CHANNEL_COURIER:
        return LOCAL_ONLY_STATUSES
    return LOCAL_ONLY_STATUSES | COURIER_ONLY_STATUSES


@pytest.mark.parametrize("channel", CHANNELS)
def test_table_edges_are_exactly_what_the_guard_allows(channel):
    for from_status in sorted(ORDER_STATUSES):
        allowed = allowed_transitions(channel, from_status)
        for to_status in sorted(ORDER_STATUSES):
            if to_status in allowed:
                assert check_transition(channel, from_status, to_status) is False
            else:
                with pytest.raises(InvalidTransition):
                    check_transition(channel, from_status, to_status)


@pytest.mark.parametrize("channel", CHANNELS)
def test_terminal_statuses_only_leave_with_override(channel):
    override = Override(reason="data repair", actor_id=9)
    foreign = _foreign_statuses(channel)
    for from_status in TERMINAL_STATUSES:
        for to_status in ORDER_STATUSES - foreign - {from_status}:
            if to_status in allowed_transitions(channel, from_status):
                continue
            with pytest.raises(InvalidTransition):
                check_transition(channel, from_status, to_status)
            assert check_transition(channel, from_status, to_status, override) is True


@pytest.mark.parametrize("channel", CHANNELS)
def test_other_channel_statuses_refused_even_with_override(channel):
    override = Override(reason="force", actor_id=9)
    for to_status in _foreign_statuses(channel):
        with pytest.raises(InvalidTransition):
            check_transition(channel, STATUS_PACKED, to_status, override)


def test_tables_never_reference_foreign_statuses():
    for channel in CHANNELS:
        foreign = _foreign_statuses(channel)
        for to_statuses in (allowed_transitions(channel, s) for s in ORDER_STATUSES):
            assert not (to_statuses & foreign)


def test_delivered_local_order_cannot_go_back_to_packed():
    with pytest.raises(InvalidTransition) as excinfo:
        check_transition(CHANNEL_LOCAL, STATUS_DELIVERED, STATUS_PACKED)
    assert excinfo.value.to_dict()["code"] == "INVALID_TRANSITION"


def test_same_status_is_never_a_transition():
    with pytest.raises(InvalidTransition):
        check_transition(CHANNEL_LOCAL, STATUS_PACKED, STATUS_PACKED, Override(reason="x"))


def test_departure_edges_per_channel():
    assert STATUS_SENT_FOR_DELIVERY in allowed_transitions(CHANNEL_LOCAL, "assigned")
    assert STATUS_DISPATCHED in allowed_transitions(CHANNEL_COURIER, STATUS_PACKED)
    assert STATUS_DELIVERED in allowed_transitions(CHANNEL_POS, STATUS_PACKED)


def test_redirect_is_reachable_from_failed_local_statuses():
    for from_status in ("rejected", "hold", "next_attempt"):
        assert STATUS_REDIRECTED in allowed_transitions(CHANNEL_LOCAL, from_status)


def test_unknown_channel_or_status_is_a_validation_error():
    with pytest.raises(ValidationError):
        check_transition("drone", STATUS_PACKED, STATUS_DELIVERED)
    with pytest.raises(ValidationError):
        check_transition(CHANNEL_LOCAL, STATUS_PACKED, "teleported")


def test_override_requires_reason():
    with pytest.raises(ValidationError):
        Override(reason="  ")


def test_lead_pipeline_transitions():
    assert check_lead_transition(LEAD_INTAKE, LEAD_FOLLOW_UP) is False
    assert check_lead_transition(LEAD_FOLLOW_UP, LEAD_BUSY) is False
    assert check_lead_transition(LEAD_BUSY, LEAD_CONVERTED) is False

    with pytest.raises(InvalidTransition):
        check_lead_transition(LEAD_CONVERTED, LEAD_INTAKE)
    with pytest.raises(InvalidTransition):
        check_lead_transition(LEAD_CANCELLED, LEAD_INTAKE)
    with pytest.raises(InvalidTransition):
        check_lead_transition(LEAD_CONVERTED, LEAD_INTAKE, Override(reason="undo"))

    assert check_lead_transition(LEAD_CANCELLED, LEAD_INTAKE, Override(reason="customer called back")) is True
