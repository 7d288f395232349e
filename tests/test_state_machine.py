"""Unit tests for order, payment and reservation state-machine guardrails."""

import pytest

from shopcore.common.errors import InvalidTransition
from shopcore.common.state_machine import ORDER_TERMINAL, ORDER_TRANSITIONS, can_transition, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending_payment", "confirmed")


def test_invalid_transition():
    """Illegal transition must raise to protect orchestration correctness."""

    with pytest.raises(InvalidTransition) as exc_info:
        validate_transition("draft", "shipped")
    assert exc_info.value.detail == {"current": "draft", "requested": "shipped"}


def test_terminal_states_have_no_exits():
    for status in ORDER_TERMINAL:
        assert ORDER_TRANSITIONS[status] == set()
        with pytest.raises(InvalidTransition):
            validate_transition(status, "pending_payment")


def test_shipped_orders_can_no_longer_be_cancelled_or_refunded():
    assert not can_transition("order", "shipped", "cancelled")
    assert not can_transition("order", "shipped", "refunded")
    assert can_transition("order", "processing", "cancelled")


def test_failed_payment_can_be_retried_through_pending_payment():
    assert can_transition("order", "payment_failed", "pending_payment")
    assert not can_transition("order", "payment_failed", "confirmed")


def test_payment_outcomes_are_final_once_settled():
    assert can_transition("payment", "requires_action", "succeeded")
    assert not can_transition("payment", "failed", "succeeded")
    assert not can_transition("payment", "succeeded", "failed")
    with pytest.raises(InvalidTransition):
        validate_transition("refunded", "partially_refunded", entity="payment")


def test_reservation_lifecycle():
    assert can_transition("reservation", "active", "expired")
    assert can_transition("reservation", "committed", "released")
    assert not can_transition("reservation", "expired", "committed")
    assert not can_transition("reservation", "released", "active")
