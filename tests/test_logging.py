"""Correlation ids attached to log records."""

import logging

import pytest

from shopcore.common.logging import ContextFilter, log_context


def _record() -> logging.LogRecord:
    record = logging.LogRecord("shopcore", logging.INFO, __file__, 1, "hello", None, None)
    ContextFilter().filter(record)
    return record


def test_nested_contexts_stack_and_unwind():
    with log_context(order_id="ord-1", payment_id=None):
        with log_context(payment_id="pay-1"):
            inner = _record()
        outer = _record()
    after = _record()

    assert (inner.order_id, inner.payment_id) == ("ord-1", "pay-1")
    assert (outer.order_id, outer.payment_id) == ("ord-1", "")
    assert (after.order_id, after.payment_id, after.event_id) == ("", "", "")
    assert after.service_name


def test_context_unwinds_when_the_block_raises():
    with pytest.raises(RuntimeError):
        with log_context(event_id="evt-1"):
            raise RuntimeError("boom")

    assert _record().event_id == ""
