"""Order lifecycle: placement, line edits, cancellation, refunds and fulfillment."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import CUSTOMER, SYSTEM, make_cart
from shopcore.common.errors import ConcurrentModification, Forbidden, GatewayError, InvalidTransition, ValidationError
from shopcore.services.orders.models import Order, OrderTimeline
from shopcore.services.orders.service import Caller
from shopcore.services.payments.models import PaymentAttempt, PaymentRefund
from shopcore.services.payments.outcomes import Refunded, RefundPending
from shopcore.services.reservations.service import InsufficientStock


async def _paid_order(container, checkout, *lines):
    order = await checkout(*(lines or (("SKU-A", 1, "10.00"),)))
    await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)
    return (await container.orders.get_order(order.order_id, CUSTOMER)).order


async def _refunds(session_factory, order_id):
    async with session_factory() as db:
        return (
            await db.execute(
                select(PaymentRefund).where(PaymentRefund.order_id == order_id).order_by(PaymentRefund.created_at)
            )
        ).scalars().all()


async def test_create_order_reserves_stock_and_derives_totals(container, checkout):
    order = await checkout(("SKU-A", 2, "19.99"), ("SKU-B", 1, "5.00"), shipping="4.99", discount="1.00")

    assert order.status == "pending_payment"
    assert order.version == 1
    assert order.subtotal_minor == 4498
    assert order.grand_total_minor == 4498 + 499 - 100
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert [line.sku for line in view.lines] == ["SKU-A", "SKU-B"]
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 2


async def test_two_checkouts_for_the_last_unit(container, stock):
    """Only one of two simultaneous buyers gets the last unit; the other sees insufficient stock."""

    await stock("SKU-LAST", 1)
    results = await asyncio.gather(
        container.orders.create_order(make_cart(("SKU-LAST", 1, "30.00")), Caller(customer_id="alice")),
        container.orders.create_order(make_cart(("SKU-LAST", 1, "30.00")), Caller(customer_id="bob")),
    )

    placed = [r for r in results if isinstance(r, Order)]
    short = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(placed) == 1 and len(short) == 1
    assert placed[0].status == "pending_payment"
    assert short[0].available == 0
    level = await container.ledger.get_level("SKU-LAST", "main")
    assert (level.on_hand, level.reserved) == (1, 1)


async def test_short_order_stays_draft_and_can_be_fixed(container, checkout, stock):
    result = await checkout(("SKU-A", 5, "2.00"), stock_each=None)
    assert isinstance(result, InsufficientStock)
    await stock("SKU-A", 3)

    with pytest.raises(ConcurrentModification):
        await container.orders.update_lines(result.order_id, make_cart(("SKU-A", 3, "2.00")).items, CUSTOMER, 7)

    updated = await container.orders.update_lines(
        result.order_id, make_cart(("SKU-A", 3, "2.00")).items, CUSTOMER, expected_version=0
    )
    assert updated.status == "draft"
    assert updated.grand_total_minor == 600

    placed = await container.orders.place_order(result.order_id, CUSTOMER)
    assert placed.status == "pending_payment"
    again = await container.orders.place_order(result.order_id, CUSTOMER)
    assert again.version == placed.version


async def test_lines_cannot_change_after_placement(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))
    with pytest.raises(ValidationError):
        await container.orders.update_lines(order.order_id, make_cart(("SKU-A", 2, "10.00")).items, CUSTOMER)


async def test_other_customers_cannot_touch_the_order(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))
    mallory = Caller(customer_id="mallory")

    with pytest.raises(Forbidden):
        await container.orders.get_order(order.order_id, mallory)
    with pytest.raises(Forbidden):
        await container.orders.cancel_order(order.order_id, mallory)
    with pytest.raises(Forbidden):
        await container.orders.create_order(make_cart(customer_id="cust-1"), mallory)
    assert (await container.orders.get_order(order.order_id, SYSTEM)).order.status == "pending_payment"


async def test_cancel_with_stale_version_is_rejected(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))
    with pytest.raises(ConcurrentModification):
        await container.orders.cancel_order(order.order_id, CUSTOMER, expected_version=order.version - 1)


async def test_cancel_before_payment_releases_holds(container, checkout, session_factory):
    order = await checkout(("SKU-A", 2, "10.00"))
    await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)

    cancelled = await container.orders.cancel_order(order.order_id, CUSTOMER, "changed_mind")

    assert cancelled.status == "cancelled"
    assert cancelled.cancel_reason == "changed_mind"
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (10, 0)
    async with session_factory() as db:
        attempt = (await db.execute(select(PaymentAttempt))).scalar_one()
    assert (attempt.status, attempt.failure_reason) == ("failed", "cancelled")


async def test_cancel_after_payment_refunds_once_and_restocks(container, checkout, gateway, session_factory):
    order = await _paid_order(container, checkout, ("SKU-A", 2, "10.00"))
    assert (await container.ledger.get_level("SKU-A", "main")).on_hand == 8

    cancelled = await container.orders.cancel_order(order.order_id, CUSTOMER)
    again = await container.orders.cancel_order(order.order_id, CUSTOMER)

    assert cancelled.status == again.status == "cancelled"
    assert cancelled.refunded_minor == cancelled.captured_minor == 2000
    assert gateway.calls.count("refund") == 1
    assert [r.status for r in await _refunds(session_factory, order.order_id)] == ["succeeded"]
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (10, 0)


async def test_failed_cancel_refund_leaves_order_confirmed(container, checkout, gateway, session_factory):
    order = await _paid_order(container, checkout)
    gateway.refund_failures_remaining = 10

    with pytest.raises(GatewayError):
        await container.orders.cancel_order(order.order_id, CUSTOMER)

    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "confirmed"
    assert view.order.cancel_reason is None
    assert view.order.refunded_minor == 0

    gateway.refund_failures_remaining = 0
    cancelled = await container.orders.cancel_order(order.order_id, CUSTOMER)
    assert cancelled.status == "cancelled"
    refunds = await _refunds(session_factory, order.order_id)
    assert [r.status for r in refunds] == ["failed", "succeeded"]
    assert refunds[1].idempotency_key.endswith(":refund:2")


async def test_repeat_cancel_waits_for_the_pending_refund(container, checkout, gateway, session_factory):
    order = await _paid_order(container, checkout)
    outcome_ref = next(iter(gateway.payments.values()))["gateway_ref"]
    gateway.settle_refunds_async = True

    first = await container.orders.cancel_order(order.order_id, CUSTOMER)
    second = await container.orders.cancel_order(order.order_id, CUSTOMER)

    assert first.status == second.status == "confirmed"
    assert gateway.calls.count("refund") == 1
    assert (await container.ledger.get_level("SKU-A", "main")).on_hand == 9

    (pending,) = gateway.refunds.values()
    raw, headers = gateway.webhook("refund.failed", outcome_ref, refund_ref=pending.refund_ref)
    await container.webhooks.handle_webhook("fake", raw, headers)

    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert (view.order.status, view.order.refunded_minor, view.order.cancel_reason) == ("confirmed", 0, None)
    assert (await container.ledger.get_level("SKU-A", "main")).on_hand == 9
    assert [r.status for r in await _refunds(session_factory, order.order_id)] == ["failed"]


async def test_cancel_is_refused_while_a_plain_refund_is_settling(container, checkout, gateway):
    order = await _paid_order(container, checkout)
    gateway.settle_refunds_async = True
    await container.orders.refund_order(order.order_id, Decimal("10.00"), None, CUSTOMER)

    with pytest.raises(ValidationError):
        await container.orders.cancel_order(order.order_id, CUSTOMER)

    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert (view.order.status, view.order.cancel_reason) == ("confirmed", None)


async def test_refund_retries_transient_gateway_errors(container, checkout, gateway):
    order = await _paid_order(container, checkout)
    gateway.refund_failures_remaining = 2

    result = await container.orders.refund_order(order.order_id, Decimal("3.00"), "damaged", CUSTOMER)

    assert result == Refunded(refund_id=result.refund_id, amount_minor=300, fully_refunded=False)
    assert gateway.calls.count("refund") == 3


async def test_over_refund_is_rejected_without_side_effects(container, checkout, gateway, session_factory):
    order = await _paid_order(container, checkout)

    with pytest.raises(ValidationError) as exc_info:
        await container.orders.refund_order(order.order_id, Decimal("10.01"), None, CUSTOMER)

    assert exc_info.value.detail["refundable"] == "10.00"
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert (view.order.status, view.order.refunded_minor) == ("confirmed", 0)
    assert await _refunds(session_factory, order.order_id) == []
    assert "refund" not in gateway.calls


async def test_partial_then_full_refund(container, checkout):
    order = await _paid_order(container, checkout, ("SKU-A", 2, "5.00"))

    first = await container.orders.refund_order(order.order_id, Decimal("4.00"), "late", CUSTOMER)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert first.fully_refunded is False
    assert (view.order.status, view.order.refunded_minor) == ("confirmed", 400)
    assert (await container.ledger.get_level("SKU-A", "main")).on_hand == 8

    second = await container.orders.refund_order(order.order_id, Decimal("6.00"), "late", CUSTOMER)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert second.fully_refunded is True
    assert (view.order.status, view.order.refunded_minor) == ("refunded", 1000)
    assert (await container.ledger.get_level("SKU-A", "main")).on_hand == 10

    with pytest.raises(ValidationError):
        await container.orders.refund_order(order.order_id, Decimal("0.01"), None, CUSTOMER)


async def test_pending_refund_counts_against_refundable_balance(container, checkout, gateway):
    order = await _paid_order(container, checkout)
    gateway.settle_refunds_async = True

    pending = await container.orders.refund_order(order.order_id, Decimal("6.00"), None, CUSTOMER)

    assert isinstance(pending, RefundPending)
    with pytest.raises(ValidationError):
        await container.orders.refund_order(order.order_id, Decimal("5.00"), None, CUSTOMER)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.refunded_minor == 0


async def test_fulfillment_runs_forward_for_system_callers_only(container, checkout, session_factory):
    order = await _paid_order(container, checkout)

    with pytest.raises(Forbidden):
        await container.orders.start_processing(order.order_id, CUSTOMER)

    await container.orders.start_processing(order.order_id, SYSTEM)
    shipped = await container.orders.mark_shipped(order.order_id, SYSTEM, "ups", "1Z999")
    repeat = await container.orders.mark_shipped(order.order_id, SYSTEM, "ups", "1Z999")
    assert (shipped.carrier, shipped.tracking_number) == ("ups", "1Z999")
    assert repeat.version == shipped.version

    with pytest.raises(InvalidTransition):
        await container.orders.cancel_order(order.order_id, CUSTOMER)

    await container.orders.mark_delivered(order.order_id, SYSTEM)
    completed = await container.orders.complete_order(order.order_id, SYSTEM)
    assert completed.status == "completed"

    async with session_factory() as db:
        timeline = (
            await db.execute(
                select(OrderTimeline.to_status)
                .where(OrderTimeline.order_id == order.order_id)
                .order_by(OrderTimeline.created_at)
            )
        ).scalars().all()
    assert timeline == ["draft", "pending_payment", "confirmed", "processing", "shipped", "delivered", "completed"]


async def test_delivery_cannot_skip_shipping(container, checkout):
    order = await _paid_order(container, checkout)
    with pytest.raises(InvalidTransition):
        await container.orders.mark_delivered(order.order_id, SYSTEM)
