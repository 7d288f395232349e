"""Payment attempts: gateway outcomes, ambiguity handling and retries."""

import asyncio

import pytest
from sqlalchemy import select, update

from conftest import CUSTOMER, SYSTEM
from shopcore.common.errors import InvariantViolation, StalePaymentAction, ValidationError
from shopcore.services.orders.models import Order
from shopcore.services.payments.models import PaymentAttempt
from shopcore.services.payments.outcomes import Failed, RequiresAction, Success


async def _attempts(session_factory, order_id):
    async with session_factory() as db:
        return (
            await db.execute(
                select(PaymentAttempt).where(PaymentAttempt.order_id == order_id).order_by(PaymentAttempt.attempt_number)
            )
        ).scalars().all()


async def test_successful_payment_confirms_order_and_commits_stock(container, checkout):
    order = await checkout(("SKU-A", 2, "12.50"), shipping="5.00")

    outcome = await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)

    assert isinstance(outcome, Success)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "confirmed"
    assert view.order.captured_minor == view.order.grand_total_minor == 3000
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (8, 0)


async def test_declined_payment_releases_holds_and_allows_retry(container, checkout, session_factory):
    order = await checkout(("SKU-A", 1, "10.00"))

    declined = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_decline"}, CUSTOMER)
    assert declined == Failed(payment_id=declined.payment_id, reason="card_declined", retry_allowed=True)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "payment_failed"
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 0

    with pytest.raises(ValidationError):
        await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)

    await container.orders.place_order(order.order_id, CUSTOMER)
    retried = await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)

    assert isinstance(retried, Success)
    attempts = await _attempts(session_factory, order.order_id)
    assert [a.idempotency_key for a in attempts] == [f"{order.order_id}:1", f"{order.order_id}:2"]
    assert [a.status for a in attempts] == ["failed", "succeeded"]


async def test_timeout_is_resolved_by_querying_status(container, checkout, gateway):
    """The gateway captured but the response never arrived; the status query finds the capture."""

    order = await checkout(("SKU-A", 1, "10.00"))

    outcome = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_hang"}, CUSTOMER)

    assert isinstance(outcome, Success)
    assert gateway.calls == ["initiate", "query_status"]
    assert gateway.captures == 1
    assert (await container.orders.get_order(order.order_id, CUSTOMER)).order.status == "confirmed"


async def test_unresolvable_timeout_fails_with_timeout_reason(container, checkout, gateway):
    gateway.status_unavailable = True
    order = await checkout(("SKU-A", 1, "10.00"))

    outcome = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_hang"}, CUSTOMER)

    assert isinstance(outcome, Failed)
    assert outcome.reason == "timeout"
    assert outcome.retry_allowed is True


async def test_unreachable_gateway_with_no_charge_fails_cleanly(container, checkout, gateway):
    order = await checkout(("SKU-A", 1, "10.00"))

    outcome = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_unreachable"}, CUSTOMER)

    assert isinstance(outcome, Failed)
    assert outcome.reason == "gateway_error"
    assert gateway.captures == 0


async def test_repeated_initiate_with_same_key_never_double_charges(container, checkout, gateway, session_factory):
    order = await checkout(("SKU-A", 1, "10.00"))

    results = await asyncio.gather(
        container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER),
        container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER),
        return_exceptions=True,
    )

    # The slower call either reuses the open attempt or finds the order already confirmed.
    assert any(isinstance(r, Success) for r in results)
    assert all(isinstance(r, (Success, ValidationError)) for r in results)
    assert gateway.captures == 1
    (attempt,) = await _attempts(session_factory, order.order_id)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.captured_minor == 1000

    replay = await container.payments.initiate(attempt, {"type": "card"})
    assert replay == Success(payment_id=attempt.payment_id, transaction_ref=attempt.gateway_ref)
    assert gateway.captures == 1


async def test_three_d_secure_flow(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))

    pending = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)
    assert isinstance(pending, RequiresAction)
    assert pending.action_type == "three_d_secure"
    assert (await container.orders.get_order(order.order_id, CUSTOMER)).order.has_pending_action is True

    again = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)
    assert again.payment_id == pending.payment_id

    outcome = await container.orders.complete_payment_action(pending.payment_id, {"result": "approved"}, CUSTOMER)
    assert isinstance(outcome, Success)
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "confirmed"
    assert view.order.has_pending_action is False


async def test_failed_authentication_fails_the_payment(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))
    pending = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)

    outcome = await container.orders.complete_payment_action(pending.payment_id, {"result": "denied"}, CUSTOMER)

    assert outcome.reason == "authentication_failed"
    assert (await container.orders.get_order(order.order_id, CUSTOMER)).order.status == "payment_failed"


async def test_action_completed_after_hold_expiry_is_stale(container, checkout, frozen_clock, gateway):
    """Holds lapse while the buyer sits on the 3DS page; completing later must not capture."""

    order = await checkout(("SKU-A", 1, "10.00"))
    pending = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)
    frozen_clock.advance(1801)

    assert await container.sweeper.sweep_once() == 1
    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "payment_failed"
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 0

    with pytest.raises(StalePaymentAction) as exc_info:
        await container.orders.complete_payment_action(pending.payment_id, {"result": "approved"}, CUSTOMER)
    assert exc_info.value.detail["state"] == "failed"
    assert "complete_action" not in gateway.calls


async def test_stale_action_is_caught_before_the_sweeper_runs(container, checkout, frozen_clock, gateway):
    order = await checkout(("SKU-A", 1, "10.00"))
    pending = await container.orders.pay(order.order_id, {"type": "card", "token": "tok_3ds"}, CUSTOMER)
    frozen_clock.advance(1801)

    with pytest.raises(StalePaymentAction):
        await container.orders.complete_payment_action(pending.payment_id, {"result": "approved"}, CUSTOMER)

    view = await container.orders.get_order(order.order_id, CUSTOMER)
    assert view.order.status == "payment_failed"
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 0
    assert gateway.captures == 0


async def test_pay_after_hold_expiry_fails_the_order_first(container, checkout, frozen_clock):
    order = await checkout(("SKU-A", 1, "10.00"))
    frozen_clock.advance(1801)

    with pytest.raises(ValidationError):
        await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)
    assert (await container.orders.get_order(order.order_id, CUSTOMER)).order.status == "payment_failed"


async def test_extend_hold_keeps_order_payable(container, checkout, frozen_clock):
    order = await checkout(("SKU-A", 1, "10.00"))
    frozen_clock.advance(1700)

    assert await container.orders.extend_hold(order.order_id, 900, CUSTOMER) == 1
    frozen_clock.advance(600)

    outcome = await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)
    assert isinstance(outcome, Success)


async def test_tampered_totals_block_confirmation(container, checkout, session_factory):
    order = await checkout(("SKU-A", 1, "10.00"))
    async with session_factory() as db:
        await db.execute(
            update(Order.__table__).where(Order.order_id == order.order_id).values(subtotal_minor=999)
        )
        await db.commit()

    with pytest.raises(InvariantViolation):
        await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)

    view = await container.orders.get_order(order.order_id, SYSTEM)
    assert view.order.status == "pending_payment"
    assert view.order.captured_minor == 0
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 1
    assert await container.orders.audit_totals() != []


async def test_payment_methods_are_filtered_by_currency_and_amount(container):
    usd = await container.payments.get_methods("USD", 1000)
    eur = await container.payments.get_methods("EUR", 1000)
    tiny = await container.payments.get_methods("EUR", 10)

    assert [m.method_type for m in usd] == ["card"]
    assert sorted(m.method_type for m in eur) == ["bank_transfer", "card"]
    assert tiny == []


async def test_unknown_gateway_is_rejected(container, checkout):
    order = await checkout(("SKU-A", 1, "10.00"))
    with pytest.raises(ValidationError):
        await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER, gateway="nope")
