"""Order totals, always derived from line items."""

from dataclasses import dataclass

from shopcore.common.errors import InvariantViolation, ValidationError


@dataclass(frozen=True)
class Totals:
    subtotal_minor: int
    tax_minor: int
    shipping_minor: int
    discount_minor: int
    grand_total_minor: int

    def as_columns(self) -> dict:
        return {
            "subtotal_minor": self.subtotal_minor,
            "tax_minor": self.tax_minor,
            "shipping_minor": self.shipping_minor,
            "discount_minor": self.discount_minor,
            "grand_total_minor": self.grand_total_minor,
        }


def line_total(unit_price_minor: int, quantity: int) -> int:
    return unit_price_minor * quantity


def compute_totals(lines, shipping_minor: int = 0, order_discount_minor: int = 0) -> Totals:
    """Sum lines into order totals.

    `discount_minor` on the result covers the order-level discount plus every
    line discount.
    """

    subtotal = sum(line_total(line.unit_price_minor, line.quantity) for line in lines)
    tax = sum(line.tax_minor for line in lines)
    discount = order_discount_minor + sum(line.discount_minor for line in lines)
    grand_total = subtotal + tax + shipping_minor - discount
    if grand_total < 0:
        raise ValidationError("discount exceeds order value", field="discount")
    return Totals(
        subtotal_minor=subtotal,
        tax_minor=tax,
        shipping_minor=shipping_minor,
        discount_minor=discount,
        grand_total_minor=grand_total,
    )


def order_level_discount(order, lines) -> int:
    return order.discount_minor - sum(line.discount_minor for line in lines)


def reconcile(order, lines) -> Totals:
    """Recompute totals from stored lines and compare with the order row."""

    if not lines:
        raise InvariantViolation("order has no lines", order_id=order.order_id)
    for line in lines:
        if line.line_total_minor != line_total(line.unit_price_minor, line.quantity):
            raise InvariantViolation("line total does not reconcile", order_id=order.order_id, line_id=line.line_id)
    discount = order_level_discount(order, lines)
    if discount < 0:
        raise InvariantViolation("stored discount below line discounts", order_id=order.order_id)
    expected = compute_totals(lines, order.shipping_minor, discount)
    if expected.as_columns() != {key: getattr(order, key) for key in expected.as_columns()}:
        raise InvariantViolation(
            "order totals do not reconcile",
            order_id=order.order_id,
            stored=order.grand_total_minor,
            computed=expected.grand_total_minor,
        )
    return expected
