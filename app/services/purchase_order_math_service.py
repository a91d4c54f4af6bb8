from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
MAX_NOTES_LENGTH = 1000


@dataclass(frozen=True)
class OrderItemInput:
    product_ref: str | None
    product_name: str | None
    category_ref: str | None
    unit_price: Decimal | None
    quantity: int | Decimal | None


@dataclass(frozen=True)
class LineTotal:
    unit_price: Decimal
    quantity: int
    line_total: Decimal


@dataclass(frozen=True)
class OrderTotals:
    lines: list[LineTotal]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total_amount: Decimal


def to_money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _blank(value) -> bool:
    return value is None or str(value).strip() == ''


def validate_order_items(items: list[OrderItemInput] | None, *, field: str = 'orderItems') -> list[str]:
    if not items:
        return [f'{field}: at least one order item is required']

    errors: list[str] = []
    for idx, item in enumerate(items):
        prefix = f'{field}[{idx}]'
        if _blank(item.product_ref):
            errors.append(f'{prefix}.productRef: is required')
        if _blank(item.product_name):
            errors.append(f'{prefix}.productName: is required')
        if _blank(item.category_ref):
            errors.append(f'{prefix}.categoryRef: is required')

        price = _as_decimal(item.unit_price)
        if price is None:
            errors.append(f'{prefix}.unitPrice: is required')
        elif price <= 0:
            errors.append(f'{prefix}.unitPrice: must be greater than zero')
        elif price != to_money(price):
            errors.append(f'{prefix}.unitPrice: cannot have more than two decimal places')

        quantity = _as_decimal(item.quantity)
        if quantity is None:
            errors.append(f'{prefix}.quantity: is required')
        elif quantity != quantity.to_integral_value():
            errors.append(f'{prefix}.quantity: must be a whole number')
        elif quantity <= 0:
            errors.append(f'{prefix}.quantity: must be greater than zero')
    return errors


def validate_charges(
    *,
    tax_rate: Decimal | None,
    shipping_cost: Decimal | None,
    discount: Decimal | None,
) -> list[str]:
    errors: list[str] = []
    rate = _as_decimal(tax_rate)
    if rate is None:
        errors.append('taxRate: must be a number')
    elif rate < 0 or rate > HUNDRED:
        errors.append('taxRate: must be between 0 and 100')
    elif rate != to_money(rate):
        errors.append('taxRate: cannot have more than two decimal places')
    for field, value in (('shippingCost', shipping_cost), ('discount', discount)):
        parsed = _as_decimal(value)
        if parsed is None:
            errors.append(f'{field}: must be a number')
        elif parsed < 0:
            errors.append(f'{field}: cannot be negative')
    return errors


def compute_line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return to_money(Decimal(unit_price) * int(quantity))


def compute_order_totals(
    items: list[OrderItemInput],
    *,
    tax_rate: Decimal,
    shipping_cost: Decimal,
    discount: Decimal,
) -> OrderTotals:
    """Derive every line total and order amount from validated inputs.

    Totals are never taken from the caller; this runs before every persist.
    """
    lines = [
        LineTotal(
            unit_price=to_money(Decimal(str(item.unit_price))),
            quantity=int(Decimal(str(item.quantity))),
            line_total=compute_line_total(Decimal(str(item.unit_price)), int(Decimal(str(item.quantity)))),
        )
        for item in items
    ]
    subtotal = to_money(sum((line.line_total for line in lines), Decimal('0')))
    rate = to_money(Decimal(str(tax_rate)))
    tax_amount = to_money(subtotal * rate / HUNDRED)
    shipping = to_money(Decimal(str(shipping_cost)))
    discount_amount = to_money(Decimal(str(discount)))
    total = to_money(subtotal + tax_amount + shipping - discount_amount)
    return OrderTotals(
        lines=lines,
        subtotal=subtotal,
        tax_rate=rate,
        tax_amount=tax_amount,
        shipping_cost=shipping,
        discount=discount_amount,
        total_amount=total,
    )
