from __future__ import annotations

from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.services.purchase_order_math_service import OrderItemInput
from app.services.purchase_order_service import PurchaseOrderInput


def _ref(value: str | int | None) -> str | None:
    return None if value is None else str(value)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemBody(CamelModel):
    product_ref: str | int | None = Field(default=None, validation_alias=AliasChoices('productRef', 'product', 'product_ref'))
    product_name: str | None = None
    category_ref: str | int | None = Field(
        default=None, validation_alias=AliasChoices('categoryRef', 'category', 'category_ref')
    )
    unit_price: Decimal | None = None
    quantity: Decimal | None = None

    def to_input(self) -> OrderItemInput:
        return OrderItemInput(
            product_ref=_ref(self.product_ref),
            product_name=self.product_name,
            category_ref=_ref(self.category_ref),
            unit_price=self.unit_price,
            quantity=self.quantity,
        )


class _OrderFieldsBody(CamelModel):
    vendor_ref: str | int | None = Field(default=None, validation_alias=AliasChoices('vendorRef', 'vendor', 'vendor_ref'))
    purchase_date: str | None = None
    expected_delivery: str | None = None
    payment_terms: str | None = None
    priority: str | None = None
    order_items: list[OrderItemBody] | None = None
    tax_rate: Decimal | None = None
    shipping_cost: Decimal | None = None
    discount: Decimal | None = None
    notes: str | None = None
    is_recurring: bool | None = None
    recurring_frequency: str | None = None


class PurchaseOrderCreateBody(_OrderFieldsBody):
    """Create payload. Totals and line totals are derived, so they are not accepted here."""

    order_number: str | None = None

    def to_input(self) -> PurchaseOrderInput:
        return PurchaseOrderInput(
            vendor_ref=_ref(self.vendor_ref),
            expected_delivery=self.expected_delivery,
            order_items=[item.to_input() for item in self.order_items or []],
            purchase_date=self.purchase_date,
            payment_terms=self.payment_terms,
            priority=self.priority,
            tax_rate=self.tax_rate,
            shipping_cost=self.shipping_cost,
            discount=self.discount,
            notes=self.notes,
            is_recurring=self.is_recurring,
            recurring_frequency=self.recurring_frequency,
            order_number=self.order_number,
        )


class PurchaseOrderUpdateBody(_OrderFieldsBody):
    """Partial update payload.

    Keys that are not editable fields are kept as extras under the name the
    client sent, so the service can reject them by that name.
    """

    model_config = ConfigDict(extra='allow')

    def to_changes(self) -> dict:
        changes = {}
        for name in self.model_fields_set:
            if name not in type(self).model_fields:
                continue
            value = getattr(self, name)
            if name == 'order_items' and value is not None:
                value = [item.to_input() for item in value]
            elif name == 'vendor_ref':
                value = _ref(value)
            changes[name] = value
        changes.update(self.model_extra or {})
        return changes


class StatusChangeBody(CamelModel):
    status: str | None = None
    cancellation_reason: str | None = None


class BulkDeleteBody(CamelModel):
    order_ids: list[int] = Field(default_factory=list)
