from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ConflictError, InternalError, InvalidState, InvalidTransition, NotFound, ValidationFailed
from app.models import (
    OrderPriority,
    PaymentTerms,
    PurchaseOrder,
    PurchaseOrderItem,
    PurchaseOrderStatus,
    RecurringFrequency,
    Supplier,
)
from app.services.audit_service import record_status_change
from app.services.date_utils import as_utc
from app.services.order_number_service import next_order_number
from app.services.purchase_order_math_service import (
    MAX_NOTES_LENGTH,
    OrderItemInput,
    OrderTotals,
    compute_order_totals,
    validate_charges,
    validate_order_items,
)
from app.services.status_transition_service import (
    DELETE_LOCKED_STATUSES,
    EDIT_LOCKED_STATUSES,
    is_transition_allowed,
    parse_status,
)
from app.services.supplier_lookup_service import find_supplier_by_id, parse_entity_id

logger = logging.getLogger(__name__)

MAX_CANCELLATION_REASON_LENGTH = 500
MAX_NUMBERING_ATTEMPTS = 2

PAYMENT_TERMS_ALIASES = {
    'net 30 days': PaymentTerms.NET_30,
    'net 15 days': PaymentTerms.NET_15,
    'net 7 days': PaymentTerms.NET_7,
    'advance payment': PaymentTerms.ADVANCE_PAYMENT,
}

PATCHABLE_FIELDS = {
    'vendor_ref': 'vendorRef',
    'purchase_date': 'purchaseDate',
    'expected_delivery': 'expectedDelivery',
    'payment_terms': 'paymentTerms',
    'priority': 'priority',
    'order_items': 'orderItems',
    'tax_rate': 'taxRate',
    'shipping_cost': 'shippingCost',
    'discount': 'discount',
    'notes': 'notes',
    'is_recurring': 'isRecurring',
    'recurring_frequency': 'recurringFrequency',
}


@dataclass(frozen=True)
class PurchaseOrderInput:
    vendor_ref: str | None
    expected_delivery: datetime | date | str | None
    order_items: list[OrderItemInput] = field(default_factory=list)
    purchase_date: datetime | date | str | None = None
    payment_terms: str | None = None
    priority: str | None = None
    tax_rate: Decimal | None = None
    shipping_cost: Decimal | None = None
    discount: Decimal | None = None
    notes: str | None = None
    is_recurring: bool | None = None
    recurring_frequency: str | None = None
    order_number: str | None = None


@dataclass(frozen=True)
class _ResolvedOrder:
    vendor_ref: str
    purchase_date: datetime
    expected_delivery: datetime
    payment_terms: PaymentTerms
    priority: OrderPriority
    items: list[OrderItemInput]
    totals: OrderTotals
    notes: str | None
    is_recurring: bool
    recurring_frequency: RecurringFrequency | None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _parse_enum(enum_cls, value, aliases: dict | None = None):
    if isinstance(value, enum_cls):
        return value
    raw = str(value).strip().lower()
    for member in enum_cls:
        if raw == member.value.lower():
            return member
    return (aliases or {}).get(raw)


def _parse_when(value, label: str, errors: list[str]) -> datetime | None:
    try:
        return as_utc(value)
    except (TypeError, ValueError):
        errors.append(f'{label}: is not a valid date')
        return None


def _absent(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _choices(enum_cls) -> str:
    return ', '.join(member.value for member in enum_cls)


def _resolve_order(values: dict, *, now: datetime) -> _ResolvedOrder:
    """Validate a full set of order fields and compute the derived totals.

    Collects every problem before raising so the caller sees all of them.
    """
    errors: list[str] = []

    vendor_ref = str(values.get('vendor_ref') or '').strip()
    if not vendor_ref:
        errors.append('vendorRef: is required')

    purchase_date = _parse_when(values.get('purchase_date'), 'purchaseDate', errors)
    if purchase_date is None and _absent(values.get('purchase_date')):
        purchase_date = now
    expected_delivery = _parse_when(values.get('expected_delivery'), 'expectedDelivery', errors)
    if expected_delivery is None and _absent(values.get('expected_delivery')):
        errors.append('expectedDelivery: is required')
    # Compared by calendar day; a same-day delivery is valid whatever the time.
    if purchase_date and expected_delivery and expected_delivery.date() < purchase_date.date():
        errors.append('expectedDelivery: must be on or after purchaseDate')

    payment_terms = PaymentTerms.NET_30
    if not _absent(values.get('payment_terms')):
        payment_terms = _parse_enum(PaymentTerms, values['payment_terms'], PAYMENT_TERMS_ALIASES)
        if payment_terms is None:
            errors.append(f'paymentTerms: must be one of {_choices(PaymentTerms)}')

    priority = OrderPriority.MEDIUM
    if not _absent(values.get('priority')):
        priority = _parse_enum(OrderPriority, values['priority'])
        if priority is None:
            errors.append(f'priority: must be one of {_choices(OrderPriority)}')

    recurring_frequency = None
    if not _absent(values.get('recurring_frequency')):
        recurring_frequency = _parse_enum(RecurringFrequency, values['recurring_frequency'])
        if recurring_frequency is None:
            errors.append(f'recurringFrequency: must be one of {_choices(RecurringFrequency)}')

    notes = values.get('notes')
    if notes is not None:
        notes = str(notes).strip() or None
    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f'notes: cannot exceed {MAX_NOTES_LENGTH} characters')

    tax_rate = values.get('tax_rate')
    if tax_rate is None:
        tax_rate = Decimal(settings.default_tax_rate)
    shipping_cost = values.get('shipping_cost')
    shipping_cost = Decimal('0') if shipping_cost is None else shipping_cost
    discount = values.get('discount')
    discount = Decimal('0') if discount is None else discount

    items = list(values.get('order_items') or [])
    errors.extend(validate_order_items(items))
    errors.extend(validate_charges(tax_rate=tax_rate, shipping_cost=shipping_cost, discount=discount))

    if errors:
        raise ValidationFailed('Validation failed', errors)

    totals = compute_order_totals(items, tax_rate=tax_rate, shipping_cost=shipping_cost, discount=discount)
    if totals.total_amount < 0:
        raise ValidationFailed('Validation failed', ['discount: cannot exceed subtotal plus tax and shipping'])

    return _ResolvedOrder(
        vendor_ref=vendor_ref,
        purchase_date=purchase_date,
        expected_delivery=expected_delivery,
        payment_terms=payment_terms,
        priority=priority,
        items=items,
        totals=totals,
        notes=notes,
        is_recurring=bool(values.get('is_recurring')),
        recurring_frequency=recurring_frequency,
    )


def _apply_resolved(po: PurchaseOrder, resolved: _ResolvedOrder) -> None:
    po.vendor_ref = resolved.vendor_ref
    po.purchase_date = resolved.purchase_date
    po.expected_delivery = resolved.expected_delivery
    po.payment_terms = resolved.payment_terms
    po.priority = resolved.priority
    po.notes = resolved.notes
    po.is_recurring = resolved.is_recurring
    po.recurring_frequency = resolved.recurring_frequency

    totals = resolved.totals
    po.subtotal = totals.subtotal
    po.tax_rate = totals.tax_rate
    po.tax_amount = totals.tax_amount
    po.shipping_cost = totals.shipping_cost
    po.discount = totals.discount
    po.total_amount = totals.total_amount
    po.items = [
        PurchaseOrderItem(
            position=position,
            product_ref=str(item.product_ref).strip(),
            product_name=str(item.product_name).strip(),
            category_ref=str(item.category_ref).strip(),
            unit_price=line.unit_price,
            quantity=line.quantity,
            line_total=line.line_total,
        )
        for position, (item, line) in enumerate(zip(resolved.items, totals.lines))
    ]


def _items_as_input(po: PurchaseOrder) -> list[OrderItemInput]:
    return [
        OrderItemInput(
            product_ref=item.product_ref,
            product_name=item.product_name,
            category_ref=item.category_ref,
            unit_price=item.unit_price,
            quantity=item.quantity,
        )
        for item in po.items
    ]


def _order_values(po: PurchaseOrder) -> dict:
    return {
        'vendor_ref': po.vendor_ref,
        'purchase_date': po.purchase_date,
        'expected_delivery': po.expected_delivery,
        'payment_terms': po.payment_terms,
        'priority': po.priority,
        'order_items': _items_as_input(po),
        'tax_rate': po.tax_rate,
        'shipping_cost': po.shipping_cost,
        'discount': po.discount,
        'notes': po.notes,
        'is_recurring': po.is_recurring,
        'recurring_frequency': po.recurring_frequency,
    }


def _check_vendor_tolerant(db: Session, vendor_ref: str) -> Supplier | None:
    if parse_entity_id(vendor_ref) is None:
        logger.info('Using static vendor reference %r', vendor_ref)
        return None
    supplier = find_supplier_by_id(db, vendor_ref)
    if supplier is None:
        logger.warning('Vendor %s not found in supplier store; accepting it as a static vendor', vendor_ref)
    return supplier


def _is_numbering_conflict(exc: IntegrityError) -> bool:
    return 'order_number' in str(exc.orig).lower()


def _is_unique_violation(exc: IntegrityError) -> bool:
    text = str(exc.orig).lower()
    return 'unique' in text or 'duplicate' in text


def _insert_with_order_number(
    db: Session,
    *,
    build: Callable[[], PurchaseOrder],
    explicit_number: str | None,
    now: datetime,
) -> PurchaseOrder:
    """Assign a number and insert, regenerating once on a numbering collision.

    A rollback here discards the whole unit of work, so callers must not have
    pending writes they want to keep when calling this.
    """
    attempts = 1 if explicit_number else MAX_NUMBERING_ATTEMPTS
    for attempt in range(1, attempts + 1):
        po = build()
        try:
            po.order_number = explicit_number or next_order_number(
                db, at=now, strategy=settings.order_number_strategy
            )
            db.add(po)
            db.flush()
            return po
        except IntegrityError as exc:
            db.rollback()
            if not _is_unique_violation(exc):
                logger.exception('Purchase order insert violated a constraint')
                raise InternalError('Internal error while saving purchase order') from exc
            if explicit_number or not _is_numbering_conflict(exc):
                raise ConflictError('Purchase order with this order number already exists') from exc
            if attempt == attempts:
                logger.error('Order number collided %d times; giving up', attempts)
                raise ConflictError('Could not allocate a unique order number, please retry') from exc
            logger.warning('Order number collision on attempt %d; regenerating', attempt)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Purchase order insert failed')
            raise InternalError('Internal error while saving purchase order') from exc
    raise InternalError('Internal error while saving purchase order')


def create_purchase_order(
    db: Session,
    *,
    data: PurchaseOrderInput,
    actor_principal_id: int | None,
) -> PurchaseOrder:
    now = _now()
    resolved = _resolve_order(
        {
            'vendor_ref': data.vendor_ref,
            'purchase_date': data.purchase_date,
            'expected_delivery': data.expected_delivery,
            'payment_terms': data.payment_terms,
            'priority': data.priority,
            'order_items': data.order_items,
            'tax_rate': data.tax_rate,
            'shipping_cost': data.shipping_cost,
            'discount': data.discount,
            'notes': data.notes,
            'is_recurring': data.is_recurring,
            'recurring_frequency': data.recurring_frequency,
        },
        now=now,
    )
    _check_vendor_tolerant(db, resolved.vendor_ref)
    explicit_number = (data.order_number or '').strip().upper() or None

    def build() -> PurchaseOrder:
        po = PurchaseOrder(
            status=PurchaseOrderStatus.DRAFT,
            is_deleted=False,
            created_by_principal_id=actor_principal_id,
            created_at=now,
            updated_at=now,
        )
        _apply_resolved(po, resolved)
        return po

    po = _insert_with_order_number(db, build=build, explicit_number=explicit_number, now=now)
    logger.info('Created purchase order %s for vendor %s', po.order_number, po.vendor_ref)
    return po


def get_purchase_order(db: Session, *, purchase_order_id: int, include_deleted: bool = False) -> PurchaseOrder:
    query = select(PurchaseOrder).where(PurchaseOrder.id == purchase_order_id)
    if not include_deleted:
        query = query.where(PurchaseOrder.is_deleted.is_(False))
    po = db.execute(query).scalar_one_or_none()
    if po is None:
        raise NotFound('Purchase order not found')
    return po


def update_purchase_order(
    db: Session,
    *,
    purchase_order_id: int,
    changes: dict,
    actor_principal_id: int | None,
) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status in EDIT_LOCKED_STATUSES:
        raise InvalidState(f'Cannot update a {po.status.value.lower()} purchase order')

    rejected = sorted(key for key in changes if key not in PATCHABLE_FIELDS)
    if rejected:
        raise ValidationFailed('Validation failed', [f'{key}: cannot be changed through update' for key in rejected])

    values = _order_values(po)
    values.update(changes)
    resolved = _resolve_order(values, now=_now())

    if 'vendor_ref' in changes and resolved.vendor_ref != po.vendor_ref:
        if find_supplier_by_id(db, resolved.vendor_ref) is None:
            raise NotFound('Vendor not found')

    _apply_resolved(po, resolved)
    if actor_principal_id is not None:
        po.updated_by_principal_id = actor_principal_id
    po.updated_at = _now()
    db.flush()
    return po


def soft_delete_purchase_order(db: Session, *, purchase_order_id: int, actor_principal_id: int | None) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status in DELETE_LOCKED_STATUSES:
        raise InvalidState(f'Cannot delete a {po.status.value.lower()} purchase order')
    now = _now()
    po.is_deleted = True
    po.deleted_at = now
    if actor_principal_id is not None:
        po.updated_by_principal_id = actor_principal_id
    po.updated_at = now
    db.flush()
    return po


def bulk_soft_delete_purchase_orders(
    db: Session,
    *,
    purchase_order_ids: list[int],
    actor_principal_id: int | None,
) -> int:
    if not purchase_order_ids:
        raise ValidationFailed('Order IDs array is required', ['orderIds: at least one id is required'])

    orders = db.execute(
        select(PurchaseOrder).where(
            PurchaseOrder.id.in_(set(purchase_order_ids)),
            PurchaseOrder.is_deleted.is_(False),
        )
    ).scalars().all()
    locked = [po for po in orders if po.status in DELETE_LOCKED_STATUSES]
    if locked:
        raise InvalidState(f'Cannot delete {len(locked)} order(s) that are shipped or delivered')

    now = _now()
    for po in orders:
        po.is_deleted = True
        po.deleted_at = now
        if actor_principal_id is not None:
            po.updated_by_principal_id = actor_principal_id
        po.updated_at = now
    db.flush()
    return len(orders)


def change_purchase_order_status(
    db: Session,
    *,
    purchase_order_id: int,
    new_status: str | PurchaseOrderStatus | None,
    cancellation_reason: str | None,
    actor_principal_id: int | None,
    ip: str | None = None,
) -> PurchaseOrder:
    status = parse_status(new_status)
    if status is None:
        raise ValidationFailed('Invalid status', [f'status: must be one of {_choices(PurchaseOrderStatus)}'])

    reason = (cancellation_reason or '').strip()
    if status == PurchaseOrderStatus.CANCELLED and not reason:
        raise ValidationFailed(
            'Cancellation reason is required when cancelling an order',
            ['cancellationReason: is required when status is Cancelled'],
        )
    if len(reason) > MAX_CANCELLATION_REASON_LENGTH:
        raise ValidationFailed(
            'Validation failed',
            [f'cancellationReason: cannot exceed {MAX_CANCELLATION_REASON_LENGTH} characters'],
        )

    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    previous = po.status
    if not is_transition_allowed(previous, status, settings.status_transition_policy):
        raise InvalidTransition(f'Cannot change status from {previous.value} to {status.value}')

    now = _now()
    if status == PurchaseOrderStatus.DELIVERED and po.delivered_at is None:
        po.delivered_at = now
    if status == PurchaseOrderStatus.CANCELLED and po.cancelled_at is None:
        po.cancelled_at = now
        po.cancellation_reason = reason

    po.status = status
    if actor_principal_id is not None:
        po.updated_by_principal_id = actor_principal_id
    po.updated_at = now
    if previous != status:
        record_status_change(
            db,
            actor_principal_id=actor_principal_id,
            purchase_order_id=po.id,
            order_number=po.order_number,
            previous_status=previous.value,
            new_status=status.value,
            ip=ip,
        )
    db.flush()
    logger.info('Purchase order %s status %s -> %s', po.order_number, previous.value, status.value)
    return po


def duplicate_purchase_order(db: Session, *, purchase_order_id: int, actor_principal_id: int | None) -> PurchaseOrder:
    source = get_purchase_order(db, purchase_order_id=purchase_order_id)
    now = _now()
    lead_time = max(as_utc(source.expected_delivery) - as_utc(source.purchase_date), timedelta(0))

    values = _order_values(source)
    values['purchase_date'] = now
    values['expected_delivery'] = now + lead_time
    resolved = _resolve_order(values, now=now)
    source_number = source.order_number

    def build() -> PurchaseOrder:
        po = PurchaseOrder(
            status=PurchaseOrderStatus.DRAFT,
            is_deleted=False,
            created_by_principal_id=actor_principal_id,
            created_at=now,
            updated_at=now,
        )
        _apply_resolved(po, resolved)
        return po

    po = _insert_with_order_number(db, build=build, explicit_number=None, now=now)
    logger.info('Duplicated purchase order %s as %s', source_number, po.order_number)
    return po
