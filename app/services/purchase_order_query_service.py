from __future__ import annotations

import csv
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ValidationFailed
from app.models import DeliveryStatus, OrderPriority, PurchaseOrder, PurchaseOrderStatus
from app.services.date_utils import as_utc, end_of_day, format_ddmmyyyy
from app.services.purchase_order_math_service import to_money
from app.services.purchase_order_service import get_purchase_order
from app.services.status_transition_service import parse_status
from app.services.supplier_lookup_service import categories_by_ref, parse_entity_id, products_by_ref, suppliers_by_ref

DUE_SOON_WINDOW = timedelta(days=3)
RECENT_ORDERS_LIMIT = 5

SORT_COLUMNS = {
    'createdAt': PurchaseOrder.created_at,
    'updatedAt': PurchaseOrder.updated_at,
    'purchaseDate': PurchaseOrder.purchase_date,
    'expectedDelivery': PurchaseOrder.expected_delivery,
    'orderNumber': PurchaseOrder.order_number,
    'vendorRef': PurchaseOrder.vendor_ref,
    'status': PurchaseOrder.status,
    'priority': PurchaseOrder.priority,
    'subtotal': PurchaseOrder.subtotal,
    'totalAmount': PurchaseOrder.total_amount,
}

DELIVERY_STATUS_ALIASES = {
    'on time': DeliveryStatus.ON_TIME,
    'due soon': DeliveryStatus.DUE_SOON,
}

CSV_HEADER = [
    'Order Number',
    'Vendor',
    'Status',
    'Priority',
    'Payment Terms',
    'Purchase Date',
    'Expected Delivery',
    'Subtotal',
    'Tax Rate',
    'Tax Amount',
    'Shipping Cost',
    'Discount',
    'Total Amount',
    'Items Count',
    'Notes',
    'Created At',
]

OPEN_STATUSES_EXCLUDED = (PurchaseOrderStatus.DELIVERED, PurchaseOrderStatus.CANCELLED)


@dataclass(frozen=True)
class PurchaseOrderFilters:
    status: str | None = None
    vendor_ref: str | None = None
    priority: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    search: str | None = None
    delivery_status: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _money(value) -> str | None:
    if value is None:
        return None
    return str(to_money(Decimal(str(value))))


def _iso(value) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def delivery_status(po: PurchaseOrder, now: datetime | None = None) -> DeliveryStatus:
    """Classify an order by its expected delivery; computed at read time only."""
    if po.status == PurchaseOrderStatus.DELIVERED:
        return DeliveryStatus.DELIVERED
    if po.status == PurchaseOrderStatus.CANCELLED:
        return DeliveryStatus.CANCELLED
    now = now or _now()
    expected = as_utc(po.expected_delivery)
    if now > expected:
        return DeliveryStatus.OVERDUE
    if expected - now <= DUE_SOON_WINDOW:
        return DeliveryStatus.DUE_SOON
    return DeliveryStatus.ON_TIME


def order_age_days(po: PurchaseOrder, now: datetime | None = None) -> int:
    elapsed = abs((now or _now()) - as_utc(po.purchase_date))
    return math.ceil(elapsed.total_seconds() / 86400)


def parse_delivery_status(value: str | None) -> DeliveryStatus | None:
    raw = (value or '').strip().lower()
    for member in DeliveryStatus:
        if raw == member.value.lower():
            return member
    return DELIVERY_STATUS_ALIASES.get(raw)


def _vendor_payload(supplier) -> dict | None:
    if supplier is None:
        return None
    return {
        'id': supplier.id,
        'supplierName': supplier.supplier_name,
        'contactPerson': supplier.contact_person,
        'email': supplier.email,
        'phone': supplier.phone,
        'address': supplier.address,
        'city': supplier.city,
        'state': supplier.state,
        'pincode': supplier.pincode,
    }


def _lookup(rows: dict, ref: str | None):
    entity_id = parse_entity_id(ref)
    return rows.get(str(entity_id)) if entity_id is not None else None


def order_payload(po: PurchaseOrder, *, suppliers: dict, products: dict, categories: dict, now: datetime) -> dict:
    items = []
    for item in po.items:
        product = _lookup(products, item.product_ref)
        category = _lookup(categories, item.category_ref)
        items.append(
            {
                'productRef': item.product_ref,
                'productName': item.product_name,
                'categoryRef': item.category_ref,
                'unitPrice': _money(item.unit_price),
                'quantity': item.quantity,
                'lineTotal': _money(item.line_total),
                'product': (
                    {'id': product.id, 'productName': product.product_name, 'sku': product.sku, 'price': _money(product.price)}
                    if product
                    else None
                ),
                'category': {'id': category.id, 'categoryName': category.category_name} if category else None,
            }
        )

    return {
        'id': po.id,
        'orderNumber': po.order_number,
        'vendorRef': po.vendor_ref,
        'vendor': _vendor_payload(_lookup(suppliers, po.vendor_ref)),
        'purchaseDate': _iso(po.purchase_date),
        'expectedDelivery': _iso(po.expected_delivery),
        'paymentTerms': po.payment_terms.value,
        'priority': po.priority.value,
        'status': po.status.value,
        'orderItems': items,
        'subtotal': _money(po.subtotal),
        'taxRate': _money(po.tax_rate),
        'taxAmount': _money(po.tax_amount),
        'shippingCost': _money(po.shipping_cost),
        'discount': _money(po.discount),
        'totalAmount': _money(po.total_amount),
        'notes': po.notes,
        'isRecurring': po.is_recurring,
        'recurringFrequency': po.recurring_frequency.value if po.recurring_frequency else None,
        'createdBy': po.created_by_principal_id,
        'updatedBy': po.updated_by_principal_id,
        'isDeleted': po.is_deleted,
        'deletedAt': _iso(po.deleted_at),
        'deliveredAt': _iso(po.delivered_at),
        'cancelledAt': _iso(po.cancelled_at),
        'cancellationReason': po.cancellation_reason,
        'deliveryStatus': delivery_status(po, now).value,
        'orderAgeDays': order_age_days(po, now),
        'createdAt': _iso(po.created_at),
        'updatedAt': _iso(po.updated_at),
    }


def build_order_payloads(db: Session, orders: list[PurchaseOrder], *, now: datetime | None = None) -> list[dict]:
    now = now or _now()
    suppliers = suppliers_by_ref(db, {po.vendor_ref for po in orders})
    products = products_by_ref(db, {item.product_ref for po in orders for item in po.items})
    categories = categories_by_ref(db, {item.category_ref for po in orders for item in po.items})
    return [
        order_payload(po, suppliers=suppliers, products=products, categories=categories, now=now) for po in orders
    ]


def get_purchase_order_detail(db: Session, *, purchase_order_id: int) -> dict:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    return build_order_payloads(db, [po])[0]


def _parse_bound(value: str | None, *, field: str, upper: bool, errors: list[str]) -> datetime | None:
    raw = (value or '').strip()
    if not raw:
        return None
    try:
        parsed = as_utc(raw)
    except ValueError:
        errors.append(f'{field}: is not a valid date')
        return None
    # A bare date as the upper bound covers that whole day.
    if upper and 'T' not in raw and ' ' not in raw:
        return end_of_day(parsed.date())
    return parsed


def _filter_conditions(filters: PurchaseOrderFilters, *, now: datetime, with_delivery_status: bool) -> list:
    errors: list[str] = []
    conditions = [PurchaseOrder.is_deleted.is_(False)]

    if filters.status:
        status = parse_status(filters.status)
        if status is None:
            errors.append(f'status: unknown status {filters.status!r}')
        else:
            conditions.append(PurchaseOrder.status == status)

    if filters.vendor_ref:
        conditions.append(PurchaseOrder.vendor_ref == filters.vendor_ref.strip())

    if filters.priority:
        priority = next((p for p in OrderPriority if p.value.lower() == filters.priority.strip().lower()), None)
        if priority is None:
            errors.append(f'priority: unknown priority {filters.priority!r}')
        else:
            conditions.append(PurchaseOrder.priority == priority)

    start = _parse_bound(filters.start_date, field='startDate', upper=False, errors=errors)
    end = _parse_bound(filters.end_date, field='endDate', upper=True, errors=errors)
    if start is not None:
        conditions.append(PurchaseOrder.purchase_date >= start)
    if end is not None:
        conditions.append(PurchaseOrder.purchase_date <= end)

    term = (filters.search or '').strip()
    if term:
        conditions.append(
            or_(
                PurchaseOrder.order_number.icontains(term, autoescape=True),
                PurchaseOrder.notes.icontains(term, autoescape=True),
            )
        )

    if with_delivery_status and filters.delivery_status:
        wanted = parse_delivery_status(filters.delivery_status)
        if wanted is None:
            errors.append(f'deliveryStatus: unknown delivery status {filters.delivery_status!r}')
        else:
            conditions.append(_delivery_status_condition(wanted, now))

    if errors:
        raise ValidationFailed('Invalid filters', errors)
    return conditions


def _delivery_status_condition(wanted: DeliveryStatus, now: datetime):
    # Mirrors delivery_status() so counts and pages match the per-row label.
    if wanted == DeliveryStatus.DELIVERED:
        return PurchaseOrder.status == PurchaseOrderStatus.DELIVERED
    if wanted == DeliveryStatus.CANCELLED:
        return PurchaseOrder.status == PurchaseOrderStatus.CANCELLED
    still_open = PurchaseOrder.status.not_in(OPEN_STATUSES_EXCLUDED)
    if wanted == DeliveryStatus.OVERDUE:
        return and_(still_open, PurchaseOrder.expected_delivery < now)
    if wanted == DeliveryStatus.DUE_SOON:
        return and_(
            still_open,
            PurchaseOrder.expected_delivery >= now,
            PurchaseOrder.expected_delivery <= now + DUE_SOON_WINDOW,
        )
    return and_(still_open, PurchaseOrder.expected_delivery > now + DUE_SOON_WINDOW)


def list_purchase_orders(
    db: Session,
    *,
    filters: PurchaseOrderFilters,
    sort_by: str = 'createdAt',
    sort_order: str = 'desc',
    page: int = 1,
    limit: int | None = None,
    now: datetime | None = None,
) -> tuple[list[dict], dict]:
    now = now or _now()
    column = SORT_COLUMNS.get(sort_by or 'createdAt')
    if column is None:
        raise ValidationFailed('Invalid sort field', [f'sortBy: must be one of {", ".join(SORT_COLUMNS)}'])
    conditions = _filter_conditions(filters, now=now, with_delivery_status=True)

    page_number = max(1, page or 1)
    page_size = settings.default_page_size if limit is None else limit
    page_size = min(settings.max_page_size, max(1, page_size))

    total_count = db.execute(select(func.count(PurchaseOrder.id)).where(*conditions)).scalar_one()
    ordering = column.asc() if (sort_order or '').lower() == 'asc' else column.desc()
    orders = (
        db.execute(
            select(PurchaseOrder)
            .where(*conditions)
            .order_by(ordering, PurchaseOrder.id.desc())
            .offset((page_number - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )

    total_pages = math.ceil(total_count / page_size)
    meta = {
        'currentPage': page_number,
        'totalPages': total_pages,
        'totalCount': total_count,
        'pageSize': page_size,
        'hasNext': page_number < total_pages,
        'hasPrev': page_number > 1,
    }
    return build_order_payloads(db, orders, now=now), meta


def purchase_order_stats(db: Session, *, now: datetime | None = None) -> dict:
    now = now or _now()
    live = PurchaseOrder.is_deleted.is_(False)

    grouped = db.execute(
        select(PurchaseOrder.status, func.count(PurchaseOrder.id), func.sum(PurchaseOrder.total_amount))
        .where(live)
        .group_by(PurchaseOrder.status)
        .order_by(PurchaseOrder.status)
    ).all()
    status_stats = [
        {'status': status.value, 'count': count, 'totalAmount': _money(total or 0)} for status, count, total in grouped
    ]

    total_orders = db.execute(select(func.count(PurchaseOrder.id)).where(live)).scalar_one()
    overdue_orders = db.execute(
        select(func.count(PurchaseOrder.id)).where(
            live,
            PurchaseOrder.status.not_in(OPEN_STATUSES_EXCLUDED),
            PurchaseOrder.expected_delivery < now,
        )
    ).scalar_one()

    recent = (
        db.execute(
            select(PurchaseOrder)
            .where(live)
            .order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
            .limit(RECENT_ORDERS_LIMIT)
        )
        .scalars()
        .all()
    )
    suppliers = suppliers_by_ref(db, {po.vendor_ref for po in recent})
    recent_orders = []
    for po in recent:
        supplier = _lookup(suppliers, po.vendor_ref)
        recent_orders.append(
            {
                'id': po.id,
                'orderNumber': po.order_number,
                'vendorRef': po.vendor_ref,
                'vendorName': supplier.supplier_name if supplier else None,
                'totalAmount': _money(po.total_amount),
                'status': po.status.value,
                'createdAt': _iso(po.created_at),
            }
        )

    return {
        'statusStats': status_stats,
        'totalOrders': total_orders,
        'overdueOrders': overdue_orders,
        'recentOrders': recent_orders,
    }


def _sanitize(value: str | None) -> str:
    text = value or ''
    return text.replace(',', ';').replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ')


def export_purchase_orders_csv(db: Session, *, filters: PurchaseOrderFilters) -> tuple[str, int]:
    conditions = _filter_conditions(filters, now=_now(), with_delivery_status=False)
    orders = (
        db.execute(
            select(PurchaseOrder).where(*conditions).order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        )
        .scalars()
        .all()
    )
    suppliers = suppliers_by_ref(db, {po.vendor_ref for po in orders})

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(CSV_HEADER)
    for po in orders:
        supplier = _lookup(suppliers, po.vendor_ref)
        writer.writerow(
            [
                po.order_number,
                _sanitize(supplier.supplier_name) if supplier else 'N/A',
                po.status.value,
                po.priority.value,
                po.payment_terms.value,
                format_ddmmyyyy(as_utc(po.purchase_date)),
                format_ddmmyyyy(as_utc(po.expected_delivery)),
                _money(po.subtotal),
                _money(po.tax_rate),
                _money(po.tax_amount),
                _money(po.shipping_cost),
                _money(po.discount),
                _money(po.total_amount),
                len(po.items),
                _sanitize(po.notes),
                format_ddmmyyyy(as_utc(po.created_at)),
            ]
        )
    return sio.getvalue(), len(orders)
