from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base, PurchaseOrder, PurchaseOrderItem, PurchaseOrderStatus, Supplier
from app.services.purchase_order_math_service import OrderItemInput

FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_session_factory():
    engine = create_engine(
        'sqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def item(**overrides) -> OrderItemInput:
    values = {
        'product_ref': 'PRD-1',
        'product_name': 'Assam Tea 500g',
        'category_ref': 'CAT-1',
        'unit_price': Decimal('100'),
        'quantity': 2,
    }
    values.update(overrides)
    return OrderItemInput(**values)


def add_supplier(db, name: str = 'Sharma Traders') -> Supplier:
    supplier = Supplier(supplier_name=name, contact_person='Anil', email='a@example.com', active=True)
    db.add(supplier)
    db.flush()
    return supplier


def add_order(
    db,
    *,
    order_number: str,
    status: PurchaseOrderStatus = PurchaseOrderStatus.DRAFT,
    expected_in: timedelta = timedelta(days=10),
    now: datetime = FIXED_NOW,
    vendor_ref: str = 'static-vendor',
    notes: str | None = None,
    total: Decimal = Decimal('118.00'),
    is_deleted: bool = False,
) -> PurchaseOrder:
    """Insert an order row directly, bypassing the service layer."""
    po = PurchaseOrder(
        order_number=order_number,
        vendor_ref=vendor_ref,
        purchase_date=now,
        expected_delivery=now + expected_in,
        status=status,
        subtotal=Decimal('100.00'),
        tax_rate=Decimal('18'),
        tax_amount=Decimal('18.00'),
        shipping_cost=Decimal('0.00'),
        discount=Decimal('0.00'),
        total_amount=total,
        notes=notes,
        is_deleted=is_deleted,
        created_at=now,
        updated_at=now,
    )
    po.items = [
        PurchaseOrderItem(
            position=0,
            product_ref='PRD-1',
            product_name='Assam Tea 500g',
            category_ref='CAT-1',
            unit_price=Decimal('100.00'),
            quantity=1,
            line_total=Decimal('100.00'),
        )
    ]
    db.add(po)
    db.flush()
    return po
