from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class PurchaseOrderStatus(str, Enum):
    DRAFT = 'Draft'
    PENDING = 'Pending'
    CONFIRMED = 'Confirmed'
    SHIPPED = 'Shipped'
    DELIVERED = 'Delivered'
    CANCELLED = 'Cancelled'
    RETURNED = 'Returned'


class PaymentTerms(str, Enum):
    NET_30 = 'Net30'
    NET_15 = 'Net15'
    NET_7 = 'Net7'
    IMMEDIATE = 'Immediate'
    COD = 'COD'
    ADVANCE_PAYMENT = 'AdvancePayment'


class OrderPriority(str, Enum):
    LOW = 'Low'
    MEDIUM = 'Medium'
    HIGH = 'High'
    URGENT = 'Urgent'


class RecurringFrequency(str, Enum):
    WEEKLY = 'Weekly'
    MONTHLY = 'Monthly'
    QUARTERLY = 'Quarterly'
    YEARLY = 'Yearly'


class DeliveryStatus(str, Enum):
    ON_TIME = 'OnTime'
    DUE_SOON = 'DueSoon'
    OVERDUE = 'Overdue'
    DELIVERED = 'Delivered'
    CANCELLED = 'Cancelled'


class Supplier(Base):
    __tablename__ = 'suppliers'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    supplier_name: Mapped[str] = mapped_column(Text, nullable=False)
    contact_person: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    state: Mapped[str | None] = mapped_column(Text)
    pincode: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Category(Base):
    __tablename__ = 'categories'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    category_name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class Product(Base):
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    category_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('categories.id', ondelete='SET NULL'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class PurchaseOrder(Base):
    __tablename__ = 'purchase_orders'
    __table_args__ = (
        UniqueConstraint('order_number', name='purchase_orders_order_number_key'),
        CheckConstraint('tax_rate >= 0 AND tax_rate <= 100', name='purchase_orders_tax_rate_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    vendor_ref: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    expected_delivery: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_terms: Mapped[PaymentTerms] = mapped_column(
        SQLEnum(PaymentTerms, name='purchase_order_payment_terms', values_callable=_enum_values),
        nullable=False,
        default=PaymentTerms.NET_30,
        server_default=PaymentTerms.NET_30.value,
    )
    priority: Mapped[OrderPriority] = mapped_column(
        SQLEnum(OrderPriority, name='purchase_order_priority', values_callable=_enum_values),
        nullable=False,
        default=OrderPriority.MEDIUM,
        server_default=OrderPriority.MEDIUM.value,
    )
    status: Mapped[PurchaseOrderStatus] = mapped_column(
        SQLEnum(PurchaseOrderStatus, name='purchase_order_status', values_callable=_enum_values),
        nullable=False,
        default=PurchaseOrderStatus.DRAFT,
        server_default=PurchaseOrderStatus.DRAFT.value,
        index=True,
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal('18'))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    discount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    notes: Mapped[str | None] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    recurring_frequency: Mapped[RecurringFrequency | None] = mapped_column(
        SQLEnum(RecurringFrequency, name='purchase_order_recurring_frequency', values_callable=_enum_values)
    )
    # Identities come from the auth gateway and are not owned by this database.
    created_by_principal_id: Mapped[int | None] = mapped_column(BigInteger)
    updated_by_principal_id: Mapped[int | None] = mapped_column(BigInteger)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false', index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    items: Mapped[list[PurchaseOrderItem]] = relationship(
        back_populates='purchase_order',
        cascade='all, delete-orphan',
        order_by='PurchaseOrderItem.position',
        lazy='selectin',
    )


class PurchaseOrderItem(Base):
    __tablename__ = 'purchase_order_items'
    __table_args__ = (
        CheckConstraint('quantity >= 1', name='purchase_order_items_quantity_ck'),
        CheckConstraint('unit_price >= 0', name='purchase_order_items_unit_price_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('purchase_orders.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_ref: Mapped[str] = mapped_column(Text, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    category_ref: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    purchase_order: Mapped[PurchaseOrder] = relationship(back_populates='items')


class OrderNumberCounter(Base):
    __tablename__ = 'order_number_counters'

    # Calendar month as YYYYMM.
    period: Mapped[str] = mapped_column(String(6), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    purchase_order_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey('purchase_orders.id', ondelete='SET NULL'), index=True
    )
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
