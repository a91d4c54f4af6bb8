from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.logging_config import configure_logging
from app.models import Base, Category, Product, PurchaseOrder, Supplier
from app.services.purchase_order_math_service import OrderItemInput
from app.services.purchase_order_service import PurchaseOrderInput, create_purchase_order


def seed() -> None:
    configure_logging()
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        supplier = db.execute(select(Supplier).where(Supplier.supplier_name == 'Sharma Traders')).scalar_one_or_none()
        if not supplier:
            supplier = Supplier(
                supplier_name='Sharma Traders',
                contact_person='Anil Sharma',
                email='orders@sharmatraders.example',
                phone='+91 98765 43210',
                address='12 Market Road',
                city='Pune',
                state='Maharashtra',
                pincode='411001',
                active=True,
            )
            db.add(supplier)
            db.flush()

        category = db.execute(select(Category).where(Category.category_name == 'Beverages')).scalar_one_or_none()
        if not category:
            category = Category(category_name='Beverages', active=True)
            db.add(category)
            db.flush()

        product = db.execute(select(Product).where(Product.sku == 'BEV-TEA-500')).scalar_one_or_none()
        if not product:
            product = Product(
                product_name='Assam Tea 500g',
                sku='BEV-TEA-500',
                price=Decimal('240.00'),
                category_id=category.id,
                active=True,
            )
            db.add(product)
            db.flush()

        has_orders = db.execute(select(PurchaseOrder.id).limit(1)).first()
        if not has_orders:
            db.commit()
            create_purchase_order(
                db,
                data=PurchaseOrderInput(
                    vendor_ref=str(supplier.id),
                    expected_delivery=datetime.now(tz=timezone.utc) + timedelta(days=7),
                    order_items=[
                        OrderItemInput(
                            product_ref=str(product.id),
                            product_name=product.product_name,
                            category_ref=str(category.id),
                            unit_price=Decimal('240.00'),
                            quantity=10,
                        )
                    ],
                    shipping_cost=Decimal('150'),
                    notes='Seeded example order',
                ),
                actor_principal_id=None,
            )

        db.commit()


if __name__ == '__main__':
    seed()
