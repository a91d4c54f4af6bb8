from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Category, Product, Supplier


def parse_entity_id(ref: str | int | None) -> int | None:
    """Return the numeric id behind a reference, or None for static/seed refs."""
    if ref is None:
        return None
    raw = str(ref).strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def find_supplier_by_id(db: Session, ref: str | int | None) -> Supplier | None:
    supplier_id = parse_entity_id(ref)
    if supplier_id is None:
        return None
    return db.execute(select(Supplier).where(Supplier.id == supplier_id)).scalar_one_or_none()


def suppliers_by_ref(db: Session, refs: set[str]) -> dict[str, Supplier]:
    ids = {parse_entity_id(ref) for ref in refs} - {None}
    if not ids:
        return {}
    rows = db.execute(select(Supplier).where(Supplier.id.in_(ids))).scalars().all()
    return {str(row.id): row for row in rows}


def products_by_ref(db: Session, refs: set[str]) -> dict[str, Product]:
    ids = {parse_entity_id(ref) for ref in refs} - {None}
    if not ids:
        return {}
    rows = db.execute(select(Product).where(Product.id.in_(ids))).scalars().all()
    return {str(row.id): row for row in rows}


def categories_by_ref(db: Session, refs: set[str]) -> dict[str, Category]:
    ids = {parse_entity_id(ref) for ref in refs} - {None}
    if not ids:
        return {}
    rows = db.execute(select(Category).where(Category.id.in_(ids))).scalars().all()
    return {str(row.id): row for row in rows}
