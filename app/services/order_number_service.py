"""Monthly purchase-order numbering: ``PO-{YYYY}{MM}-{NNN}``.

Two strategies:

``counter``
    One ``order_number_counters`` row per month, locked with
    ``SELECT ... FOR UPDATE`` and incremented. The counter is never allowed
    to fall behind numbers already stored for the month.

``scan``
    Read the greatest stored number for the month and add one. Two writers
    can read the same value; the unique index on ``order_number`` rejects the
    second insert and the caller regenerates.

Neither strategy commits; the increment is only visible once the caller's
transaction commits.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import OrderNumberCounter, PurchaseOrder

logger = logging.getLogger(__name__)

COUNTER_STRATEGY = 'counter'
SCAN_STRATEGY = 'scan'

ORDER_NUMBER_RE = re.compile(r'^PO-(\d{4})(\d{2})-(\d{3,})$')


def period_key(at: datetime) -> str:
    at_utc = at.astimezone(timezone.utc) if at.tzinfo else at
    return f'{at_utc.year:04d}{at_utc.month:02d}'


def format_order_number(period: str, sequence: int) -> str:
    return f'PO-{period}-{sequence:03d}'


def parse_sequence(order_number: str | None) -> int | None:
    match = ORDER_NUMBER_RE.match((order_number or '').strip().upper())
    if not match:
        return None
    return int(match.group(3))


def latest_sequence(db: Session, period: str) -> int:
    prefix = f'PO-{period}-'
    # Length first so that -1000 sorts after -999.
    latest = db.execute(
        select(PurchaseOrder.order_number)
        .where(PurchaseOrder.order_number.like(f'{prefix}%'))
        .order_by(func.length(PurchaseOrder.order_number).desc(), PurchaseOrder.order_number.desc())
        .limit(1)
    ).scalar_one_or_none()
    return parse_sequence(latest) or 0


def _next_by_scan(db: Session, period: str) -> int:
    return latest_sequence(db, period) + 1


def _next_by_counter(db: Session, period: str) -> int:
    counter = db.execute(
        select(OrderNumberCounter)
        .where(OrderNumberCounter.period == period)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if counter is None:
        # A concurrent first insert for the same month fails on the primary
        # key; the caller treats that like any other numbering collision.
        counter = OrderNumberCounter(period=period, last_value=0)
        db.add(counter)

    # Never fall behind numbers written explicitly or by the scan strategy.
    counter.last_value = max(counter.last_value, latest_sequence(db, period)) + 1
    counter.updated_at = datetime.now(tz=timezone.utc)
    db.flush()
    return counter.last_value


def next_order_number(db: Session, *, at: datetime, strategy: str = COUNTER_STRATEGY) -> str:
    period = period_key(at)
    if strategy == COUNTER_STRATEGY:
        sequence = _next_by_counter(db, period)
    elif strategy == SCAN_STRATEGY:
        sequence = _next_by_scan(db, period)
    else:
        raise ValueError(f'Unknown order number strategy: {strategy}')
    order_number = format_order_number(period, sequence)
    logger.debug('Allocated order number %s (strategy=%s)', order_number, strategy)
    return order_number
