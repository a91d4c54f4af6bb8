from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def as_utc(value: datetime | date | str | None) -> datetime | None:
    """Normalise a date, datetime or ISO string to an aware UTC datetime.

    Plain dates mean midnight UTC. Naive datetimes (as SQLite hands them back)
    are taken to be UTC already.
    """
    if value is None:
        return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith('Z'):
            raw = raw[:-1] + '+00:00'
        value = datetime.fromisoformat(raw) if ('T' in raw or ' ' in raw) else date.fromisoformat(raw)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc) + timedelta(days=1) - timedelta(microseconds=1)


def format_ddmmyyyy(value: datetime | date | None) -> str:
    if value is None:
        return ''
    return value.strftime('%d/%m/%Y')
