# parrainage/utils/dates.py
from datetime import datetime, timedelta, timezone

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_datetime(value) -> datetime | None:
    """Разбирает дату из метаданных. Даты без таймзоны считаются UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = isoparse(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def discount_end_date(start: datetime, months: int, grace_days: int) -> datetime:
    """Дата окончания скидки: длительность в месяцах плюс льготные дни."""
    return start + relativedelta(months=months) + timedelta(days=grace_days)
