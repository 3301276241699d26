import calendar
import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """统一转成两位小数的 Decimal（四舍五入）。"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(d: Union[date, datetime], months: int):
    """按自然月加减，月底自动收敛（1 月 31 日 + 1 月 = 2 月 28/29 日）。"""
    month = d.month - 1 + int(months)
    year = d.year + month // 12
    month = month % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def days_between(start: date, end: date) -> int:
    """end - start 的天数，start 晚于 end 时为 0。"""
    if start is None or end is None:
        return 0
    return max(0, (end - start).days)


def new_reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


def as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
