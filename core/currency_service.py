"""
core/currency_service.py — 汇率换算

业务价格全部以 USD 存储，展示币种（默认 GHS）按全局汇率换算。
调用方通过 get_rate_snapshot() 拿到不可变快照后再做换算，
同一次业务操作内的所有金额使用同一个快照，不会读到一半被改掉的汇率。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy.orm.exc import StaleDataError

from core.billing_utils import money
from core.errors import ConcurrencyConflict, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.currency_settings import CurrencyRateChange, CurrencySettings

logger = get_logger(__name__)

DEFAULT_BASE_CURRENCY = "USD"
DEFAULT_DISPLAY_CURRENCY = "GHS"
DEFAULT_EXCHANGE_RATE = Decimal("12.0000")
RATE_WARNING_THRESHOLD = Decimal("100")

_RATE_QUANT = Decimal("0.0001")


@dataclass(frozen=True)
class RateSnapshot:
    base_currency: str
    display_currency: str
    rate: Decimal
    version: int
    as_of: Optional[datetime] = None

    def to_display(self, usd_amount) -> Decimal:
        if usd_amount is None:
            return money(0)
        return money(Decimal(str(usd_amount)) * self.rate)

    def to_base(self, display_amount) -> Decimal:
        if display_amount is None or not self.rate:
            return money(0)
        return money(Decimal(str(display_amount)) / self.rate)


def _normalize_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except Exception:
        raise ValidationError(f"汇率格式不正确: {value}")
    if not rate.is_finite() or rate <= 0:
        raise ValidationError("汇率必须大于 0")
    return rate.quantize(_RATE_QUANT, rounding=ROUND_HALF_UP)


def get_current_settings(session) -> CurrencySettings:
    """读取全局汇率配置，不存在时写入默认值（USD→GHS 12.0000）。"""
    settings = session.query(CurrencySettings).order_by(CurrencySettings.created_at).first()
    if settings:
        return settings
    now = datetime.now()
    settings = CurrencySettings(
        base_currency=DEFAULT_BASE_CURRENCY,
        display_currency=DEFAULT_DISPLAY_CURRENCY,
        exchange_rate=DEFAULT_EXCHANGE_RATE,
        primary_display_currency=DEFAULT_DISPLAY_CURRENCY,
        show_both_currencies=True,
        last_updated_by="system",
        last_updated_at=now,
        created_at=now,
    )
    session.add(settings)
    session.flush()
    log_event(logger, E.CURRENCY_SETTINGS_INIT, rate=DEFAULT_EXCHANGE_RATE)
    return settings


def get_rate_snapshot(session) -> RateSnapshot:
    settings = get_current_settings(session)
    return RateSnapshot(
        base_currency=settings.base_currency,
        display_currency=settings.display_currency,
        rate=Decimal(str(settings.exchange_rate)),
        version=int(settings.version or 1),
        as_of=settings.last_updated_at,
    )


def update_exchange_rate(
    session,
    new_rate,
    updated_by: str = "",
    note: str = "",
    expected_version: int = None,
) -> CurrencySettings:
    """更新汇率；传入 expected_version 时先比对版本，客户端拿着旧页面提交会被拒绝。"""
    rate = _normalize_rate(new_rate)
    if rate > RATE_WARNING_THRESHOLD:
        logger.warning("汇率 %s 超过 %s，请确认是否输入有误", rate, RATE_WARNING_THRESHOLD)
    settings = get_current_settings(session)
    if expected_version is not None and int(expected_version) != int(settings.version or 0):
        raise ConcurrencyConflict(f"汇率版本已变更（当前 {settings.version}），请刷新后重试")
    old_rate = settings.exchange_rate
    now = datetime.now()
    settings.previous_rate = old_rate
    settings.exchange_rate = rate
    settings.last_updated_by = (updated_by or "")[:100] or None
    settings.last_updated_at = now
    try:
        session.flush()
    except StaleDataError:
        session.rollback()
        raise ConcurrencyConflict("汇率已被其他操作修改，请刷新后重试")
    session.add(
        CurrencyRateChange(
            old_rate=old_rate,
            new_rate=rate,
            version=settings.version,
            changed_by=settings.last_updated_by,
            note=(note or "").strip() or None,
            changed_at=now,
        )
    )
    session.commit()
    log_event(logger, E.CURRENCY_RATE_UPDATE, old=old_rate, new=rate, version=settings.version, by=updated_by)
    return settings


def update_display_preferences(session, show_both_currencies: bool = None, primary_display_currency: str = None) -> CurrencySettings:
    settings = get_current_settings(session)
    if show_both_currencies is not None:
        settings.show_both_currencies = bool(show_both_currencies)
    if primary_display_currency:
        value = primary_display_currency.strip().upper()
        if value not in (settings.base_currency, settings.display_currency):
            raise ValidationError(f"不支持的展示币种: {value}")
        settings.primary_display_currency = value
    try:
        session.commit()
    except StaleDataError:
        session.rollback()
        raise ConcurrencyConflict("汇率配置已被其他操作修改，请刷新后重试")
    return settings


def get_rate_history(session, limit: int = 50) -> List[Dict]:
    rows = (
        session.query(CurrencyRateChange)
        .order_by(CurrencyRateChange.changed_at.desc(), CurrencyRateChange.version.desc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )
    return [
        {
            "old_rate": str(r.old_rate) if r.old_rate is not None else None,
            "new_rate": str(r.new_rate),
            "version": r.version,
            "changed_by": r.changed_by or "",
            "note": r.note or "",
            "changed_at": r.changed_at.isoformat() if r.changed_at else None,
        }
        for r in rows
    ]


def get_exchange_rate_stats(session) -> Dict:
    settings = get_current_settings(session)
    current = Decimal(str(settings.exchange_rate))
    previous = Decimal(str(settings.previous_rate)) if settings.previous_rate is not None else None
    change_pct = None
    if previous:
        change_pct = ((current - previous) / previous * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    rates = [Decimal(str(r.new_rate)) for r in session.query(CurrencyRateChange).all()]
    rates.append(current)
    return {
        "current_rate": str(current),
        "previous_rate": str(previous) if previous is not None else None,
        "change_pct": str(change_pct) if change_pct is not None else None,
        "min_rate": str(min(rates)),
        "max_rate": str(max(rates)),
        "total_changes": len(rates) - 1,
        "version": settings.version,
        "last_updated_by": settings.last_updated_by or "",
        "last_updated_at": settings.last_updated_at.isoformat() if settings.last_updated_at else None,
    }


def format_usd(amount) -> str:
    return f"${money(amount):,.2f}"


def format_display(snapshot: RateSnapshot, usd_amount) -> str:
    return f"{snapshot.display_currency} {snapshot.to_display(usd_amount):,.2f}"


def format_dual_currency(snapshot: RateSnapshot, usd_amount) -> str:
    """GHS 71.88 ($5.99)"""
    return f"{format_display(snapshot, usd_amount)} ({format_usd(usd_amount)})"


def settings_to_dict(settings: CurrencySettings) -> Dict:
    return {
        "base_currency": settings.base_currency,
        "display_currency": settings.display_currency,
        "exchange_rate": str(settings.exchange_rate),
        "previous_rate": str(settings.previous_rate) if settings.previous_rate is not None else None,
        "version": settings.version,
        "show_both_currencies": bool(settings.show_both_currencies),
        "primary_display_currency": settings.primary_display_currency,
        "last_updated_by": settings.last_updated_by or "",
        "last_updated_at": settings.last_updated_at.isoformat() if settings.last_updated_at else None,
    }
