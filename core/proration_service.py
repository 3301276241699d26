"""
core/proration_service.py — 套餐/计费周期变更

周期中途变更时，旧套餐剩余天数折算为抵扣额，新套餐按同样天数计费，
差额即为本次需支付金额：

    period_days     = 当前周期总天数（current_period_start → current_period_end）
    unused_credit   = 旧周期价 × 剩余天数 / period_days
    prorated_charge = 新周期价 × 剩余天数 / period_days
    net_charge      = prorated_charge - unused_credit

"周期价"为档位在对应计费周期下的月均价 × 当前周期月数，
因此纯周期变更（如月付改年付）只体现年付折扣带来的差价，新周期从下次续费开始生效。
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from core.billing_utils import days_between, money, new_reference
from core.currency_service import RateSnapshot, get_rate_snapshot
from core.errors import ConcurrencyConflict, NotFoundError, PaymentFailure, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.billing_payment import PaymentStatus
from core.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from core.models.tier_change import TierChangeRecord, TierChangeType
from core.notice_service import create_notice
from core.pricing_service import get_interval_by_name, get_period_price, get_tier_by_name
from core.subscription_service import get_subscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class TierChangeQuote:
    tenant_id: str
    old_tier_name: str
    new_tier_name: str
    old_interval_name: str
    new_interval_name: str
    change_type: TierChangeType
    days_used: int
    days_remaining: int
    period_length_days: int
    old_price_usd: Decimal
    new_price_usd: Decimal
    unused_credit_usd: Decimal
    prorated_charge_usd: Decimal
    net_charge_usd: Decimal
    net_charge_display: Decimal
    snapshot: RateSnapshot

    def to_dict(self) -> Dict:
        return {
            "tenant_id": self.tenant_id,
            "old_tier": self.old_tier_name,
            "new_tier": self.new_tier_name,
            "old_interval": self.old_interval_name,
            "new_interval": self.new_interval_name,
            "change_type": self.change_type.value,
            "days_used": self.days_used,
            "days_remaining": self.days_remaining,
            "period_length_days": self.period_length_days,
            "old_price_usd": str(self.old_price_usd),
            "new_price_usd": str(self.new_price_usd),
            "unused_credit_usd": str(self.unused_credit_usd),
            "prorated_charge_usd": str(self.prorated_charge_usd),
            "net_charge_usd": str(self.net_charge_usd),
            "net_charge_display": str(self.net_charge_display),
            "display_currency": self.snapshot.display_currency,
            "exchange_rate": str(self.snapshot.rate),
        }


def _change_type(tier_changed: bool, interval_changed: bool) -> TierChangeType:
    if tier_changed and interval_changed:
        return TierChangeType.COMBINED
    if tier_changed:
        return TierChangeType.TIER_UPGRADE
    if interval_changed:
        return TierChangeType.INTERVAL_CHANGE
    raise ValidationError("新套餐与当前套餐相同，无需变更")


def calculate_tier_change(
    sub: TenantSubscription,
    new_tier,
    new_interval,
    today: date,
    snapshot: RateSnapshot,
) -> TierChangeQuote:
    """纯计算，不落库。"""
    change_type = _change_type(new_tier.id != sub.tier_id, new_interval.id != sub.interval_id)
    start, end = sub.current_period_start, sub.current_period_end
    period_days = days_between(start, end)
    if period_days <= 0:
        raise ValidationError("当前计费周期无效，无法计算折算金额")
    pivot = min(max(today, start), end)
    days_used = days_between(start, pivot)
    days_remaining = days_between(pivot, end)

    months = int(sub.interval.months)
    old_price = get_period_price(sub.tier, sub.interval.name, months)
    new_price = get_period_price(new_tier, new_interval.name, months)
    unused_credit = money(old_price * days_remaining / period_days)
    prorated_charge = money(new_price * days_remaining / period_days)
    net = prorated_charge - unused_credit
    return TierChangeQuote(
        tenant_id=sub.tenant_id,
        old_tier_name=sub.tier.tier_name,
        new_tier_name=new_tier.tier_name,
        old_interval_name=sub.interval.name,
        new_interval_name=new_interval.name,
        change_type=change_type,
        days_used=days_used,
        days_remaining=days_remaining,
        period_length_days=period_days,
        old_price_usd=money(old_price),
        new_price_usd=money(new_price),
        unused_credit_usd=unused_credit,
        prorated_charge_usd=prorated_charge,
        net_charge_usd=net,
        net_charge_display=snapshot.to_display(net),
        snapshot=snapshot,
    )


def _load_change_targets(session, sub: TenantSubscription, new_tier_name: str, new_interval_name: str, member_count: Optional[int]):
    if sub.status != SubscriptionStatus.ACTIVE:
        raise ValidationError(f"订阅状态 {sub.status.value} 不能变更套餐")
    new_tier = get_tier_by_name(session, new_tier_name) if new_tier_name else sub.tier
    new_interval = get_interval_by_name(session, new_interval_name) if new_interval_name else sub.interval
    if not new_tier.is_active:
        raise ValidationError(f"档位 {new_tier.tier_name} 已停用")
    if member_count is not None and not new_tier.is_in_range(int(member_count)):
        raise ValidationError(f"当前成员数 {member_count} 不在档位 {new_tier.tier_name} 的范围内")
    return new_tier, new_interval


def preview_tier_change(
    session,
    tenant_id: str,
    new_tier_name: str = None,
    new_interval_name: str = None,
    member_count: int = None,
    today: date = None,
) -> TierChangeQuote:
    today = today or date.today()
    sub = get_subscription(session, tenant_id)
    new_tier, new_interval = _load_change_targets(session, sub, new_tier_name, new_interval_name, member_count)
    return calculate_tier_change(sub, new_tier, new_interval, today, get_rate_snapshot(session))


def get_pending_tier_change(session, tenant_id: str) -> Optional[TierChangeRecord]:
    return (
        session.query(TierChangeRecord)
        .filter(TierChangeRecord.tenant_id == tenant_id, TierChangeRecord.payment_status == PaymentStatus.PENDING)
        .first()
    )


def request_tier_change(
    session,
    tenant_id: str,
    gateway,
    new_tier_name: str = None,
    new_interval_name: str = None,
    reason: str = "",
    requested_by: str = "",
    member_count: int = None,
    today: date = None,
    email: str = "",
) -> Dict:
    """
    发起套餐变更。

    先落一条 PENDING 记录（带唯一 payment_reference）再调用网关，
    网关结果通过 finalize_tier_change 回写；净额 <= 0 时直接生效，负数记为待人工处理的余额。
    """
    today = today or date.today()
    sub = get_subscription(session, tenant_id)
    if get_pending_tier_change(session, tenant_id):
        raise ConcurrencyConflict("已有待支付的套餐变更，请先完成或取消")
    new_tier, new_interval = _load_change_targets(session, sub, new_tier_name, new_interval_name, member_count)
    quote = calculate_tier_change(sub, new_tier, new_interval, today, get_rate_snapshot(session))

    reference = new_reference("TIER_CHANGE")
    record = TierChangeRecord(
        tenant_id=tenant_id,
        pending_tenant_id=tenant_id,
        old_tier_name=quote.old_tier_name,
        new_tier_name=quote.new_tier_name,
        old_interval_name=quote.old_interval_name,
        new_interval_name=quote.new_interval_name,
        change_type=quote.change_type,
        days_used=quote.days_used,
        days_remaining=quote.days_remaining,
        period_length_days=quote.period_length_days,
        old_price_usd=quote.old_price_usd,
        new_price_usd=quote.new_price_usd,
        unused_credit_usd=quote.unused_credit_usd,
        prorated_charge_usd=quote.prorated_charge_usd,
        net_charge_usd=quote.net_charge_usd,
        credit_owed_usd=-quote.net_charge_usd if quote.net_charge_usd < 0 else None,
        net_charge_display=quote.net_charge_display,
        display_currency=quote.snapshot.display_currency,
        exchange_rate=quote.snapshot.rate,
        rate_version=quote.snapshot.version,
        payment_reference=reference,
        payment_status=PaymentStatus.PENDING,
        reason=(reason or "").strip() or None,
        requested_by=(requested_by or "")[:100] or None,
        requested_at=datetime.now(),
    )
    session.add(record)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConcurrencyConflict("已有待支付的套餐变更，请先完成或取消")
    log_event(
        logger,
        E.TIER_CHANGE_REQUEST,
        tenant_id=tenant_id,
        reference=reference,
        change=quote.change_type.value,
        net_usd=quote.net_charge_usd,
    )

    result = {"reference": reference, "quote": quote.to_dict(), "authorization_url": "", "status": PaymentStatus.PENDING.value}
    if quote.net_charge_usd <= 0:
        finalize_tier_change(session, reference, success=True, transaction_id="NO_CHARGE")
        result["status"] = PaymentStatus.COMPLETED.value
        return result

    try:
        auth = gateway.authorize(tenant_id, quote.net_charge_display, quote.snapshot.display_currency, reference, email=email)
    except PaymentFailure as e:
        finalize_tier_change(session, reference, success=False, reason=str(e))
        raise
    result["authorization_url"] = auth.authorization_url
    return result


def _get_record(session, reference: str) -> TierChangeRecord:
    record = session.query(TierChangeRecord).filter(TierChangeRecord.payment_reference == reference).first()
    if not record:
        raise NotFoundError(f"套餐变更记录不存在: {reference}")
    return record


def _record_paid_after_cancel(session, record: TierChangeRecord, transaction_id: str, now: datetime) -> None:
    """变更已取消或已判失败后才到账：不改套餐，实付金额记为待退还余额。"""
    record.gateway_transaction_id = (transaction_id or "")[:128] or None
    record.credit_owed_usd = money(record.net_charge_usd)
    record.completed_at = now
    create_notice(
        session,
        record.tenant_id,
        "TIER_CHANGE_REFUND_DUE",
        {"amount_usd": record.credit_owed_usd, "tier": record.new_tier_name},
        ref_id=record.payment_reference,
    )
    session.commit()
    log_event(
        logger,
        E.TIER_CHANGE_PAID_AFTER_CANCEL,
        level="warning",
        tenant_id=record.tenant_id,
        reference=record.payment_reference,
        amount=record.credit_owed_usd,
        transaction_id=record.gateway_transaction_id,
    )


def finalize_tier_change(
    session,
    reference: str,
    success: bool,
    transaction_id: str = "",
    reason: str = "",
    now: datetime = None,
) -> TierChangeRecord:
    """网关结果回写；同一 reference 重复回调不会重复生效。"""
    now = now or datetime.now()
    record = _get_record(session, reference)
    if record.payment_status != PaymentStatus.PENDING:
        if success and record.payment_status == PaymentStatus.FAILED and record.credit_owed_usd is None:
            _record_paid_after_cancel(session, record, transaction_id, now)
        return record
    record.pending_tenant_id = None
    record.completed_at = now
    record.gateway_transaction_id = (transaction_id or "")[:128] or None
    if success:
        sub = get_subscription(session, record.tenant_id)
        sub.tier_id = get_tier_by_name(session, record.new_tier_name).id
        sub.interval_id = get_interval_by_name(session, record.new_interval_name).id
        sub.updated_at = now
        record.payment_status = PaymentStatus.COMPLETED
        create_notice(
            session,
            record.tenant_id,
            "TIER_CHANGE_COMPLETED",
            {"tier": record.new_tier_name, "interval": record.new_interval_name, "credit_owed_usd": record.credit_owed_usd},
            ref_id=reference,
        )
        session.commit()
        # 关联对象需重新加载，否则 sub.tier 仍指向旧档位
        session.refresh(sub)
        log_event(
            logger,
            E.TIER_CHANGE_COMPLETE,
            tenant_id=record.tenant_id,
            reference=reference,
            tier=record.new_tier_name,
            interval=record.new_interval_name,
        )
    else:
        record.payment_status = PaymentStatus.FAILED
        record.failure_reason = (reason or "")[:500] or None
        create_notice(session, record.tenant_id, "TIER_CHANGE_FAILED", {"reason": reason}, ref_id=reference)
        session.commit()
        log_event(logger, E.TIER_CHANGE_FAIL, level="warning", tenant_id=record.tenant_id, reference=reference, reason=reason)
    return record


def cancel_pending_tier_change(session, tenant_id: str, canceled_by: str = "") -> TierChangeRecord:
    record = get_pending_tier_change(session, tenant_id)
    if not record:
        raise NotFoundError("没有待支付的套餐变更")
    record.payment_status = PaymentStatus.FAILED
    record.pending_tenant_id = None
    record.failure_reason = f"用户取消 {canceled_by}".strip()
    record.completed_at = datetime.now()
    session.commit()
    log_event(logger, E.TIER_CHANGE_CANCEL, tenant_id=tenant_id, reference=record.payment_reference, by=canceled_by)
    return record


def tier_change_to_dict(record: TierChangeRecord) -> Dict:
    return {
        "reference": record.payment_reference,
        "tenant_id": record.tenant_id,
        "change_type": record.change_type.value,
        "old_tier": record.old_tier_name,
        "new_tier": record.new_tier_name,
        "old_interval": record.old_interval_name,
        "new_interval": record.new_interval_name,
        "days_used": record.days_used,
        "days_remaining": record.days_remaining,
        "period_length_days": record.period_length_days,
        "unused_credit_usd": str(record.unused_credit_usd),
        "prorated_charge_usd": str(record.prorated_charge_usd),
        "net_charge_usd": str(record.net_charge_usd),
        "credit_owed_usd": str(record.credit_owed_usd) if record.credit_owed_usd is not None else None,
        "net_charge_display": str(record.net_charge_display),
        "display_currency": record.display_currency,
        "exchange_rate": str(record.exchange_rate),
        "payment_status": record.payment_status.value,
        "failure_reason": record.failure_reason or "",
        "requested_at": record.requested_at.isoformat() if record.requested_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }


def list_tier_changes(session, tenant_id: str = "", limit: int = 50) -> List[Dict]:
    query = session.query(TierChangeRecord)
    if tenant_id:
        query = query.filter(TierChangeRecord.tenant_id == tenant_id)
    rows = query.order_by(TierChangeRecord.requested_at.desc()).limit(max(1, min(int(limit or 50), 200))).all()
    return [tier_change_to_dict(x) for x in rows]


def list_credits_owed(session) -> List[Dict]:
    """待人工处理的余额：降级差额，以及已取消变更的到账款项。"""
    rows = (
        session.query(TierChangeRecord)
        .filter(TierChangeRecord.credit_owed_usd != None)  # noqa: E711
        .order_by(TierChangeRecord.completed_at.desc())
        .all()
    )
    return [tier_change_to_dict(x) for x in rows]
