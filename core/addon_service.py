"""
core/addon_service.py — 存储扩容包

扩容包的续费日必须始终与租户订阅的 next_billing_date 一致：
购买时按订阅当前周期剩余天数折算首期费用，之后随订阅一起续费。
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from core.billing_utils import days_between, money, new_reference
from core.config import cfg
from core.currency_service import get_rate_snapshot
from core.errors import ConcurrencyConflict, NotFoundError, PaymentFailure, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.billing_payment import BillingPayment, PaymentStatus, PaymentType
from core.models.storage_addon import StorageAddon
from core.models.tenant_addon import AddonStatus, TenantAddon
from core.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from core.notice_service import create_notice

logger = get_logger(__name__)


def base_storage_mb() -> int:
    return int(cfg.get("billing.base_storage_mb", 2048))


def _ownership_key(tenant_id: str, addon_id: str) -> str:
    return f"{tenant_id}:{addon_id}"


def list_addon_catalog(session, snapshot=None) -> List[Dict]:
    rows = (
        session.query(StorageAddon)
        .filter(StorageAddon.is_active == True)  # noqa: E712
        .order_by(StorageAddon.display_order)
        .all()
    )
    data = []
    for addon in rows:
        item = {
            "name": addon.name,
            "display_name": addon.display_name,
            "description": addon.description or "",
            "storage_gb": addon.storage_gb,
            "price_usd": str(money(addon.price_usd)),
        }
        if snapshot is not None:
            item["price_display"] = str(snapshot.to_display(addon.price_usd))
            item["display_currency"] = snapshot.display_currency
        data.append(item)
    return data


def get_addon_by_name(session, name: str) -> StorageAddon:
    addon = session.query(StorageAddon).filter(StorageAddon.name == str(name or "").strip().upper()).first()
    if not addon:
        raise NotFoundError(f"扩容包不存在: {name}")
    return addon


def compute_addon_proration(monthly_price, sub: TenantSubscription, today: date) -> Tuple[Decimal, bool, int, int]:
    """
    计算周期中途购买的首期费用。

    整期价格 = 月价 × 订阅周期月数，按订阅当前周期剩余天数 / 周期总天数折算。
    返回 (金额, 是否折算, 剩余天数, 周期天数)。
    """
    months = int(sub.interval.months) if sub.interval is not None else 1
    full_price = Decimal(str(monthly_price)) * months
    period_days = days_between(sub.current_period_start, sub.current_period_end)
    remaining = min(days_between(today, sub.current_period_end), period_days)
    if period_days <= 0 or remaining >= period_days:
        return money(full_price), False, period_days, period_days
    amount = money(full_price * remaining / period_days)
    return amount, True, remaining, period_days


def _get_tenant_subscription(session, tenant_id: str) -> TenantSubscription:
    sub = session.query(TenantSubscription).filter(TenantSubscription.tenant_id == tenant_id).first()
    if not sub:
        raise NotFoundError(f"租户 {tenant_id} 没有订阅")
    return sub


def purchase_addon(
    session,
    tenant_id: str,
    addon_name: str,
    gateway,
    today: date = None,
    email: str = "",
) -> Dict:
    """创建待支付的扩容包购买并向网关发起支付，支付结果通过 webhook 回调激活。"""
    today = today or date.today()
    sub = _get_tenant_subscription(session, tenant_id)
    if sub.status != SubscriptionStatus.ACTIVE:
        raise ValidationError(f"当前订阅状态 {sub.status.value} 不能购买扩容包，请先结清欠费")
    addon = get_addon_by_name(session, addon_name)
    if not addon.is_active:
        raise ValidationError(f"扩容包 {addon.name} 已下架")

    key = _ownership_key(tenant_id, addon.id)
    if session.query(TenantAddon).filter(TenantAddon.ownership_key == key).first():
        raise ConcurrencyConflict(f"租户已持有或正在购买扩容包 {addon.name}")

    amount, is_prorated, days, period_days = compute_addon_proration(addon.price_usd, sub, today)
    if amount <= 0:
        raise ValidationError("当前计费周期已结束，请在续费后再购买扩容包")
    snapshot = get_rate_snapshot(session)
    reference = new_reference("ADDON")
    now = datetime.now()
    owned = TenantAddon(
        tenant_id=tenant_id,
        addon_id=addon.id,
        ownership_key=key,
        purchase_price=money(addon.price_usd),
        purchase_reference=reference,
        is_prorated=is_prorated,
        prorated_amount=amount if is_prorated else None,
        prorated_days=days if is_prorated else None,
        status=AddonStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    payment = BillingPayment(
        reference=reference,
        tenant_id=tenant_id,
        payment_type=PaymentType.ADDON_PURCHASE,
        amount_usd=amount,
        amount_display=snapshot.to_display(amount),
        currency=snapshot.display_currency,
        exchange_rate=snapshot.rate,
        status=PaymentStatus.PENDING,
        metadata_json=json.dumps({"addon": addon.name, "period_days": period_days, "days": days}),
        created_at=now,
        updated_at=now,
    )
    session.add(owned)
    session.add(payment)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConcurrencyConflict(f"租户已持有或正在购买扩容包 {addon.name}")
    log_event(logger, E.ADDON_PURCHASE, tenant_id=tenant_id, addon=addon.name, amount=amount, prorated=is_prorated, reference=reference)

    try:
        auth = gateway.authorize(tenant_id, payment.amount_display, payment.currency, reference, email=email)
    except PaymentFailure as e:
        fail_addon_purchase(session, reference, str(e))
        raise
    return {
        "reference": reference,
        "addon": addon.name,
        "amount_usd": str(amount),
        "amount_display": str(payment.amount_display),
        "currency": payment.currency,
        "is_prorated": is_prorated,
        "prorated_days": days,
        "authorization_url": auth.authorization_url,
    }


def _get_by_reference(session, reference: str) -> Optional[TenantAddon]:
    return session.query(TenantAddon).filter(TenantAddon.purchase_reference == reference).first()


def activate_addon_purchase(session, reference: str, today: date = None, commit: bool = True) -> TenantAddon:
    """支付成功后激活扩容包（重复回调直接返回）。"""
    today = today or date.today()
    owned = _get_by_reference(session, reference)
    if not owned:
        raise NotFoundError(f"扩容包购买记录不存在: {reference}")
    if owned.status != AddonStatus.PENDING:
        return owned
    sub = _get_tenant_subscription(session, owned.tenant_id)
    now = datetime.now()
    owned.status = AddonStatus.ACTIVE
    owned.purchased_at = now
    owned.current_period_start = today
    owned.current_period_end = sub.current_period_end
    owned.next_renewal_date = sub.next_billing_date
    owned.updated_at = now
    create_notice(session, owned.tenant_id, "ADDON_ACTIVATED", {"addon": owned.addon.name}, ref_id=reference)
    if commit:
        session.commit()
    log_event(logger, E.ADDON_ACTIVATE, tenant_id=owned.tenant_id, addon=owned.addon.name, next_renewal=owned.next_renewal_date)
    return owned


def fail_addon_purchase(session, reference: str, reason: str = "", commit: bool = True) -> Optional[TenantAddon]:
    owned = _get_by_reference(session, reference)
    if not owned or owned.status != AddonStatus.PENDING:
        return owned
    now = datetime.now()
    owned.status = AddonStatus.CANCELED
    owned.ownership_key = None
    owned.canceled_at = now
    owned.cancellation_reason = f"支付失败: {reason}"[:500]
    owned.updated_at = now
    payment = session.query(BillingPayment).filter(BillingPayment.reference == reference).first()
    if payment and payment.status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = (reason or "")[:500]
        payment.updated_at = now
    if commit:
        session.commit()
    log_event(logger, E.ADDON_CANCEL, level="warning", tenant_id=owned.tenant_id, reference=reference, reason=reason)
    return owned


def cancel_addon(session, tenant_id: str, tenant_addon_id: str, reason: str = "", commit: bool = True) -> TenantAddon:
    """取消扩容包：不退款，当前周期结束前仍可使用，到期后不再续费。"""
    owned = (
        session.query(TenantAddon)
        .filter(TenantAddon.id == tenant_addon_id, TenantAddon.tenant_id == tenant_id)
        .first()
    )
    if not owned:
        raise NotFoundError("扩容包不存在")
    if owned.status == AddonStatus.CANCELED:
        return owned
    if owned.status != AddonStatus.ACTIVE:
        raise ValidationError(f"扩容包状态 {owned.status.value} 不能取消")
    now = datetime.now()
    owned.status = AddonStatus.CANCELED
    owned.ownership_key = None
    owned.canceled_at = now
    owned.cancellation_reason = (reason or "")[:500] or None
    owned.updated_at = now
    if commit:
        session.commit()
    log_event(logger, E.ADDON_CANCEL, tenant_id=tenant_id, addon_id=owned.addon_id, active_until=owned.current_period_end)
    return owned


def suspend_tenant_addons(session, tenant_id: str, now: datetime = None) -> int:
    now = now or datetime.now()
    rows = session.query(TenantAddon).filter(
        TenantAddon.tenant_id == tenant_id,
        TenantAddon.status == AddonStatus.ACTIVE,
    ).all()
    for owned in rows:
        owned.status = AddonStatus.SUSPENDED
        owned.suspended_at = now
        owned.updated_at = now
    if rows:
        log_event(logger, E.ADDON_SUSPEND, tenant_id=tenant_id, count=len(rows))
    return len(rows)


def reactivate_tenant_addons(session, sub: TenantSubscription) -> int:
    """只恢复随订阅一起被暂停的扩容包，用户主动取消的保持取消。"""
    rows = session.query(TenantAddon).filter(
        TenantAddon.tenant_id == sub.tenant_id,
        TenantAddon.status == AddonStatus.SUSPENDED,
    ).all()
    now = datetime.now()
    for owned in rows:
        owned.status = AddonStatus.ACTIVE
        owned.suspended_at = None
        owned.updated_at = now
    sync_addon_renewals(session, sub)
    if rows:
        log_event(logger, E.ADDON_REACTIVATE, tenant_id=sub.tenant_id, count=len(rows))
    return len(rows)


def cancel_tenant_addons(session, tenant_id: str, reason: str) -> int:
    rows = session.query(TenantAddon).filter(
        TenantAddon.tenant_id == tenant_id,
        TenantAddon.status == AddonStatus.ACTIVE,
    ).all()
    for owned in rows:
        cancel_addon(session, tenant_id, owned.id, reason=reason, commit=False)
    return len(rows)


def sync_addon_renewals(session, sub: TenantSubscription) -> int:
    """把 ACTIVE 扩容包的周期与续费日对齐到订阅。"""
    rows = session.query(TenantAddon).filter(
        TenantAddon.tenant_id == sub.tenant_id,
        TenantAddon.status == AddonStatus.ACTIVE,
    ).all()
    for owned in rows:
        owned.current_period_start = sub.current_period_start
        owned.current_period_end = sub.current_period_end
        owned.next_renewal_date = sub.next_billing_date
        owned.updated_at = datetime.now()
    if rows:
        log_event(logger, E.ADDON_SYNC, level="debug", tenant_id=sub.tenant_id, count=len(rows), next_renewal=sub.next_billing_date)
    return len(rows)


def get_renewable_addons(session, tenant_id: str) -> List[TenantAddon]:
    return session.query(TenantAddon).filter(
        TenantAddon.tenant_id == tenant_id,
        TenantAddon.status == AddonStatus.ACTIVE,
    ).all()


def addon_renewal_total(addons: List[TenantAddon], months: int) -> Decimal:
    return money(sum((Decimal(str(a.purchase_price)) * int(months) for a in addons), Decimal("0")))


def _is_canceled_in_grace(owned: TenantAddon, today: date) -> bool:
    return (
        owned.status == AddonStatus.CANCELED
        and owned.purchased_at is not None
        and owned.current_period_end is not None
        and today < owned.current_period_end
    )


def find_unsynced_addons(session, sub: TenantSubscription, today: date = None) -> List[TenantAddon]:
    """返回续费日与订阅不一致的扩容包（正常情况下为空）。"""
    today = today or date.today()
    rows = session.query(TenantAddon).filter(TenantAddon.tenant_id == sub.tenant_id).all()
    return [
        x for x in rows
        if (x.status == AddonStatus.ACTIVE or _is_canceled_in_grace(x, today))
        and x.next_renewal_date != sub.next_billing_date
    ]


def get_storage_limit_mb(session, tenant_id: str, today: date = None) -> int:
    today = today or date.today()
    rows = session.query(TenantAddon).filter(TenantAddon.tenant_id == tenant_id).all()
    extra_gb = sum(
        int(x.addon.storage_gb)
        for x in rows
        if x.status == AddonStatus.ACTIVE or _is_canceled_in_grace(x, today)
    )
    return base_storage_mb() + extra_gb * 1024


def tenant_addon_to_dict(owned: TenantAddon) -> Dict:
    return {
        "id": owned.id,
        "addon": owned.addon.name if owned.addon else "",
        "storage_gb": owned.addon.storage_gb if owned.addon else 0,
        "status": owned.status.value,
        "purchase_price": str(owned.purchase_price),
        "purchase_reference": owned.purchase_reference,
        "is_prorated": bool(owned.is_prorated),
        "prorated_amount": str(owned.prorated_amount) if owned.prorated_amount is not None else None,
        "current_period_start": owned.current_period_start.isoformat() if owned.current_period_start else None,
        "current_period_end": owned.current_period_end.isoformat() if owned.current_period_end else None,
        "next_renewal_date": owned.next_renewal_date.isoformat() if owned.next_renewal_date else None,
        "canceled_at": owned.canceled_at.isoformat() if owned.canceled_at else None,
    }


def list_tenant_addons(session, tenant_id: str) -> List[Dict]:
    rows = (
        session.query(TenantAddon)
        .filter(TenantAddon.tenant_id == tenant_id)
        .order_by(TenantAddon.created_at.desc())
        .all()
    )
    return [tenant_addon_to_dict(x) for x in rows]
