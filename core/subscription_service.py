"""
core/subscription_service.py — 租户订阅状态迁移

所有迁移先经过 lifecycle.ensure_transition 校验。
带 commit 参数的函数默认自行提交；调度 Job 传 commit=False，按租户统一提交或回滚。
"""

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from core import addon_service
from core.billing_utils import add_months, money
from core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from core.events import log_event, E
from core.lifecycle import (
    DEFAULT_POLICY,
    RetentionPolicy,
    days_until_deletion,
    deletion_urgency,
    deletion_warning_date,
    ensure_transition,
    is_in_grace_period,
    is_service_active,
    retention_end_date,
    should_suspend,
)
from core.log import get_logger
from core.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from core.models.tier_change import TierChangeRecord
from core.models.billing_payment import PaymentStatus
from core.notice_service import create_notice
from core.pricing_service import get_interval_by_name, get_interval_price, get_tier_by_name

logger = get_logger(__name__)

S = SubscriptionStatus


def _finish(session, commit: bool) -> None:
    if commit:
        session.commit()
    else:
        session.flush()


def find_subscription(session, tenant_id: str) -> Optional[TenantSubscription]:
    tid = str(tenant_id or "").strip()
    if not tid:
        return None
    return session.query(TenantSubscription).filter(TenantSubscription.tenant_id == tid).first()


def get_subscription(session, tenant_id: str) -> TenantSubscription:
    sub = find_subscription(session, tenant_id)
    if not sub:
        raise NotFoundError(f"租户 {tenant_id} 没有订阅")
    return sub


def create_subscription(
    session,
    tenant_id: str,
    tier_name: str,
    interval_name: str = "MONTHLY",
    authorization_code: str = None,
    free_months: int = 0,
    today: date = None,
) -> TenantSubscription:
    today = today or date.today()
    tid = str(tenant_id or "").strip()
    if not tid:
        raise ValidationError("tenant_id 不能为空")
    if find_subscription(session, tid):
        raise ConcurrencyConflict(f"租户 {tid} 已有订阅")
    if int(free_months or 0) < 0:
        raise ValidationError("免费月数不能为负数")
    tier = get_tier_by_name(session, tier_name)
    if not tier.is_active:
        raise ValidationError(f"档位 {tier.tier_name} 已停用")
    interval = get_interval_by_name(session, interval_name)
    now = datetime.now()
    end = add_months(today, interval.months)
    sub = TenantSubscription(
        tenant_id=tid,
        tier_id=tier.id,
        interval_id=interval.id,
        status=S.ACTIVE,
        current_period_start=today,
        current_period_end=end,
        next_billing_date=end,
        auto_renew=True,
        grace_period_days=0,
        failed_payment_attempts=0,
        free_months_remaining=int(free_months or 0),
        retention_extension_days=0,
        gateway_authorization_code=authorization_code or None,
        created_at=now,
        updated_at=now,
    )
    session.add(sub)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConcurrencyConflict(f"租户 {tid} 已有订阅")
    log_event(logger, E.SUBSCRIPTION_CREATE, tenant_id=tid, tier=tier.tier_name, interval=interval.name, next_billing=end)
    return sub


def _advance_period(sub: TenantSubscription, months: int) -> None:
    """从原 next_billing_date 起顺延 months 个月，不从今天起算。"""
    start = sub.next_billing_date
    end = add_months(start, months)
    sub.current_period_start = start
    sub.current_period_end = end
    sub.next_billing_date = end


def apply_successful_renewal(session, sub: TenantSubscription, amount=None, transaction_id: str = "", commit: bool = True) -> TenantSubscription:
    ensure_transition(sub.status, S.ACTIVE)
    _advance_period(sub, int(sub.interval.months))
    sub.status = S.ACTIVE
    sub.failed_payment_attempts = 0
    sub.last_failure_reason = None
    sub.updated_at = datetime.now()
    addon_service.sync_addon_renewals(session, sub)
    create_notice(
        session,
        sub.tenant_id,
        "RENEWAL_SUCCEEDED",
        {"amount_usd": amount, "next_billing_date": sub.next_billing_date},
        ref_id=transaction_id or None,
    )
    _finish(session, commit)
    log_event(logger, E.SUBSCRIPTION_RENEW, tenant_id=sub.tenant_id, amount=amount, next_billing=sub.next_billing_date)
    return sub


def consume_promotional_credit(session, sub: TenantSubscription, commit: bool = True) -> TenantSubscription:
    """用 1 个月免费额度代替扣款，周期顺延 1 个月。"""
    if int(sub.free_months_remaining or 0) <= 0:
        raise ValidationError("没有可用的免费月")
    ensure_transition(sub.status, S.ACTIVE)
    sub.free_months_remaining = int(sub.free_months_remaining) - 1
    _advance_period(sub, 1)
    sub.status = S.ACTIVE
    sub.failed_payment_attempts = 0
    sub.last_failure_reason = None
    sub.updated_at = datetime.now()
    addon_service.sync_addon_renewals(session, sub)
    create_notice(
        session,
        sub.tenant_id,
        "PROMO_CREDIT_USED",
        {"remaining": sub.free_months_remaining, "next_billing_date": sub.next_billing_date},
    )
    _finish(session, commit)
    log_event(logger, E.SUBSCRIPTION_PROMO_CONSUME, tenant_id=sub.tenant_id, remaining=sub.free_months_remaining)
    return sub


def record_payment_failure(session, sub: TenantSubscription, reason: str = "", commit: bool = True) -> TenantSubscription:
    ensure_transition(sub.status, S.PAST_DUE)
    sub.status = S.PAST_DUE
    sub.failed_payment_attempts = int(sub.failed_payment_attempts or 0) + 1
    sub.last_failure_reason = (reason or "")[:500] or None
    sub.updated_at = datetime.now()
    create_notice(
        session,
        sub.tenant_id,
        "PAYMENT_FAILED",
        {"attempts": sub.failed_payment_attempts, "reason": reason, "grace_period_days": sub.grace_period_days},
    )
    _finish(session, commit)
    log_event(
        logger,
        E.SUBSCRIPTION_PAYMENT_FAIL,
        level="warning",
        tenant_id=sub.tenant_id,
        attempts=sub.failed_payment_attempts,
        reason=reason,
    )
    return sub


def suspend_subscription(
    session,
    sub: TenantSubscription,
    now: datetime = None,
    policy: RetentionPolicy = DEFAULT_POLICY,
    commit: bool = True,
) -> TenantSubscription:
    now = now or datetime.now()
    ensure_transition(sub.status, S.SUSPENDED)
    sub.status = S.SUSPENDED
    sub.suspended_at = now
    sub.data_retention_end_date = retention_end_date(now, sub.retention_extension_days, policy)
    sub.updated_at = now
    count = addon_service.suspend_tenant_addons(session, sub.tenant_id, now=now)
    create_notice(
        session,
        sub.tenant_id,
        "SUBSCRIPTION_SUSPENDED",
        {"data_retention_end_date": sub.data_retention_end_date},
    )
    _finish(session, commit)
    log_event(
        logger,
        E.SUBSCRIPTION_SUSPEND,
        tenant_id=sub.tenant_id,
        retention_end=sub.data_retention_end_date,
        addons=count,
    )
    return sub


def reactivate_subscription(session, sub: TenantSubscription, reactivated_by: str = "", today: date = None, commit: bool = True) -> TenantSubscription:
    """管理员手动恢复：清空保留期相关字段，从今天开始新的计费周期。"""
    today = today or date.today()
    ensure_transition(sub.status, S.ACTIVE)
    end = add_months(today, int(sub.interval.months))
    sub.status = S.ACTIVE
    sub.suspended_at = None
    sub.data_retention_end_date = None
    sub.deletion_warning_sent_at = None
    sub.deletion_eligible_at = None
    sub.retention_extension_days = 0
    sub.retention_extension_note = None
    sub.failed_payment_attempts = 0
    sub.last_failure_reason = None
    sub.current_period_start = today
    sub.current_period_end = end
    sub.next_billing_date = end
    sub.updated_at = datetime.now()
    count = addon_service.reactivate_tenant_addons(session, sub)
    create_notice(session, sub.tenant_id, "SUBSCRIPTION_REACTIVATED", {"next_billing_date": end, "by": reactivated_by})
    _finish(session, commit)
    log_event(logger, E.SUBSCRIPTION_REACTIVATE, tenant_id=sub.tenant_id, by=reactivated_by, addons=count)
    return sub


def cancel_subscription(session, sub: TenantSubscription, reason: str = "", now: datetime = None, commit: bool = True) -> TenantSubscription:
    """取消后不再续费，服务持续到 next_billing_date。"""
    now = now or datetime.now()
    ensure_transition(sub.status, S.CANCELED)
    sub.status = S.CANCELED
    sub.auto_renew = False
    sub.canceled_at = now
    sub.updated_at = now
    addon_service.cancel_tenant_addons(session, sub.tenant_id, reason="订阅已取消")
    create_notice(session, sub.tenant_id, "SUBSCRIPTION_CANCELED", {"reason": reason, "active_until": sub.next_billing_date})
    _finish(session, commit)
    log_event(logger, E.SUBSCRIPTION_CANCEL, tenant_id=sub.tenant_id, reason=reason, active_until=sub.next_billing_date)
    return sub


def expire_subscription(session, sub: TenantSubscription, now: datetime = None, commit: bool = True) -> TenantSubscription:
    """关闭自动续费的订阅到期后转为 CANCELED。"""
    now = now or datetime.now()
    ensure_transition(sub.status, S.CANCELED)
    sub.status = S.CANCELED
    sub.canceled_at = now
    sub.updated_at = now
    addon_service.cancel_tenant_addons(session, sub.tenant_id, reason="订阅到期")
    create_notice(session, sub.tenant_id, "SUBSCRIPTION_EXPIRED", {"ended_at": sub.next_billing_date})
    _finish(session, commit)
    log_event(logger, E.SUBSCRIPTION_EXPIRE, tenant_id=sub.tenant_id, ended_at=sub.next_billing_date)
    return sub


def set_auto_renew(session, sub: TenantSubscription, enabled: bool) -> TenantSubscription:
    if sub.status not in (S.ACTIVE, S.PAST_DUE):
        raise ValidationError(f"订阅状态 {sub.status.value} 不能修改自动续费")
    sub.auto_renew = bool(enabled)
    sub.updated_at = datetime.now()
    session.commit()
    return sub


def extend_retention(
    session,
    sub: TenantSubscription,
    days: int,
    note: str = "",
    extended_by: str = "",
    today: date = None,
    policy: RetentionPolicy = DEFAULT_POLICY,
) -> TenantSubscription:
    """
    延长数据保留期。

    截止日按 suspended_at + 保留天数 + 累计延长天数 重新计算；
    若新的预警日还没到，清掉旧的预警记录，到期前会重新发送预警。
    """
    today = today or date.today()
    if sub.status != S.SUSPENDED or sub.suspended_at is None:
        raise ValidationError("只有已暂停的订阅可以延长数据保留期")
    days = int(days or 0)
    if days <= 0:
        raise ValidationError("延长天数必须大于 0")
    sub.retention_extension_days = int(sub.retention_extension_days or 0) + days
    sub.data_retention_end_date = retention_end_date(sub.suspended_at, sub.retention_extension_days, policy)
    stamp = f"[{datetime.now():%Y-%m-%d}] +{days}d {extended_by}: {note}".strip()
    sub.retention_extension_note = "\n".join(x for x in [sub.retention_extension_note, stamp] if x)
    if sub.deletion_warning_sent_at is not None and deletion_warning_date(sub, policy) > today:
        sub.deletion_warning_sent_at = None
    sub.deletion_eligible_at = None
    sub.updated_at = datetime.now()
    create_notice(
        session,
        sub.tenant_id,
        "RETENTION_EXTENDED",
        {"days": days, "data_retention_end_date": sub.data_retention_end_date},
    )
    session.commit()
    log_event(
        logger,
        E.RETENTION_EXTEND,
        tenant_id=sub.tenant_id,
        days=days,
        total=sub.retention_extension_days,
        retention_end=sub.data_retention_end_date,
        by=extended_by,
    )
    return sub


def mark_deletion_warning_sent(session, sub: TenantSubscription, now: datetime = None, commit: bool = True) -> TenantSubscription:
    now = now or datetime.now()
    if sub.status != S.SUSPENDED:
        raise ValidationError("只有已暂停的订阅需要删除预警")
    create_notice(
        session,
        sub.tenant_id,
        "DELETION_WARNING",
        {"data_retention_end_date": sub.data_retention_end_date},
    )
    sub.deletion_warning_sent_at = now
    sub.updated_at = now
    _finish(session, commit)
    log_event(logger, E.RETENTION_WARNING_SENT, tenant_id=sub.tenant_id, retention_end=sub.data_retention_end_date)
    return sub


def flag_for_deletion(session, sub: TenantSubscription, now: datetime = None, commit: bool = True) -> TenantSubscription:
    """只打标记，实际清除数据由独立的运维流程执行。"""
    now = now or datetime.now()
    if sub.status != S.SUSPENDED:
        raise ValidationError("只有已暂停的订阅可以标记删除")
    if sub.deletion_eligible_at is None:
        sub.deletion_eligible_at = now
        sub.updated_at = now
        create_notice(session, sub.tenant_id, "DELETION_ELIGIBLE", {"flagged_at": now})
        log_event(logger, E.RETENTION_DELETION_FLAG, level="warning", tenant_id=sub.tenant_id)
    _finish(session, commit)
    return sub


def grant_promotional_credits(session, sub: TenantSubscription, months: int, note: str = "", granted_by: str = "") -> TenantSubscription:
    months = int(months or 0)
    if months <= 0:
        raise ValidationError("赠送月数必须大于 0")
    sub.free_months_remaining = int(sub.free_months_remaining or 0) + months
    sub.promotional_note = (note or "")[:500] or None
    sub.promotional_granted_by = (granted_by or "")[:100] or None
    sub.promotional_granted_at = datetime.now()
    sub.updated_at = datetime.now()
    session.commit()
    log_event(logger, E.SUBSCRIPTION_PROMO_GRANT, tenant_id=sub.tenant_id, months=months, total=sub.free_months_remaining, by=granted_by)
    return sub


def revoke_promotional_credits(session, sub: TenantSubscription, revoked_by: str = "") -> TenantSubscription:
    sub.free_months_remaining = 0
    sub.promotional_note = None
    sub.updated_at = datetime.now()
    session.commit()
    log_event(logger, E.SUBSCRIPTION_PROMO_GRANT, tenant_id=sub.tenant_id, months=0, total=0, by=revoked_by)
    return sub


def grant_grace_period(session, sub: TenantSubscription, days: int, granted_by: str = "", commit: bool = True) -> TenantSubscription:
    """
    宽限天数只增不减，重复授予取较大值。
    commit=False 时由调用方在提交成功后记录授予事件。
    """
    days = int(days or 0)
    if days < 0:
        raise ValidationError("宽限天数不能为负数")
    if days > int(sub.grace_period_days or 0):
        sub.grace_period_days = days
        sub.updated_at = datetime.now()
    _finish(session, commit)
    if commit:
        log_event(logger, E.SUBSCRIPTION_GRACE_GRANT, tenant_id=sub.tenant_id, days=sub.grace_period_days, by=granted_by)
    return sub


def update_payment_method(
    session,
    sub: TenantSubscription,
    authorization_code: str,
    card_last4: str = "",
    card_brand: str = "",
    card_fingerprint: str = "",
    customer_code: str = "",
) -> TenantSubscription:
    code = str(authorization_code or "").strip()
    if not code:
        raise ValidationError("authorization_code 不能为空")
    sub.gateway_authorization_code = code
    sub.card_last4 = (card_last4 or "")[-4:] or None
    sub.card_brand = (card_brand or "")[:30] or None
    sub.card_fingerprint = (card_fingerprint or "")[:100] or None
    if customer_code:
        sub.gateway_customer_code = customer_code[:100]
    sub.updated_at = datetime.now()
    session.commit()
    log_event(logger, E.SUBSCRIPTION_PAYMENT_METHOD, tenant_id=sub.tenant_id, brand=sub.card_brand or "", last4=sub.card_last4 or "")
    return sub


def _iso(value):
    return value.isoformat() if value else None


def subscription_to_dict(sub: TenantSubscription, today: date = None) -> Dict:
    today = today or date.today()
    return {
        "tenant_id": sub.tenant_id,
        "tier": sub.tier.tier_name,
        "tier_display_name": sub.tier.display_name,
        "interval": sub.interval.name,
        "status": sub.status.value,
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "next_billing_date": _iso(sub.next_billing_date),
        "auto_renew": bool(sub.auto_renew),
        "grace_period_days": int(sub.grace_period_days or 0),
        "in_grace_period": is_in_grace_period(sub, today),
        "should_suspend": should_suspend(sub, today),
        "service_active": is_service_active(sub, today),
        "failed_payment_attempts": int(sub.failed_payment_attempts or 0),
        "last_failure_reason": sub.last_failure_reason or "",
        "free_months_remaining": int(sub.free_months_remaining or 0),
        "suspended_at": _iso(sub.suspended_at),
        "data_retention_end_date": _iso(sub.data_retention_end_date),
        "retention_extension_days": int(sub.retention_extension_days or 0),
        "deletion_warning_sent_at": _iso(sub.deletion_warning_sent_at),
        "deletion_eligible_at": _iso(sub.deletion_eligible_at),
        "canceled_at": _iso(sub.canceled_at),
        "payment_method": {
            "has_authorization": bool(sub.gateway_authorization_code),
            "card_last4": sub.card_last4 or "",
            "card_brand": sub.card_brand or "",
        },
    }


def get_subscription_overview(session, tenant_id: str, snapshot=None, today: date = None) -> Dict:
    today = today or date.today()
    sub = get_subscription(session, tenant_id)
    data = subscription_to_dict(sub, today)
    base_price = get_interval_price(sub.tier, sub.interval.name)
    addons = addon_service.get_renewable_addons(session, tenant_id)
    addon_total = addon_service.addon_renewal_total(addons, sub.interval.months)
    data["renewal_amount_usd"] = str(money(base_price + addon_total))
    if snapshot is not None:
        data["renewal_amount_display"] = str(snapshot.to_display(base_price + addon_total))
        data["display_currency"] = snapshot.display_currency
    data["storage_limit_mb"] = addon_service.get_storage_limit_mb(session, tenant_id, today)
    data["addons"] = addon_service.list_tenant_addons(session, tenant_id)
    pending = (
        session.query(TierChangeRecord)
        .filter(TierChangeRecord.tenant_id == tenant_id, TierChangeRecord.payment_status == PaymentStatus.PENDING)
        .first()
    )
    data["pending_tier_change"] = pending.payment_reference if pending else None
    return data


def list_pending_deletions(session, today: date = None) -> List[Dict]:
    today = today or date.today()
    rows = (
        session.query(TenantSubscription)
        .filter(TenantSubscription.status == S.SUSPENDED)
        .order_by(TenantSubscription.data_retention_end_date)
        .all()
    )
    data = []
    for sub in rows:
        remaining = days_until_deletion(sub, today)
        if remaining is None:
            continue
        data.append(
            {
                "tenant_id": sub.tenant_id,
                "suspended_at": _iso(sub.suspended_at),
                "data_retention_end_date": _iso(sub.data_retention_end_date),
                "days_until_deletion": remaining,
                "urgency": deletion_urgency(remaining),
                "retention_extension_days": int(sub.retention_extension_days or 0),
                "retention_extension_note": sub.retention_extension_note or "",
                "deletion_warning_sent_at": _iso(sub.deletion_warning_sent_at),
                "deletion_eligible_at": _iso(sub.deletion_eligible_at),
            }
        )
    return data


def list_subscriptions(session, status: str = "", limit: int = 100) -> List[Dict]:
    query = session.query(TenantSubscription)
    if status:
        try:
            query = query.filter(TenantSubscription.status == S(status.strip().upper()))
        except ValueError:
            raise ValidationError(f"未知订阅状态: {status}")
    rows = query.order_by(TenantSubscription.tenant_id).limit(max(1, min(int(limit or 100), 1000))).all()
    return [subscription_to_dict(x) for x in rows]


def due_within(session, days: int = 7, today: date = None) -> List[TenantSubscription]:
    """即将到期扣款的订阅，供运营面板提前提醒。"""
    today = today or date.today()
    return (
        session.query(TenantSubscription)
        .filter(
            TenantSubscription.status == S.ACTIVE,
            TenantSubscription.auto_renew == True,  # noqa: E712
            TenantSubscription.next_billing_date <= today + timedelta(days=int(days)),
        )
        .order_by(TenantSubscription.next_billing_date)
        .all()
    )
