import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from core import addon_service, proration_service, subscription_service
from core.billing_utils import money
from core.currency_service import get_rate_snapshot
from core.errors import NotFoundError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.billing_payment import BillingPayment, PaymentStatus, PaymentType
from core.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from core.models.tier_change import TierChangeRecord
from core.pricing_service import get_interval_price

logger = get_logger(__name__)


def compute_renewal_amount(session, sub: TenantSubscription) -> Dict:
    """续费金额 = 档位在当前周期的价格 + ACTIVE 扩容包锁定月价 × 周期月数。"""
    base = get_interval_price(sub.tier, sub.interval.name)
    addons = addon_service.get_renewable_addons(session, sub.tenant_id)
    addon_total = addon_service.addon_renewal_total(addons, sub.interval.months)
    return {
        "base_usd": base,
        "addons_usd": addon_total,
        "addon_count": len(addons),
        "total_usd": money(base + addon_total),
    }


def renewal_reference(sub: TenantSubscription) -> str:
    """同一账单日的同一次尝试固定使用同一个流水号，网关据此去重。"""
    billing_date = sub.next_billing_date.strftime("%Y%m%d") if sub.next_billing_date else "NODATE"
    return f"RENEWAL-{sub.tenant_id}-{billing_date}-{int(sub.failed_payment_attempts or 0)}"


def _apply_renewal_outcome(session, sub: TenantSubscription, payment: BillingPayment, commit: bool) -> None:
    if payment.status == PaymentStatus.COMPLETED:
        subscription_service.apply_successful_renewal(
            session, sub, amount=payment.amount_usd, transaction_id=payment.gateway_transaction_id, commit=commit
        )
    else:
        subscription_service.record_payment_failure(session, sub, reason=payment.failure_reason or "", commit=commit)


def charge_renewal(session, sub: TenantSubscription, gateway, commit: bool = True) -> BillingPayment:
    """
    对到期订阅发起代扣。

    成功：周期顺延并同步扩容包；失败（含未绑卡、网关超时）：转 PAST_DUE、失败次数 +1。
    网关拒绝与超时体现在返回的 BillingPayment.status 上，其他异常向上抛出由调度方回滚。

    支付流水在调用网关前、拿到结果后各提交一次，不随订阅变更回滚。
    若本次尝试的流水已有终态（上次扣款后订阅更新失败），不再调用网关，直接补记结果。
    """
    reference = renewal_reference(sub)
    payment = session.query(BillingPayment).filter(BillingPayment.reference == reference).first()
    if payment is not None and payment.status != PaymentStatus.PENDING:
        log_event(
            logger,
            E.PAYMENT_RECONCILE,
            level="warning",
            tenant_id=sub.tenant_id,
            reference=reference,
            status=payment.status.value,
        )
        _apply_renewal_outcome(session, sub, payment, commit)
        return payment

    if payment is None:
        amounts = compute_renewal_amount(session, sub)
        snapshot = get_rate_snapshot(session)
        now = datetime.now()
        payment = BillingPayment(
            reference=reference,
            tenant_id=sub.tenant_id,
            payment_type=PaymentType.RENEWAL,
            amount_usd=amounts["total_usd"],
            amount_display=snapshot.to_display(amounts["total_usd"]),
            currency=snapshot.display_currency,
            exchange_rate=snapshot.rate,
            status=PaymentStatus.PENDING,
            metadata_json=json.dumps(
                {
                    "tier": sub.tier.tier_name,
                    "interval": sub.interval.name,
                    "base_usd": str(amounts["base_usd"]),
                    "addons_usd": str(amounts["addons_usd"]),
                    "billing_date": sub.next_billing_date.isoformat() if sub.next_billing_date else None,
                }
            ),
            created_at=now,
            updated_at=now,
        )
        session.add(payment)
    session.commit()

    if not sub.gateway_authorization_code:
        result_ok, txn_id, message = False, "", "没有可用的支付方式"
    else:
        result = gateway.charge_recurring(
            sub.gateway_authorization_code,
            payment.amount_display,
            payment.currency,
            payment.reference,
        )
        result_ok, txn_id, message = result.success, result.transaction_id, result.message

    payment.updated_at = datetime.now()
    if result_ok:
        payment.status = PaymentStatus.COMPLETED
        payment.gateway_transaction_id = (txn_id or "")[:128] or None
        payment.paid_at = payment.updated_at
        log_event(logger, E.PAYMENT_CHARGE, tenant_id=sub.tenant_id, reference=payment.reference, amount=payment.amount_usd)
    else:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = (message or "")[:500]
        log_event(
            logger,
            E.PAYMENT_CHARGE_FAIL,
            level="warning",
            tenant_id=sub.tenant_id,
            reference=payment.reference,
            reason=message,
        )
    session.commit()
    _apply_renewal_outcome(session, sub, payment, commit)
    return payment


def handle_payment_event(
    session,
    reference: str,
    success: bool,
    transaction_id: str = "",
    reason: str = "",
) -> Dict:
    """
    处理已验签的网关回调，按 reference 找到对应的待处理记录。
    重复投递的事件返回当前状态，不重复生效。
    """
    ref = str(reference or "").strip()
    log_event(logger, E.PAYMENT_EVENT, reference=ref, success=success, transaction_id=transaction_id)

    record = session.query(TierChangeRecord).filter(TierChangeRecord.payment_reference == ref).first()
    if record:
        record = proration_service.finalize_tier_change(
            session, ref, success=success, transaction_id=transaction_id, reason=reason
        )
        return {"kind": "TIER_CHANGE", "reference": ref, "status": record.payment_status.value}

    payment = session.query(BillingPayment).filter(BillingPayment.reference == ref).first()
    if not payment:
        log_event(logger, E.PAYMENT_EVENT_UNKNOWN, level="warning", reference=ref)
        raise NotFoundError(f"未知的支付流水: {ref}")

    if payment.status != PaymentStatus.PENDING:
        return {"kind": payment.payment_type.value, "reference": ref, "status": payment.status.value}

    if payment.payment_type == PaymentType.ADDON_PURCHASE:
        if success:
            now = datetime.now()
            payment.status = PaymentStatus.COMPLETED
            payment.gateway_transaction_id = (transaction_id or "")[:128] or None
            payment.paid_at = now
            payment.updated_at = now
            addon_service.activate_addon_purchase(session, ref, commit=False)
            session.commit()
        else:
            addon_service.fail_addon_purchase(session, ref, reason=reason)
    else:
        # 续费是同步代扣，回调只补记流水状态
        payment.status = PaymentStatus.COMPLETED if success else PaymentStatus.FAILED
        payment.gateway_transaction_id = (transaction_id or payment.gateway_transaction_id or "")[:128] or None
        payment.failure_reason = None if success else (reason or "")[:500]
        payment.updated_at = datetime.now()
        session.commit()
    return {"kind": payment.payment_type.value, "reference": ref, "status": payment.status.value}


def retry_failed_payment(session, tenant_id: str, gateway) -> BillingPayment:
    """PAST_DUE 订阅手动重试扣款（例如用户更换银行卡后）。"""
    sub = subscription_service.get_subscription(session, tenant_id)
    if sub.status != SubscriptionStatus.PAST_DUE:
        raise ValidationError("只有欠费订阅需要重试扣款")
    return charge_renewal(session, sub, gateway, commit=True)


def _payment_to_dict(payment: BillingPayment) -> Dict:
    return {
        "reference": payment.reference,
        "tenant_id": payment.tenant_id,
        "payment_type": payment.payment_type.value,
        "amount_usd": str(payment.amount_usd),
        "amount_display": str(payment.amount_display) if payment.amount_display is not None else None,
        "currency": payment.currency,
        "exchange_rate": str(payment.exchange_rate) if payment.exchange_rate is not None else None,
        "status": payment.status.value,
        "gateway_transaction_id": payment.gateway_transaction_id or "",
        "failure_reason": payment.failure_reason or "",
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


def list_payments(session, tenant_id: str = "", status: str = "", limit: int = 50) -> List[Dict]:
    query = session.query(BillingPayment)
    if tenant_id:
        query = query.filter(BillingPayment.tenant_id == tenant_id)
    status_text = str(status or "").strip().upper()
    if status_text in PaymentStatus.__members__:
        query = query.filter(BillingPayment.status == PaymentStatus[status_text])
    rows = query.order_by(BillingPayment.created_at.desc()).limit(max(1, min(int(limit or 50), 200))).all()
    return [_payment_to_dict(x) for x in rows]


def revenue_summary(session) -> Dict:
    rows = session.query(BillingPayment).filter(BillingPayment.status == PaymentStatus.COMPLETED).all()
    by_type: Dict[str, Decimal] = {}
    for p in rows:
        key = p.payment_type.value
        by_type[key] = by_type.get(key, Decimal("0")) + Decimal(str(p.amount_usd))
    return {
        "total_usd": str(money(sum(by_type.values(), Decimal("0")))),
        "by_type": {k: str(money(v)) for k, v in by_type.items()},
        "count": len(rows),
    }
