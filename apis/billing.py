from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core import addon_service, billing_service, notice_service, partnership_service, proration_service, subscription_service
from core.auth import get_current_user, require_tenant
from core.currency_service import get_rate_snapshot
from core.db import DB
from core.errors import BillingError
from core.payment_gateway import get_payment_gateway
from core.pricing_service import get_pricing_catalog
from .base import billing_http_error, success_response


router = APIRouter(prefix="/billing", tags=["订阅计费"])


class CreateSubscriptionRequest(BaseModel):
    tier_name: str = Field(..., max_length=50)
    interval_name: str = Field(default="MONTHLY", max_length=20)
    authorization_code: str = Field(default="", max_length=100)


class AutoRenewRequest(BaseModel):
    enabled: bool


class CancelSubscriptionRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class PaymentMethodRequest(BaseModel):
    authorization_code: str = Field(..., max_length=100)
    card_last4: str = Field(default="", max_length=4)
    card_brand: str = Field(default="", max_length=30)
    card_fingerprint: str = Field(default="", max_length=100)
    customer_code: str = Field(default="", max_length=100)


class RedeemCodeRequest(BaseModel):
    code: str = Field(..., max_length=50)


class TierChangeRequest(BaseModel):
    new_tier_name: Optional[str] = Field(default=None, max_length=50)
    new_interval_name: Optional[str] = Field(default=None, max_length=20)
    member_count: Optional[int] = Field(default=None, ge=1)
    reason: str = Field(default="", max_length=500)
    email: str = Field(default="", max_length=200)


class AddonPurchaseRequest(BaseModel):
    addon_name: str = Field(..., max_length=50)
    email: str = Field(default="", max_length=200)


class AddonCancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


@router.get("/catalog", summary="获取价格目录（档位/周期/扩容包）")
async def billing_catalog(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        snapshot = get_rate_snapshot(session)
        data = get_pricing_catalog(session, snapshot)
        data["addons"] = addon_service.list_addon_catalog(session, snapshot)
        return success_response(data)
    finally:
        session.close()


@router.get("/subscription", summary="获取当前租户订阅概览")
async def subscription_overview(current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(
            subscription_service.get_subscription_overview(session, tenant_id, snapshot=get_rate_snapshot(session))
        )
    except BillingError as e:
        raise billing_http_error(e, "获取订阅失败")
    finally:
        session.close()


@router.post("/subscription", summary="开通订阅")
async def create_subscription(payload: CreateSubscriptionRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.create_subscription(
            session,
            tenant_id=tenant_id,
            tier_name=payload.tier_name,
            interval_name=payload.interval_name,
            authorization_code=payload.authorization_code or None,
        )
        return success_response(subscription_service.subscription_to_dict(sub), message="订阅已开通")
    except BillingError as e:
        raise billing_http_error(e, "开通订阅失败")
    finally:
        session.close()


@router.post("/subscription/auto-renew", summary="开启/关闭自动续费")
async def update_auto_renew(payload: AutoRenewRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.set_auto_renew(session, sub, payload.enabled)
        return success_response(subscription_service.subscription_to_dict(sub))
    except BillingError as e:
        raise billing_http_error(e, "修改自动续费失败")
    finally:
        session.close()


@router.post("/subscription/cancel", summary="取消订阅（到期后停止服务）")
async def cancel_subscription(payload: CancelSubscriptionRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.cancel_subscription(session, sub, reason=payload.reason)
        return success_response(subscription_service.subscription_to_dict(sub), message="订阅已取消")
    except BillingError as e:
        raise billing_http_error(e, "取消订阅失败")
    finally:
        session.close()


@router.post("/subscription/payment-method", summary="更新支付方式")
async def update_payment_method(payload: PaymentMethodRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.update_payment_method(
            session,
            sub,
            authorization_code=payload.authorization_code,
            card_last4=payload.card_last4,
            card_brand=payload.card_brand,
            card_fingerprint=payload.card_fingerprint,
            customer_code=payload.customer_code,
        )
        return success_response(subscription_service.subscription_to_dict(sub))
    except BillingError as e:
        raise billing_http_error(e, "更新支付方式失败")
    finally:
        session.close()


@router.post("/subscription/retry-payment", summary="欠费订阅立即重试扣款")
async def retry_payment(current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        payment = billing_service.retry_failed_payment(session, tenant_id, get_payment_gateway())
        sub = subscription_service.get_subscription(session, tenant_id)
        return success_response(
            {
                "payment_status": payment.status.value,
                "failure_reason": payment.failure_reason or "",
                "subscription": subscription_service.subscription_to_dict(sub),
            }
        )
    except BillingError as e:
        raise billing_http_error(e, "重试扣款失败")
    finally:
        session.close()


@router.post("/subscription/redeem-code", summary="兑换合作码（获得宽限天数）")
async def redeem_code(payload: RedeemCodeRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(partnership_service.redeem_partnership_code(session, tenant_id, payload.code), message="兑换成功")
    except BillingError as e:
        raise billing_http_error(e, "兑换失败")
    finally:
        session.close()


@router.get("/payments", summary="获取当前租户支付流水")
async def list_my_payments(
    status: str = Query("", max_length=32),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(billing_service.list_payments(session, tenant_id=tenant_id, status=status, limit=limit))
    finally:
        session.close()


@router.post("/tier-change/preview", summary="预览套餐变更费用")
async def preview_tier_change(payload: TierChangeRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        quote = proration_service.preview_tier_change(
            session,
            tenant_id,
            new_tier_name=payload.new_tier_name,
            new_interval_name=payload.new_interval_name,
            member_count=payload.member_count,
        )
        return success_response(quote.to_dict())
    except BillingError as e:
        raise billing_http_error(e, "预览失败")
    finally:
        session.close()


@router.post("/tier-change", summary="发起套餐变更")
async def request_tier_change(payload: TierChangeRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        result = proration_service.request_tier_change(
            session,
            tenant_id,
            get_payment_gateway(),
            new_tier_name=payload.new_tier_name,
            new_interval_name=payload.new_interval_name,
            reason=payload.reason,
            requested_by=current_user.get("username", ""),
            member_count=payload.member_count,
            email=payload.email,
        )
        return success_response(result, message="套餐变更已提交")
    except BillingError as e:
        raise billing_http_error(e, "套餐变更失败")
    finally:
        session.close()


@router.delete("/tier-change/pending", summary="取消待支付的套餐变更")
async def cancel_tier_change(current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        record = proration_service.cancel_pending_tier_change(session, tenant_id, canceled_by=current_user.get("username", ""))
        return success_response(proration_service.tier_change_to_dict(record), message="已取消")
    except BillingError as e:
        raise billing_http_error(e, "取消失败")
    finally:
        session.close()


@router.get("/tier-changes", summary="套餐变更历史")
async def list_tier_changes(limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(proration_service.list_tier_changes(session, tenant_id=tenant_id, limit=limit))
    finally:
        session.close()


@router.get("/addons", summary="当前租户的扩容包")
async def list_my_addons(current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(
            {
                "addons": addon_service.list_tenant_addons(session, tenant_id),
                "storage_limit_mb": addon_service.get_storage_limit_mb(session, tenant_id),
            }
        )
    finally:
        session.close()


@router.post("/addons/purchase", summary="购买存储扩容包")
async def purchase_addon(payload: AddonPurchaseRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        result = addon_service.purchase_addon(
            session, tenant_id, payload.addon_name, get_payment_gateway(), email=payload.email
        )
        return success_response(result, message="请完成支付")
    except BillingError as e:
        raise billing_http_error(e, "购买失败")
    finally:
        session.close()


@router.post("/addons/{tenant_addon_id}/cancel", summary="取消扩容包（不退款，周期结束后失效）")
async def cancel_addon(tenant_addon_id: str, payload: AddonCancelRequest, current_user: dict = Depends(get_current_user)):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        owned = addon_service.cancel_addon(session, tenant_id, tenant_addon_id, reason=payload.reason)
        return success_response(addon_service.tenant_addon_to_dict(owned), message="已取消")
    except BillingError as e:
        raise billing_http_error(e, "取消失败")
    finally:
        session.close()


@router.get("/notices", summary="当前租户的计费通知")
async def list_my_notices(
    status: str = Query("", max_length=20),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    tenant_id = require_tenant(current_user)
    session = DB.get_session()
    try:
        return success_response(notice_service.list_notices(session, tenant_id=tenant_id, status=status, limit=limit))
    finally:
        session.close()


class PaymentEventRequest(BaseModel):
    reference: str = Field(..., max_length=100)
    success: bool
    transaction_id: str = Field(default="", max_length=128)
    reason: str = Field(default="", max_length=500)


webhook_router = APIRouter(prefix="/billing/webhook", tags=["支付回调"])


@webhook_router.post("/payment", summary="支付结果回调（上游已完成验签）")
async def payment_event(payload: PaymentEventRequest):
    session = DB.get_session()
    try:
        result = billing_service.handle_payment_event(
            session,
            reference=payload.reference,
            success=payload.success,
            transaction_id=payload.transaction_id,
            reason=payload.reason,
        )
        return success_response(result)
    except BillingError as e:
        raise billing_http_error(e, "回调处理失败")
    finally:
        session.close()
