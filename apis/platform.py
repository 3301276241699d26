"""
平台运营接口：汇率、订阅干预、数据保留、合作码、价格档位。
全部要求 admin 角色。
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core import billing_service, partnership_service, proration_service, subscription_service
from core.auth import get_current_user, require_admin
from core.currency_service import (
    format_dual_currency,
    get_current_settings,
    get_exchange_rate_stats,
    get_rate_history,
    get_rate_snapshot,
    settings_to_dict,
    update_display_preferences,
    update_exchange_rate,
)
from core.db import DB
from core.errors import BillingError
from core.lifecycle import RetentionPolicy
from core.pricing_service import (
    create_tier,
    list_active_tiers,
    seed_default_catalog,
    tier_to_dict,
    validate_tier_partition,
)
from .base import billing_http_error, success_response


router = APIRouter(prefix="/platform", tags=["平台运营"])


class ExchangeRateRequest(BaseModel):
    exchange_rate: Decimal = Field(..., gt=0)
    note: str = Field(default="", max_length=500)
    expected_version: Optional[int] = None


class DisplayPreferencesRequest(BaseModel):
    show_both_currencies: Optional[bool] = None
    primary_display_currency: Optional[str] = Field(default=None, max_length=3)


class PromoCreditsRequest(BaseModel):
    months: int = Field(..., ge=1, le=36)
    note: str = Field(default="", max_length=500)


class GraceRequest(BaseModel):
    days: int = Field(..., ge=1, le=365)


class RetentionExtendRequest(BaseModel):
    days: int = Field(..., ge=1, le=365)
    note: str = Field(default="", max_length=500)


class PartnershipCodeRequest(BaseModel):
    code: str = Field(..., max_length=50)
    grace_period_days: int = Field(..., ge=1, le=365)
    description: str = Field(default="", max_length=500)
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


class TierCreateRequest(BaseModel):
    tier_name: str = Field(..., max_length=50)
    display_name: str = Field(..., max_length=100)
    min_members: int = Field(..., ge=1)
    max_members: Optional[int] = Field(default=None, ge=1)
    monthly_price_usd: Decimal
    quarterly_price_usd: Decimal
    biannual_price_usd: Decimal
    annual_price_usd: Decimal
    description: str = Field(default="", max_length=500)
    features: List[str] = Field(default_factory=list)
    display_order: int = 0


def _admin(current_user: dict) -> str:
    require_admin(current_user)
    return current_user.get("username", "")


# ---------- 汇率 ----------

@router.get("/currency", summary="当前汇率配置")
async def currency_settings(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(settings_to_dict(get_current_settings(session)))
    finally:
        session.close()


@router.put("/currency/rate", summary="更新汇率（带版本校验）")
async def currency_update_rate(payload: ExchangeRateRequest, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        settings = update_exchange_rate(
            session,
            payload.exchange_rate,
            updated_by=operator,
            note=payload.note,
            expected_version=payload.expected_version,
        )
        return success_response(settings_to_dict(settings), message="汇率已更新")
    except BillingError as e:
        raise billing_http_error(e, "更新汇率失败")
    finally:
        session.close()


@router.put("/currency/preferences", summary="更新币种展示偏好")
async def currency_preferences(payload: DisplayPreferencesRequest, current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        settings = update_display_preferences(
            session,
            show_both_currencies=payload.show_both_currencies,
            primary_display_currency=payload.primary_display_currency,
        )
        return success_response(settings_to_dict(settings))
    except BillingError as e:
        raise billing_http_error(e, "更新展示偏好失败")
    finally:
        session.close()


@router.get("/currency/history", summary="汇率变更历史")
async def currency_history(limit: int = Query(50, ge=1, le=500), current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(get_rate_history(session, limit=limit))
    finally:
        session.close()


@router.get("/currency/stats", summary="汇率统计")
async def currency_stats(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(get_exchange_rate_stats(session))
    finally:
        session.close()


@router.get("/currency/format", summary="按当前汇率格式化双币种金额")
async def currency_format(amount_usd: Decimal = Query(..., ge=0), current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response({"text": format_dual_currency(get_rate_snapshot(session), amount_usd)})
    finally:
        session.close()


# ---------- 订阅 ----------

@router.get("/subscriptions", summary="订阅列表")
async def subscriptions(
    status: str = Query("", max_length=20),
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(get_current_user),
):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(subscription_service.list_subscriptions(session, status=status, limit=limit))
    except BillingError as e:
        raise billing_http_error(e, "查询失败")
    finally:
        session.close()


@router.get("/subscriptions/due", summary="即将扣款的订阅")
async def subscriptions_due(days: int = Query(7, ge=0, le=90), current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        rows = subscription_service.due_within(session, days=days)
        return success_response([subscription_service.subscription_to_dict(x) for x in rows])
    finally:
        session.close()


@router.post("/subscriptions/{tenant_id}/reactivate", summary="恢复已暂停的订阅")
async def subscription_reactivate(tenant_id: str, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.reactivate_subscription(session, sub, reactivated_by=operator)
        return success_response(subscription_service.subscription_to_dict(sub), message="订阅已恢复")
    except BillingError as e:
        raise billing_http_error(e, "恢复订阅失败")
    finally:
        session.close()


@router.post("/subscriptions/{tenant_id}/promotional-credits", summary="赠送免费月")
async def subscription_grant_credits(tenant_id: str, payload: PromoCreditsRequest, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.grant_promotional_credits(session, sub, payload.months, note=payload.note, granted_by=operator)
        return success_response(subscription_service.subscription_to_dict(sub))
    except BillingError as e:
        raise billing_http_error(e, "赠送失败")
    finally:
        session.close()


@router.delete("/subscriptions/{tenant_id}/promotional-credits", summary="收回剩余免费月")
async def subscription_revoke_credits(tenant_id: str, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.revoke_promotional_credits(session, sub, revoked_by=operator)
        return success_response(subscription_service.subscription_to_dict(sub))
    except BillingError as e:
        raise billing_http_error(e, "收回失败")
    finally:
        session.close()


@router.post("/subscriptions/{tenant_id}/grace", summary="设置宽限天数")
async def subscription_grace(tenant_id: str, payload: GraceRequest, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.grant_grace_period(session, sub, payload.days, granted_by=operator)
        return success_response(subscription_service.subscription_to_dict(sub))
    except BillingError as e:
        raise billing_http_error(e, "设置宽限期失败")
    finally:
        session.close()


# ---------- 数据保留 ----------

@router.get("/data-retention/pending-deletions", summary="待删除租户列表")
async def pending_deletions(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(subscription_service.list_pending_deletions(session))
    finally:
        session.close()


@router.post("/data-retention/{tenant_id}/extend", summary="延长数据保留期")
async def retention_extend(tenant_id: str, payload: RetentionExtendRequest, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        sub = subscription_service.get_subscription(session, tenant_id)
        sub = subscription_service.extend_retention(
            session,
            sub,
            payload.days,
            note=payload.note,
            extended_by=operator,
            policy=RetentionPolicy.from_config(),
        )
        return success_response(subscription_service.subscription_to_dict(sub), message="已延长")
    except BillingError as e:
        raise billing_http_error(e, "延长失败")
    finally:
        session.close()


# ---------- 合作码 ----------

@router.get("/partnership-codes", summary="合作码列表")
async def partnership_codes(active_only: bool = Query(False), current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(partnership_service.list_codes(session, active_only=active_only))
    finally:
        session.close()


@router.post("/partnership-codes", summary="创建合作码")
async def partnership_code_create(payload: PartnershipCodeRequest, current_user: dict = Depends(get_current_user)):
    operator = _admin(current_user)
    session = DB.get_session()
    try:
        row = partnership_service.create_partnership_code(
            session,
            payload.code,
            payload.grace_period_days,
            description=payload.description,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            created_by=operator,
        )
        return success_response(partnership_service.code_to_dict(row), message="已创建")
    except BillingError as e:
        raise billing_http_error(e, "创建合作码失败")
    finally:
        session.close()


@router.delete("/partnership-codes/{code}", summary="停用合作码")
async def partnership_code_deactivate(code: str, current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        row = partnership_service.deactivate_code(session, code)
        return success_response(partnership_service.code_to_dict(row), message="已停用")
    except BillingError as e:
        raise billing_http_error(e, "停用失败")
    finally:
        session.close()


@router.get("/partnership-codes/{code}/usages", summary="合作码使用记录")
async def partnership_code_usages(code: str, current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(partnership_service.list_code_usages(session, code))
    except BillingError as e:
        raise billing_http_error(e, "查询失败")
    finally:
        session.close()


# ---------- 财务 ----------

@router.get("/credits-owed", summary="降级产生的待退余额")
async def credits_owed(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(proration_service.list_credits_owed(session))
    finally:
        session.close()


@router.get("/revenue", summary="收入汇总")
async def revenue(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(billing_service.revenue_summary(session))
    finally:
        session.close()


@router.get("/payments", summary="全部支付流水")
async def payments(
    tenant_id: str = Query("", max_length=64),
    status: str = Query("", max_length=32),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(billing_service.list_payments(session, tenant_id=tenant_id, status=status, limit=limit))
    finally:
        session.close()


# ---------- 价格档位 ----------

@router.get("/pricing/tiers", summary="启用中的档位及分段校验结果")
async def pricing_tiers(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        tiers = list_active_tiers(session)
        return success_response(
            {"tiers": [tier_to_dict(x) for x in tiers], "partition_problems": validate_tier_partition(tiers)}
        )
    finally:
        session.close()


@router.post("/pricing/tiers", summary="新增档位")
async def pricing_tier_create(payload: TierCreateRequest, current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        tier = create_tier(
            session,
            tier_name=payload.tier_name,
            display_name=payload.display_name,
            min_members=payload.min_members,
            max_members=payload.max_members,
            prices=[
                payload.monthly_price_usd,
                payload.quarterly_price_usd,
                payload.biannual_price_usd,
                payload.annual_price_usd,
            ],
            description=payload.description,
            features=payload.features,
            display_order=payload.display_order,
        )
        problems = validate_tier_partition(list_active_tiers(session))
        return success_response({"tier": tier_to_dict(tier), "partition_problems": problems}, message="已创建")
    except BillingError as e:
        raise billing_http_error(e, "创建档位失败")
    finally:
        session.close()


@router.post("/pricing/seed", summary="写入默认价格目录（幂等）")
async def pricing_seed(current_user: dict = Depends(get_current_user)):
    _admin(current_user)
    session = DB.get_session()
    try:
        return success_response(seed_default_catalog(session))
    finally:
        session.close()
