"""
core/events.py — 结构化事件日志

计费链路的关键动作都通过 log_event() 输出一行可 grep 的日志：

    event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.SUBSCRIPTION_RENEW, tenant_id="t001", amount="29.99")
    # 输出：event=subscription.renew | tenant_id=t001 | amount=29.99
"""

import logging
from typing import Any


class E:
    """事件类型常量，按模块分组。"""

    # ── 订阅 Subscription ─────────────────────────────────────────────────────
    SUBSCRIPTION_CREATE = "subscription.create"
    SUBSCRIPTION_RENEW = "subscription.renew"
    SUBSCRIPTION_PROMO_CONSUME = "subscription.promo.consume"
    SUBSCRIPTION_PROMO_GRANT = "subscription.promo.grant"
    SUBSCRIPTION_PAYMENT_FAIL = "subscription.payment.fail"
    SUBSCRIPTION_SUSPEND = "subscription.suspend"
    SUBSCRIPTION_REACTIVATE = "subscription.reactivate"
    SUBSCRIPTION_CANCEL = "subscription.cancel"
    SUBSCRIPTION_EXPIRE = "subscription.expire"
    SUBSCRIPTION_GRACE_GRANT = "subscription.grace.grant"
    SUBSCRIPTION_PAYMENT_METHOD = "subscription.payment_method.update"

    # ── 数据保留 Retention ─────────────────────────────────────────────────────
    RETENTION_EXTEND = "retention.extend"
    RETENTION_WARNING_SENT = "retention.warning.sent"
    RETENTION_DELETION_FLAG = "retention.deletion.flag"

    # ── 套餐变更 Tier change ───────────────────────────────────────────────────
    TIER_CHANGE_REQUEST = "tier_change.request"
    TIER_CHANGE_COMPLETE = "tier_change.complete"
    TIER_CHANGE_FAIL = "tier_change.fail"
    TIER_CHANGE_CANCEL = "tier_change.cancel"
    TIER_CHANGE_PAID_AFTER_CANCEL = "tier_change.paid_after_cancel"

    # ── 存储扩容 Addon ─────────────────────────────────────────────────────────
    ADDON_PURCHASE = "addon.purchase"
    ADDON_ACTIVATE = "addon.activate"
    ADDON_CANCEL = "addon.cancel"
    ADDON_SUSPEND = "addon.suspend"
    ADDON_REACTIVATE = "addon.reactivate"
    ADDON_SYNC = "addon.sync"

    # ── 支付 Payment ───────────────────────────────────────────────────────────
    PAYMENT_AUTHORIZE = "payment.authorize"
    PAYMENT_CHARGE = "payment.charge"
    PAYMENT_CHARGE_FAIL = "payment.charge.fail"
    PAYMENT_RECONCILE = "payment.reconcile"
    PAYMENT_EVENT = "payment.event"
    PAYMENT_EVENT_UNKNOWN = "payment.event.unknown"
    PAYMENT_REFUND = "payment.refund"

    # ── 汇率 Currency ──────────────────────────────────────────────────────────
    CURRENCY_RATE_UPDATE = "currency.rate.update"
    CURRENCY_SETTINGS_INIT = "currency.settings.init"

    # ── 合作码 Partnership ─────────────────────────────────────────────────────
    PARTNERSHIP_CODE_CREATE = "partnership.code.create"
    PARTNERSHIP_CODE_REDEEM = "partnership.code.redeem"

    # ── 调度任务 Job ───────────────────────────────────────────────────────────
    JOB_START = "job.start"
    JOB_COMPLETE = "job.complete"
    JOB_FAIL = "job.fail"
    JOB_CANCEL = "job.cancel"
    JOB_ITEM_FAIL = "job.item.fail"
    JOB_CLEANUP = "job.cleanup"

    # ── 通知 Notice ────────────────────────────────────────────────────────────
    NOTICE_CREATE = "notice.create"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_CATALOG_SEED = "system.catalog.seed"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

        log_event(logger, E.SUBSCRIPTION_PAYMENT_FAIL, level="warning",
                  tenant_id="t1", attempts=2, reason="insufficient_funds")
        # → event=subscription.payment.fail | tenant_id=t1 | attempts=2 | reason=insufficient_funds
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
