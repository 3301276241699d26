"""
core/lifecycle.py — 订阅生命周期判定（纯函数）

这里只根据订阅当前字段和传入的 today/now 计算"下一步该做什么"，
不读库、不调网关、不发通知；副作用由 subscription_service 和调度 Job 执行。
"""

import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from core.config import cfg
from core.errors import InvalidTransition
from core.models.tenant_subscription import SubscriptionStatus


S = SubscriptionStatus

# 状态机：只允许表内的迁移
ALLOWED_TRANSITIONS = {
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.PAST_DUE, S.ACTIVE, S.SUSPENDED}),
    S.SUSPENDED: frozenset({S.ACTIVE}),
    S.CANCELED: frozenset(),
}


def ensure_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


@dataclass(frozen=True)
class RetentionPolicy:
    retention_days: int = 90
    warning_days: int = 7
    cooling_days: int = 7

    @classmethod
    def from_config(cls) -> "RetentionPolicy":
        return cls(
            retention_days=int(cfg.get("billing.retention_days", 90)),
            warning_days=int(cfg.get("billing.deletion_warning_days", 7)),
            cooling_days=int(cfg.get("billing.deletion_cooling_days", 7)),
        )


DEFAULT_POLICY = RetentionPolicy()


class LifecycleAction(str, enum.Enum):
    CONSUME_CREDIT = "CONSUME_CREDIT"
    CHARGE = "CHARGE"
    EXPIRE = "EXPIRE"
    SUSPEND = "SUSPEND"
    SEND_DELETION_WARNING = "SEND_DELETION_WARNING"
    FLAG_FOR_DELETION = "FLAG_FOR_DELETION"


def is_due_for_billing(sub, today: date) -> bool:
    return (
        sub.status in (S.ACTIVE, S.PAST_DUE)
        and sub.next_billing_date is not None
        and sub.next_billing_date <= today
    )


def is_in_grace_period(sub, today: date) -> bool:
    if sub.status != S.PAST_DUE or sub.next_billing_date is None:
        return False
    return today < sub.next_billing_date + timedelta(days=int(sub.grace_period_days or 0))


def should_suspend(sub, today: date) -> bool:
    return sub.status == S.PAST_DUE and not is_in_grace_period(sub, today)


def is_service_active(sub, today: date) -> bool:
    """ACTIVE、宽限期内的 PAST_DUE、以及已取消但未到期的订阅都可正常使用。"""
    if sub.status == S.ACTIVE:
        return True
    if sub.status == S.PAST_DUE:
        return is_in_grace_period(sub, today)
    if sub.status == S.CANCELED:
        return sub.next_billing_date is not None and today < sub.next_billing_date
    return False


def retention_end_date(suspended_at: datetime, extension_days: int, policy: RetentionPolicy = DEFAULT_POLICY) -> date:
    """保留截止日总是从 suspended_at 重新计算，不在旧截止日上叠加。"""
    base = suspended_at.date() if isinstance(suspended_at, datetime) else suspended_at
    return base + timedelta(days=policy.retention_days + int(extension_days or 0))


def deletion_warning_date(sub, policy: RetentionPolicy = DEFAULT_POLICY) -> Optional[date]:
    if sub.data_retention_end_date is None:
        return None
    return sub.data_retention_end_date - timedelta(days=policy.warning_days)


def needs_deletion_warning(sub, today: date, policy: RetentionPolicy = DEFAULT_POLICY) -> bool:
    if sub.status != S.SUSPENDED or sub.data_retention_end_date is None:
        return False
    if sub.deletion_warning_sent_at is not None:
        return False
    return today >= deletion_warning_date(sub, policy)


def is_eligible_for_deletion(sub, today: date, now: datetime, policy: RetentionPolicy = DEFAULT_POLICY) -> bool:
    if sub.status != S.SUSPENDED or sub.data_retention_end_date is None:
        return False
    if today <= sub.data_retention_end_date:
        return False
    warned_at = sub.deletion_warning_sent_at
    return warned_at is not None and warned_at <= now - timedelta(days=policy.cooling_days)


def days_until_deletion(sub, today: date) -> Optional[int]:
    if sub.data_retention_end_date is None:
        return None
    return (sub.data_retention_end_date - today).days


def deletion_urgency(days_remaining: int) -> str:
    if days_remaining <= 0:
        return "OVERDUE"
    if days_remaining <= 3:
        return "CRITICAL"
    if days_remaining <= 7:
        return "HIGH"
    if days_remaining <= 14:
        return "MEDIUM"
    return "LOW"


def next_lifecycle_action(
    sub,
    today: date,
    now: datetime,
    policy: RetentionPolicy = DEFAULT_POLICY,
    done: Iterable[LifecycleAction] = (),
) -> Optional[LifecycleAction]:
    """
    按 续费 → 宽限/暂停 → 删除预警 → 删除标记 的顺序返回下一步动作。

    done 为本轮已执行过的动作，同一动作每轮最多执行一次；
    调度方执行完一个动作后用新状态再次调用，直到返回 None。
    """
    done = set(done)
    billing_done = done & {LifecycleAction.CONSUME_CREDIT, LifecycleAction.CHARGE, LifecycleAction.EXPIRE}
    if not billing_done and is_due_for_billing(sub, today):
        if not sub.auto_renew:
            if sub.status == S.ACTIVE:
                return LifecycleAction.EXPIRE
        elif int(sub.free_months_remaining or 0) > 0:
            return LifecycleAction.CONSUME_CREDIT
        else:
            return LifecycleAction.CHARGE

    if LifecycleAction.SUSPEND not in done and should_suspend(sub, today):
        return LifecycleAction.SUSPEND

    if LifecycleAction.SEND_DELETION_WARNING not in done and needs_deletion_warning(sub, today, policy):
        return LifecycleAction.SEND_DELETION_WARNING

    if (
        LifecycleAction.FLAG_FOR_DELETION not in done
        and sub.deletion_eligible_at is None
        and is_eligible_for_deletion(sub, today, now, policy)
    ):
        return LifecycleAction.FLAG_FOR_DELETION
    return None
