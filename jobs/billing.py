"""
jobs/billing.py — 订阅生命周期调度

每天跑一次（cron 调用 `python -m jobs.billing run`，或 web 进程内的后台线程）：
逐个租户执行 续费/免费月 → 宽限到期暂停 → 删除预警 → 删除标记，
每个租户单独提交，单个租户出错只回滚该租户并记入台账，不影响整批。
"""

import argparse
import sys
import time
from datetime import date, datetime
from threading import Thread
from typing import Callable, Dict, List

from core import billing_service, job_service, subscription_service
from core.config import cfg
from core.db import DB
from core.errors import NotFoundError, SchedulerJobFailure, ValidationError
from core.events import log_event, E
from core.lifecycle import LifecycleAction, RetentionPolicy, next_lifecycle_action
from core.log import get_logger, trace_ctx
from core.models.job_execution import JobExecution, JobStatus
from core.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from core.payment_gateway import get_payment_gateway

logger = get_logger(__name__)

LIFECYCLE_JOB_NAME = "subscription_lifecycle"
CLEANUP_JOB_NAME = "job_execution_cleanup"

# 单个租户一轮内最多执行的动作数，防止状态异常时死循环
_MAX_ACTIONS_PER_TENANT = 8


def _apply_action(session, sub: TenantSubscription, action: LifecycleAction, gateway, now: datetime, policy: RetentionPolicy):
    if action == LifecycleAction.CONSUME_CREDIT:
        subscription_service.consume_promotional_credit(session, sub, commit=False)
    elif action == LifecycleAction.CHARGE:
        billing_service.charge_renewal(session, sub, gateway, commit=False)
    elif action == LifecycleAction.EXPIRE:
        subscription_service.expire_subscription(session, sub, now=now, commit=False)
    elif action == LifecycleAction.SUSPEND:
        subscription_service.suspend_subscription(session, sub, now=now, policy=policy, commit=False)
    elif action == LifecycleAction.SEND_DELETION_WARNING:
        subscription_service.mark_deletion_warning_sent(session, sub, now=now, commit=False)
    elif action == LifecycleAction.FLAG_FOR_DELETION:
        subscription_service.flag_for_deletion(session, sub, now=now, commit=False)


def process_tenant(
    session,
    sub: TenantSubscription,
    gateway,
    today: date,
    now: datetime,
    policy: RetentionPolicy,
) -> List[LifecycleAction]:
    """对单个租户依次执行判定出的动作，返回执行过的动作列表（不提交）。"""
    done: List[LifecycleAction] = []
    while len(done) < _MAX_ACTIONS_PER_TENANT:
        action = next_lifecycle_action(sub, today, now, policy, done)
        if action is None:
            break
        _apply_action(session, sub, action, gateway, now, policy)
        done.append(action)
    return done


def _candidate_tenants(session) -> List[str]:
    rows = (
        session.query(TenantSubscription.tenant_id)
        .filter(TenantSubscription.status != SubscriptionStatus.CANCELED)
        .order_by(TenantSubscription.tenant_id)
        .all()
    )
    return [r[0] for r in rows]


def run_subscription_lifecycle(
    session=None,
    gateway=None,
    today: date = None,
    now: datetime = None,
    triggered_by: str = "",
    policy: RetentionPolicy = None,
) -> JobExecution:
    own_session = session is None
    session = session or DB.get_session()
    gateway = gateway or get_payment_gateway()
    now = now or datetime.now()
    today = today or now.date()
    policy = policy or RetentionPolicy.from_config()
    try:
        job_service.fail_stale_executions(session, LIFECYCLE_JOB_NAME, now=now)
        execution = job_service.start_job_execution(
            session,
            LIFECYCLE_JOB_NAME,
            description=f"订阅生命周期 {today.isoformat()}",
            manually_triggered=bool(triggered_by),
            triggered_by=triggered_by,
            metadata={"today": today, "retention_days": policy.retention_days},
        )
        with trace_ctx(execution.id[:8]):
            _run_batch(session, execution, gateway, today, now, policy)
        return execution
    finally:
        if own_session:
            session.close()


def _run_batch(session, execution: JobExecution, gateway, today: date, now: datetime, policy: RetentionPolicy) -> None:
    processed = 0
    actions: Dict[str, int] = {}
    try:
        for tenant_id in _candidate_tenants(session):
            if job_service.is_cancel_requested(session, execution):
                logger.warning("批次已被取消，停止处理后续租户 (已处理 %s)", processed)
                execution.items_processed = processed
                session.commit()
                return
            with trace_ctx(f"t-{tenant_id}"):
                try:
                    sub = subscription_service.get_subscription(session, tenant_id)
                    done = process_tenant(session, sub, gateway, today, now, policy)
                    session.commit()
                    processed += 1
                    for action in done:
                        actions[action.value] = actions.get(action.value, 0) + 1
                except Exception as e:
                    session.rollback()
                    logger.exception("租户 %s 生命周期处理失败", tenant_id)
                    job_service.record_item_failure(session, execution, tenant_id, e)
        logger.info("生命周期批次完成: processed=%s actions=%s", processed, actions)
        job_service.mark_job_completed(session, execution, items_processed=processed)
    except Exception as e:
        session.rollback()
        job_service.mark_job_failed(session, execution, error=e)
        raise SchedulerJobFailure(f"生命周期批次失败: {e}") from e


def run_execution_cleanup(session=None, triggered_by: str = "") -> JobExecution:
    own_session = session is None
    session = session or DB.get_session()
    try:
        execution = job_service.start_job_execution(
            session,
            CLEANUP_JOB_NAME,
            description="清理历史执行记录",
            manually_triggered=bool(triggered_by),
            triggered_by=triggered_by,
        )
        try:
            deleted = job_service.cleanup_old_executions(session)
        except Exception as e:
            session.rollback()
            job_service.mark_job_failed(session, execution, error=e)
            raise SchedulerJobFailure(f"清理失败: {e}") from e
        return job_service.mark_job_completed(session, execution, items_processed=deleted)
    finally:
        if own_session:
            session.close()


JOB_REGISTRY: Dict[str, Callable] = {
    LIFECYCLE_JOB_NAME: run_subscription_lifecycle,
    CLEANUP_JOB_NAME: run_execution_cleanup,
}


def run_registered_job(job_name: str, session=None, triggered_by: str = "") -> JobExecution:
    runner = JOB_REGISTRY.get(job_name)
    if runner is None:
        raise NotFoundError(f"未注册的任务: {job_name}")
    return runner(session=session, triggered_by=triggered_by)


def retry_job_execution(session, execution_id: str, triggered_by: str = "") -> JobExecution:
    """对失败的执行重新跑一次同名任务，原记录 retry_count +1。"""
    execution = job_service.get_execution(session, execution_id)
    if execution.status != JobStatus.FAILED:
        raise ValidationError(f"只能重试失败的任务，当前状态 {execution.status.value}")
    job_service.increment_retry_count(session, execution)
    return run_registered_job(execution.job_name, session=session, triggered_by=triggered_by or "retry")


def _worker_loop():
    interval = max(300, int(cfg.get("billing.scheduler.interval_seconds", 86400) or 86400))
    while True:
        try:
            run_subscription_lifecycle()
        except Exception:
            logger.exception("订阅生命周期调度异常")
        time.sleep(interval)


def start_lifecycle_worker():
    t = Thread(target=_worker_loop, daemon=True)
    t.start()
    log_event(logger, E.SYSTEM_STARTUP, worker=LIFECYCLE_JOB_NAME)
    return t


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="订阅计费生命周期任务")
    parser.add_argument("job", choices=["run", "cleanup"], help="run=生命周期批次, cleanup=清理执行记录")
    parser.add_argument("--date", default="", help="按指定日期运行 (YYYY-MM-DD)，用于补跑")
    parser.add_argument("--triggered-by", default="", help="手动触发人")
    args = parser.parse_args(argv)

    DB.create_tables()
    if args.job == "cleanup":
        execution = run_execution_cleanup(triggered_by=args.triggered_by)
    else:
        today = date.fromisoformat(args.date) if args.date else None
        try:
            execution = run_subscription_lifecycle(today=today, triggered_by=args.triggered_by)
        except SchedulerJobFailure:
            logger.exception("生命周期批次失败")
            return 1
    print(f"{execution.job_name} {execution.status.value} processed={execution.items_processed} failed={execution.items_failed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
