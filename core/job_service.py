"""
core/job_service.py — 调度执行台账

每次调度运行写一条 JobExecution：开始时 RUNNING，结束时 COMPLETED / FAILED，
运营人员可以取消正在运行的批次（批次在处理下一个租户前检查状态）。
"""

import json
import traceback
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.config import cfg
from core.errors import NotFoundError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.job_execution import JobExecution, JobExecutionFailure, JobStatus

logger = get_logger(__name__)


def _duration_ms(execution: JobExecution, end: datetime) -> int:
    return int((end - execution.start_time).total_seconds() * 1000)


def start_job_execution(
    session,
    job_name: str,
    description: str = "",
    manually_triggered: bool = False,
    triggered_by: str = "",
    metadata: Dict = None,
) -> JobExecution:
    execution = JobExecution(
        job_name=job_name,
        description=(description or "")[:500] or None,
        status=JobStatus.RUNNING,
        start_time=datetime.now(),
        items_processed=0,
        items_failed=0,
        retry_count=0,
        manually_triggered=bool(manually_triggered),
        triggered_by=(triggered_by or "")[:100] or None,
        metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
    )
    session.add(execution)
    session.commit()
    log_event(logger, E.JOB_START, job=job_name, execution_id=execution.id, manual=manually_triggered, by=triggered_by)
    return execution


def mark_job_completed(session, execution: JobExecution, items_processed: int = None, items_failed: int = None) -> JobExecution:
    now = datetime.now()
    if items_processed is not None:
        execution.items_processed = int(items_processed)
    if items_failed is not None:
        execution.items_failed = int(items_failed)
    execution.status = JobStatus.COMPLETED
    execution.end_time = now
    execution.duration_ms = _duration_ms(execution, now)
    session.commit()
    log_event(
        logger,
        E.JOB_COMPLETE,
        job=execution.job_name,
        execution_id=execution.id,
        processed=execution.items_processed,
        failed=execution.items_failed,
        duration_ms=execution.duration_ms,
    )
    return execution


def mark_job_failed(session, execution: JobExecution, error: BaseException = None, message: str = "") -> JobExecution:
    now = datetime.now()
    execution.status = JobStatus.FAILED
    execution.end_time = now
    execution.duration_ms = _duration_ms(execution, now)
    execution.error_message = (message or (str(error) if error else ""))[:2000] or None
    if error is not None:
        execution.stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))[:20000]
    session.commit()
    log_event(logger, E.JOB_FAIL, level="error", job=execution.job_name, execution_id=execution.id, error=execution.error_message)
    return execution


def record_item_failure(session, execution: JobExecution, tenant_id: str, error: BaseException) -> JobExecutionFailure:
    failure = JobExecutionFailure(
        execution_id=execution.id,
        tenant_id=tenant_id,
        error_message=str(error)[:2000],
        stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__))[:20000],
        created_at=datetime.now(),
    )
    session.add(failure)
    execution.items_failed = int(execution.items_failed or 0) + 1
    session.commit()
    log_event(logger, E.JOB_ITEM_FAIL, level="warning", job=execution.job_name, tenant_id=tenant_id, error=error)
    return failure


def get_execution(session, execution_id: str) -> JobExecution:
    execution = session.query(JobExecution).filter(JobExecution.id == execution_id).first()
    if not execution:
        raise NotFoundError(f"任务执行记录不存在: {execution_id}")
    return execution


def is_cancel_requested(session, execution: JobExecution) -> bool:
    """从数据库重新读取状态，运营取消在另一个会话里完成。"""
    session.refresh(execution, attribute_names=["status"])
    return execution.status == JobStatus.CANCELED


def cancel_job_execution(session, execution_id: str, canceled_by: str = "") -> JobExecution:
    execution = get_execution(session, execution_id)
    if execution.status != JobStatus.RUNNING:
        raise ValidationError(f"只能取消运行中的任务，当前状态 {execution.status.value}")
    now = datetime.now()
    execution.status = JobStatus.CANCELED
    execution.end_time = now
    execution.duration_ms = _duration_ms(execution, now)
    execution.error_message = f"canceled by {canceled_by}".strip()
    session.commit()
    log_event(logger, E.JOB_CANCEL, job=execution.job_name, execution_id=execution.id, by=canceled_by)
    return execution


def increment_retry_count(session, execution: JobExecution) -> JobExecution:
    execution.retry_count = int(execution.retry_count or 0) + 1
    session.commit()
    return execution


def fail_stale_executions(session, job_name: str, now: datetime = None) -> int:
    """进程异常退出会留下 RUNNING 记录，超过阈值后标记为 FAILED。"""
    now = now or datetime.now()
    stale_before = now - timedelta(minutes=int(cfg.get("billing.job_stale_minutes", 180)))
    rows = session.query(JobExecution).filter(
        JobExecution.job_name == job_name,
        JobExecution.status == JobStatus.RUNNING,
        JobExecution.start_time < stale_before,
    ).all()
    for execution in rows:
        mark_job_failed(session, execution, message="执行超时，进程可能已退出")
    return len(rows)


def get_recent_executions(session, limit: int = 50) -> List[JobExecution]:
    return (
        session.query(JobExecution)
        .order_by(JobExecution.start_time.desc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )


def get_executions_for_job(session, job_name: str, limit: int = 50) -> List[JobExecution]:
    return (
        session.query(JobExecution)
        .filter(JobExecution.job_name == job_name)
        .order_by(JobExecution.start_time.desc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )


def get_running_jobs(session, job_name: str = "") -> List[JobExecution]:
    query = session.query(JobExecution).filter(JobExecution.status == JobStatus.RUNNING)
    if job_name:
        query = query.filter(JobExecution.job_name == job_name)
    return query.order_by(JobExecution.start_time.desc()).all()


def get_failed_jobs_needing_retry(session) -> List[JobExecution]:
    return (
        session.query(JobExecution)
        .filter(JobExecution.status == JobStatus.FAILED, JobExecution.retry_count == 0)
        .order_by(JobExecution.start_time.desc())
        .all()
    )


def get_last_execution_for_job(session, job_name: str) -> Optional[JobExecution]:
    return (
        session.query(JobExecution)
        .filter(JobExecution.job_name == job_name)
        .order_by(JobExecution.start_time.desc())
        .first()
    )


def get_job_statistics_summary(session, since: datetime = None) -> Dict:
    since = since or datetime.now() - timedelta(days=7)
    rows = session.query(JobExecution).filter(JobExecution.start_time >= since).all()
    counts = {status.value: 0 for status in JobStatus}
    by_job: Dict[str, Dict] = {}
    for x in rows:
        counts[x.status.value] += 1
        item = by_job.setdefault(x.job_name, {"runs": 0, "failed": 0, "items_processed": 0, "items_failed": 0})
        item["runs"] += 1
        item["failed"] += 1 if x.status == JobStatus.FAILED else 0
        item["items_processed"] += int(x.items_processed or 0)
        item["items_failed"] += int(x.items_failed or 0)
    finished = [x.duration_ms for x in rows if x.duration_ms is not None]
    total = len(rows)
    return {
        "since": since.isoformat(),
        "total": total,
        "by_status": counts,
        "success_rate": round(counts["COMPLETED"] * 100.0 / total, 2) if total else None,
        "avg_duration_ms": int(sum(finished) / len(finished)) if finished else None,
        "by_job": by_job,
    }


def cleanup_old_executions(session, days: int = None, now: datetime = None) -> int:
    days = int(days or cfg.get("billing.job_retention_days", 90))
    cutoff = (now or datetime.now()) - timedelta(days=days)
    rows = session.query(JobExecution).filter(
        JobExecution.start_time < cutoff,
        JobExecution.status != JobStatus.RUNNING,
    ).all()
    for execution in rows:
        session.delete(execution)
    session.commit()
    log_event(logger, E.JOB_CLEANUP, deleted=len(rows), cutoff=cutoff.date())
    return len(rows)


def execution_to_dict(execution: JobExecution, with_failures: bool = False) -> Dict:
    data = {
        "id": execution.id,
        "job_name": execution.job_name,
        "description": execution.description or "",
        "status": execution.status.value,
        "start_time": execution.start_time.isoformat() if execution.start_time else None,
        "end_time": execution.end_time.isoformat() if execution.end_time else None,
        "duration_ms": execution.duration_ms,
        "items_processed": int(execution.items_processed or 0),
        "items_failed": int(execution.items_failed or 0),
        "retry_count": int(execution.retry_count or 0),
        "error_message": execution.error_message or "",
        "manually_triggered": bool(execution.manually_triggered),
        "triggered_by": execution.triggered_by or "",
    }
    if with_failures:
        data["stack_trace"] = execution.stack_trace or ""
        data["failures"] = [
            {"tenant_id": f.tenant_id, "error_message": f.error_message or "", "stack_trace": f.stack_trace or ""}
            for f in execution.failures
        ]
    return data
