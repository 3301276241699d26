from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core import job_service
from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import BillingError
from jobs.billing import JOB_REGISTRY, retry_job_execution, run_registered_job
from .base import billing_http_error, success_response


router = APIRouter(prefix="/jobs", tags=["调度任务"])


class TriggerJobRequest(BaseModel):
    job_name: str = Field(..., max_length=100)


class CleanupRequest(BaseModel):
    days: int = Field(default=90, ge=1, le=3650)


@router.get("/registry", summary="可手动触发的任务")
async def job_registry(current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    return success_response(sorted(JOB_REGISTRY.keys()))


@router.get("/executions", summary="最近的执行记录")
async def recent_executions(
    job_name: str = Query("", max_length=100),
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        if job_name:
            rows = job_service.get_executions_for_job(session, job_name, limit=limit)
        else:
            rows = job_service.get_recent_executions(session, limit=limit)
        return success_response([job_service.execution_to_dict(x) for x in rows])
    finally:
        session.close()


@router.get("/executions/running", summary="运行中的任务")
async def running_executions(current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response([job_service.execution_to_dict(x) for x in job_service.get_running_jobs(session)])
    finally:
        session.close()


@router.get("/executions/failed", summary="尚未重试的失败任务")
async def failed_executions(current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        rows = job_service.get_failed_jobs_needing_retry(session)
        return success_response([job_service.execution_to_dict(x) for x in rows])
    finally:
        session.close()


@router.get("/stats", summary="最近 N 天执行统计")
async def job_stats(days: int = Query(7, ge=1, le=365), current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(job_service.get_job_statistics_summary(session, since=datetime.now() - timedelta(days=days)))
    finally:
        session.close()


@router.get("/executions/{execution_id}", summary="执行详情（含租户级失败）")
async def execution_detail(execution_id: str, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        execution = job_service.get_execution(session, execution_id)
        return success_response(job_service.execution_to_dict(execution, with_failures=True))
    except BillingError as e:
        raise billing_http_error(e, "查询失败")
    finally:
        session.close()


@router.post("/executions/{execution_id}/cancel", summary="取消运行中的批次")
async def cancel_execution(execution_id: str, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        execution = job_service.cancel_job_execution(session, execution_id, canceled_by=current_user.get("username", ""))
        return success_response(job_service.execution_to_dict(execution), message="已请求取消")
    except BillingError as e:
        raise billing_http_error(e, "取消失败")
    finally:
        session.close()


@router.post("/executions/{execution_id}/retry", summary="重跑失败的任务")
async def retry_execution(execution_id: str, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        execution = retry_job_execution(session, execution_id, triggered_by=current_user.get("username", ""))
        return success_response(job_service.execution_to_dict(execution))
    except BillingError as e:
        raise billing_http_error(e, "重试失败")
    finally:
        session.close()


@router.post("/trigger", summary="手动触发任务")
async def trigger_job(payload: TriggerJobRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        execution = run_registered_job(payload.job_name, session=session, triggered_by=current_user.get("username", "") or "admin")
        return success_response(job_service.execution_to_dict(execution), message="任务已执行")
    except BillingError as e:
        raise billing_http_error(e, "触发失败")
    finally:
        session.close()


@router.post("/cleanup", summary="清理历史执行记录")
async def cleanup_executions(payload: CleanupRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        deleted = job_service.cleanup_old_executions(session, days=payload.days)
        return success_response({"deleted": deleted})
    finally:
        session.close()
