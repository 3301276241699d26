from fastapi import FastAPI, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import json
import time
from typing import Any
from apis.billing import router as billing_router, webhook_router
from apis.platform import router as platform_router
from apis.jobs import router as jobs_router
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.events import log_event, E
from core.log import get_logger, trace_ctx
from core.pricing_service import seed_default_catalog

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Church SaaS Billing API",
    description="租户订阅、续费、套餐变更与数据保留接口",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("server.cors_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_custom_header(request: Request, call_next):
    start = time.perf_counter()
    with trace_ctx(request.headers.get("X-Request-Id") or None):
        response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["X-Response-Time-Ms"] = str(int((time.perf_counter() - start) * 1000))
    return response


# 创建API路由分组
api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(billing_router)
api_router.include_router(webhook_router)
api_router.include_router(platform_router)
api_router.include_router(jobs_router)
app.include_router(api_router)


@app.get("/health", tags=["默认"], include_in_schema=False)
async def health():
    return {"status": "ok", "version": VERSION}


@app.on_event("startup")
async def ensure_tables():
    DB.create_tables()
    session = DB.get_session()
    try:
        seed_default_catalog(session)
    finally:
        session.close()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION)
    if str(cfg.get("billing.scheduler.enabled", False)).strip().lower() in ("1", "true", "yes"):
        from jobs.billing import start_lifecycle_worker

        start_lifecycle_worker()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8001)),
        reload=False,
    )
