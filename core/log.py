"""
core/log.py — 统一日志系统

• trace_id 通过 ContextVar 传播，调度批次与单个租户各自一个 trace
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息
• get_logger(__name__) 获取命名 logger，根日志器统一配置 handler
• trace_ctx() 上下文管理器供计费调度 Job 使用

使用方式：
    from core.log import get_logger, trace_ctx
    logger = get_logger(__name__)

    with trace_ctx(execution.id):
        logger.info("开始处理租户 %s", tenant_id)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

import colorlog

from core.config import cfg

# ─── Trace ID ContextVar ──────────────────────────────────────────────────────
_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """设置当前上下文的 trace_id，返回实际值。"""
    tid = str(tid or "").strip()[:16] or _new_trace_id()
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> str:
    return _trace_id_var.get()


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    """进入时绑定 trace_id，退出时恢复外层的值（可嵌套）。"""
    token = _trace_id_var.set(str(trace_id or "").strip()[:16] or _new_trace_id())
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


# ─── Log Level ────────────────────────────────────────────────────────────────
_LOG_LEVEL_STR = str(cfg.get("log.level", "INFO")).upper()
_LOG_FILE = cfg.get("log.file", "")
_level = logging.getLevelName(_LOG_LEVEL_STR)
if not isinstance(_level, int):
    _level = logging.INFO

_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


class _TraceIdFilter(logging.Filter):
    """把 trace_id 注入每条 record，供 %(trace_id)s 使用。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


_trace_filter = _TraceIdFilter()

# 幂等标记，防止 uvicorn --reload 或重复 import 时多次添加 handler
_APP_HANDLER_MARKER = "_is_app_log_handler"


def _setup_app_logging() -> None:
    root = logging.getLogger()
    if any(getattr(h, _APP_HANDLER_MARKER, False) for h in root.handlers):
        return

    root.setLevel(_level)

    ch = colorlog.StreamHandler(stream=sys.stdout)
    ch.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s" + _FMT,
            datefmt=_DATE_FMT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    ch.setLevel(_level)
    ch.addFilter(_trace_filter)
    setattr(ch, _APP_HANDLER_MARKER, True)
    root.addHandler(ch)

    # 计费日志需要留档，log.file 配置后按 5MB 滚动
    if _LOG_FILE:
        fh = logging.handlers.RotatingFileHandler(
            f"{_LOG_FILE}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=14,
            encoding="utf-8",
        )
        fh.setLevel(_level)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        fh.addFilter(_trace_filter)
        setattr(fh, _APP_HANDLER_MARKER, True)
        root.addHandler(fh)


_setup_app_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
