from typing import Any

from fastapi import HTTPException, status

from core.errors import ConcurrencyConflict, NotFoundError, PaymentFailure, ValidationError


def success_response(data: Any = None, message: str = "success", code: int = 0) -> dict:
    return {"code": code, "message": message, "data": data}


def error_response(code: int, message: str, data: Any = None) -> dict:
    return {"code": code, "message": message, "data": data}


def billing_http_error(e: Exception, prefix: str) -> HTTPException:
    """把计费异常映射为 HTTP 状态码。"""
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConcurrencyConflict):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, PaymentFailure):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(e, (ValidationError, ValueError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=f"{prefix}: {e}")
