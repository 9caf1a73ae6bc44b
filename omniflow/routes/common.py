"""路由公共响应：业务异常统一映射为 {code: -1, msg, error}。"""

from fastapi.responses import JSONResponse

from omniflow.services.errors import ForbiddenError, PaymentFlowError


def error_response(e: PaymentFlowError) -> JSONResponse:
    """越权访问返回 403，其余业务错误返回 200 + code=-1。"""
    status_code = 403 if isinstance(e, ForbiddenError) else 200
    return JSONResponse(
        status_code=status_code,
        content={"code": -1, "msg": str(e), "error": e.error_code},
    )
