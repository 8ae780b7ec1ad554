"""
Exception handlers mapping errors to ``{"errors": [{"code", "message"}]}`` bodies.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
import structlog

from regflow.core.errors import RegflowError
from regflow.models.schemas import ErrorItem, ErrorResponse

logger = structlog.get_logger()

_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
    500: "INTERNAL_SERVER_ERROR",
    502: "DEPENDENCY_FAILURE",
}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(errors=[ErrorItem(code=code, message=message)])
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def regflow_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RegflowError)
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(exc.status_code, exc.code, exc.message)


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)
    code = _HTTP_STATUS_CODES.get(exc.status_code, "ERROR")
    return _error_response(exc.status_code, code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    message = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _error_response(status.HTTP_400_BAD_REQUEST, "BAD_REQUEST", message)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "an unexpected error occurred",
    )


def register_exception_handlers(app: FastAPI):
    """Register all exception handlers with the app"""
    app.add_exception_handler(RegflowError, regflow_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
