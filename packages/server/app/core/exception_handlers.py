"""
FastAPI exception handlers.

Membership errors become ``{"error": {"code", "message", "status"}}`` with
their mapped status code. Internal context is logged, never returned.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from app.core.exceptions import MembershipError
from foundly_shared.schemas.common import ErrorDetail, ErrorResponse

log = structlog.get_logger()


async def membership_error_handler(request: Request, exc: MembershipError) -> JSONResponse:
    log_method = log.error if exc.status_code >= 500 else log.info
    log_method(
        "api.membership_error",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        **{k: str(v) for k, v in exc.context.items()},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
    message = f"{field}: {first.get('msg')}" if field else "Request validation failed"
    body = ErrorResponse(error=ErrorDetail(code="VALIDATION_FAILED", message=message, status=400))
    return JSONResponse(status_code=400, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MembershipError, membership_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
