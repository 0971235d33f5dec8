"""Render every failure as ``{"ok": false, "error": {...}}``."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import EscrowSyncError, TransactionReverted, ValidationError
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


def error_response(exc: EscrowSyncError) -> JSONResponse:
    payload = exc.to_dict()
    if isinstance(exc, TransactionReverted):
        payload["hint"] = exc.hint
        payload["tx"] = exc.tx_id
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": payload})


def _describe_request_errors(exc: RequestValidationError) -> ValidationError:
    errors = exc.errors()
    if not errors:
        return ValidationError("invalid request")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "header"))
    message = f"invalid {field or 'request'}: {first.get('msg', 'invalid value')}"
    return ValidationError(message, cause=first.get("type"))


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(EscrowSyncError)
    async def _escrow_sync_error(request: Request, exc: EscrowSyncError):
        level = logger.error if exc.status_code >= 500 else logger.warning
        level(
            "Request failed",
            path=request.url.path,
            method=request.method,
            error=exc.message,
            kind=type(exc).__name__,
            status=exc.status_code,
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _request_shape_error(request: Request, exc: RequestValidationError):
        error = _describe_request_errors(exc)
        logger.warning("Malformed request", path=request.url.path, method=request.method, error=error.message)
        return error_response(error)

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            kind=type(exc).__name__,
        )
        body = {"message": str(exc) or "internal error", "cause": type(exc).__name__, "name": "InternalError"}
        return JSONResponse(status_code=500, content={"ok": False, "error": body})
