import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import is_lock_conflict
from .errors import ConcurrencyConflict, LedgerError, StorageError

logger = logging.getLogger(__name__)


def error_response(message: str, status_code: int, field: str = None, retryable: bool = False) -> JSONResponse:
    body = {"success": False, "error": message}
    if field:
        body["field"] = field
    if retryable:
        body["retryable"] = True
    return JSONResponse(status_code=status_code, content=body)


def _field_from_loc(loc) -> str:
    # ("body", "items", 0, "quantity") -> "items[0].quantity"
    parts = [p for p in loc if p not in ("body", "query", "path")]
    field = ""
    for part in parts:
        if isinstance(part, int):
            field += f"[{part}]"
        else:
            field += f".{part}" if field else str(part)
    return field


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.message, exc.status_code, exc.field, exc.retryable)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        # Reads run outside transaction(); map their failures the same way
        if isinstance(exc, OperationalError) and is_lock_conflict(exc):
            conflict = ConcurrencyConflict("Another operation is modifying the same records; retry the request.")
            return error_response(conflict.message, conflict.status_code, retryable=True)
        logger.exception("%s %s failed", request.method, request.url.path)
        return error_response("Database unavailable", StorageError.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(msg, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if not errors:
            return error_response("Validation error", 400)
        first = errors[0]
        field = _field_from_loc(first.get("loc", ()))
        message = first.get("msg", "Invalid value")
        if field:
            message = f"{field}: {message}"
        return error_response(message, 400, field or None)
