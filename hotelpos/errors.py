# hotelpos/errors.py
"""
Tassonomia errori e handler FastAPI.

Ogni errore di dominio porta un `code` stabile su cui il frontend può fare
branching; la risposta è sempre l'envelope {success, data?, error?}.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(ServiceError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    # ORDER_NOT_FOUND, TABLE_NOT_FOUND, KITCHEN_NOT_FOUND, CATEGORY_NOT_FOUND, ...
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ServiceError):
    # DUPLICATE_TABLE, TABLE_UNAVAILABLE, INVALID_TRANSITION, ...
    status_code = 409
    default_code = "CONFLICT"


class UnauthorizedError(ServiceError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(ServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def ok(data=None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def fail(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        log.info("%s %s -> %s %s", request.method, request.url.path, exc.code, exc.message)
        return fail(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg", "Invalid request")
        return fail(400, "VALIDATION_ERROR", f"{where}: {msg}" if where else msg)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "ERROR")
        return fail(exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        # dettaglio completo solo nei log, mai al client
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return fail(500, "INTERNAL_ERROR", "An unexpected error occurred")
