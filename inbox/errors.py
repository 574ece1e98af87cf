"""Error taxonomy shared by the registry, the adapters and the HTTP boundary.

Every error renders as the result envelope ``{"ok": False, "error": <message>}``.
Outside production a ``detail`` object carries the error code and type.
"""
from __future__ import annotations

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config

log = logging.getLogger(__name__)


class InboxError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, data: Any = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(InboxError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(InboxError):
    status_code = 401
    code = "unauthorized"


class AuthorizationError(InboxError):
    status_code = 403
    code = "forbidden"


class NotFoundError(InboxError):
    status_code = 404
    code = "not_found"


class ConflictError(InboxError):
    status_code = 409
    code = "conflict"


class UpstreamError(InboxError):
    status_code = 502
    code = "upstream_error"


class SendFailedError(UpstreamError):
    """The adapter could not deliver an outbound message.

    The message row has already been persisted with status ``failed``; it is
    carried in ``data`` so callers can render it.
    """

    code = "send_failed"


def envelope(data: Any = None) -> dict:
    if data is None:
        return {"ok": True}
    return {"ok": True, "data": data}


def error_body(
    message: str,
    *,
    code: str,
    exc: Optional[BaseException] = None,
    data: Any = None,
    include_trace: bool = False,
) -> dict:
    body: dict = {"ok": False, "error": message}
    if data is not None:
        body["data"] = data
    if not config.IS_PRODUCTION:
        detail: dict = {"code": code}
        if exc is not None:
            detail["type"] = type(exc).__name__
        if include_trace and exc is not None:
            detail["trace"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        body["detail"] = detail
    return body


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InboxError)
    async def _inbox_error(request: Request, exc: InboxError):
        if exc.status_code >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, code=exc.code, exc=exc, data=exc.data),
        )

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), code=f"http_{exc.status_code}"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        first = (exc.errors() or [{}])[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg") or "Invalid request"
        return JSONResponse(
            status_code=400,
            content=error_body(f"{loc}: {msg}" if loc else msg, code=ValidationError.code, exc=exc),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", code=InboxError.code, exc=exc, include_trace=True),
        )
