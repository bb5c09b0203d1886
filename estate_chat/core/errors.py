from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from estate_chat.sync.state import MessageEntry


class APIError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: object | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class RemoteStoreError(Exception):
    """Raised by remote store clients for error envelopes and transport failures."""

    def __init__(self, *, code: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


class SyncError(Exception):
    def __init__(self, *, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class FetchError(SyncError):
    pass


class SubscriptionError(SyncError):
    pass


class SendError(SyncError):
    """A single send failed; ``text`` is kept so the caller can offer a retry.

    Retrying with ``pending.client_message_id`` lets the store recognise a send that
    was committed before the failure.
    """

    def __init__(self, *, code: str, message: str, text: str, pending: MessageEntry | None = None) -> None:
        super().__init__(code=code, message=message)
        self.text = text
        self.pending = pending


def success_response(data: object, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"data": data})


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: object | None = None,
) -> JSONResponse:
    error_payload: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error_payload["details"] = details
    payload: dict[str, object] = {"error": error_payload}
    return JSONResponse(status_code=status_code, content=payload)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(_: Request, exc: APIError) -> JSONResponse:
        return error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Request validation failed",
            details=_json_safe_errors(exc.errors()),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_error(_: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(
            status_code=exc.status_code,
            code="http_error",
            message=message,
            details=None if isinstance(exc.detail, str) else exc.detail,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_: Request, __: Exception) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="internal_error",
            message="Internal server error",
        )


def _json_safe_errors(errors: object) -> object:
    # Validator errors may carry the raised exception in ``ctx``.
    if not isinstance(errors, (list, tuple)):
        return errors
    cleaned: list[object] = []
    for item in errors:
        if isinstance(item, dict) and isinstance(item.get("ctx"), dict):
            item = {**item, "ctx": {key: str(value) for key, value in item["ctx"].items()}}
        cleaned.append(item)
    return cleaned
