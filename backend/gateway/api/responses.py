import logging
from collections.abc import Mapping
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway.core.errors import ObjectNotFound, RequestInvalid, StorageError
from gateway.schemas import ApiResponse

logger = logging.getLogger(__name__)


def send_response(
    success: bool,
    message: str,
    data: Any = None,
    status_code: int = status.HTTP_200_OK,
    headers: Mapping[str, str] | None = None,
) -> Response:
    """Render the ``{success, message, data}`` envelope used by every route."""
    envelope = ApiResponse(success=success, message=message, data=data)
    try:
        content = jsonable_encoder(envelope, by_alias=True, exclude_none=True)
        return JSONResponse(content=content, status_code=status_code, headers=headers)
    except (TypeError, ValueError) as exc:
        logger.error("Error encoding response: %s", exc)
        return PlainTextResponse(
            "Error encoding response",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    return send_response(False, str(exc.detail), status_code=exc.status_code, headers=exc.headers)


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    errors = exc.errors()
    detail = errors[0].get("msg", "invalid request") if errors else "invalid request"
    return send_response(
        False, f"Invalid request: {detail}", status_code=status.HTTP_400_BAD_REQUEST
    )


async def _request_invalid_handler(request: Request, exc: RequestInvalid) -> Response:
    return send_response(False, str(exc), status_code=exc.status_code)


async def _storage_error_handler(request: Request, exc: StorageError) -> Response:
    if isinstance(exc, ObjectNotFound):
        return send_response(False, "File not found", status_code=status.HTTP_404_NOT_FOUND)
    logger.error("Unhandled storage error on %s: %s", request.url.path, exc)
    return send_response(
        False, f"Storage error: {exc}", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(RequestInvalid, _request_invalid_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)
