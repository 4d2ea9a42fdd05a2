from __future__ import annotations

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.status import HTTP_500_INTERNAL_SERVER_ERROR

from attachsync.common.responses import ApiResponse, ErrorCode
from attachsync.upload.errors import InvalidInputError, RemoteApiError, SessionRefusedError, UploadError


class ApiException(StarletteHTTPException):
    def __init__(
        self,
        status_code: int = 400,
        code: int = ErrorCode.BAD_REQUEST,
        message: str = "Bad Request",
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message)
        self.code = int(code)
        self.message = message
        self.details = details


def upload_error_to_api_exception(exc: UploadError) -> ApiException:
    if isinstance(exc, InvalidInputError):
        return ApiException(status_code=400, code=ErrorCode.INVALID_INPUT, message=str(exc))
    if isinstance(exc, SessionRefusedError):
        return ApiException(status_code=403, code=ErrorCode.SESSION_REFUSED, message=str(exc))
    if isinstance(exc, RemoteApiError):
        return ApiException(
            status_code=502,
            code=ErrorCode.REMOTE_UNAVAILABLE,
            message="Upload service unavailable",
            details={"status": exc.status_code, "retryable": exc.retryable},
        )
    return ApiException(status_code=500, code=ErrorCode.INTERNAL, message=str(exc))


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:
    logger = logging.getLogger(__name__)

    def _fail(exc: ApiException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ApiResponse.fail(code=exc.code, message=exc.message, data=exc.details).model_dump(),
        )

    @app.exception_handler(ApiException)
    async def api_exception_handler(request: Request, exc: ApiException) -> JSONResponse:
        logger.warning(
            "api_exception method=%s path=%s status=%s code=%s message=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.code,
            exc.message,
        )
        return _fail(exc)

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
        api_exc = upload_error_to_api_exception(exc)
        logger.warning(
            "upload_error method=%s path=%s type=%s message=%s",
            request.method,
            request.url.path,
            exc.__class__.__name__,
            exc,
        )
        return _fail(api_exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning(
            "validation_error method=%s path=%s errors=%s",
            request.method,
            request.url.path,
            exc.errors(),
        )
        return JSONResponse(
            status_code=422,
            content=ApiResponse.fail(
                code=ErrorCode.VALIDATION,
                message="Validation Error",
                data=jsonable_errors(exc),
            ).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = str(exc.detail) if exc.detail is not None else "HTTP Error"
        logger.warning(
            "http_exception method=%s path=%s status=%s message=%s",
            request.method,
            request.url.path,
            exc.status_code,
            message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=ApiResponse.fail(code=exc.status_code, message=message).model_dump(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception method=%s path=%s",
            request.method,
            request.url.path,
        )
        details: Any | None = None
        if debug:
            details = {
                "type": exc.__class__.__name__,
                "message": str(exc),
                "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            }
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiResponse.fail(code=ErrorCode.INTERNAL, message="Internal Server Error", data=details).model_dump(),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # ctx may carry exception instances that JSONResponse cannot serialize.
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]
