"""
Error mapping for XRPC endpoints.

XRPC errors become {"error", "message"} with their status. Anything
unclassified is logged with its traceback and surfaces as the generic
internal error payload.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import INTERNAL_ERROR_MESSAGE, INTERNAL_ERROR_NAME, InvalidRequest, XRPCError
from ..observability import get_logger

logger = get_logger(__name__)


async def xrpc_error_handler(request: Request, exc: XRPCError) -> JSONResponse:
    if exc.expose_message:
        logger.info(
            "XRPC error",
            path=request.url.path,
            error=exc.error,
            reason=exc.message,
        )
    else:
        logger.error(
            "XRPC internal failure",
            path=request.url.path,
            error=type(exc).__name__,
            reason=exc.message,
            exc_info=exc.__cause__ or exc,
        )
    return JSONResponse(status_code=exc.status, content=exc.payload)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    return await xrpc_error_handler(
        request, InvalidRequest(str(first.get("msg", "Invalid request")))
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        path=request.url.path,
        error=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={"error": INTERNAL_ERROR_NAME, "message": INTERNAL_ERROR_MESSAGE},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(XRPCError, xrpc_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
