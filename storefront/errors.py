import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Bad input, empty cart or insufficient stock. User-correctable."""
    status_code = 400


class AuthorizationError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class MismatchError(StorefrontError):
    """A confirmation references an intent that is not bound to the claimed order."""
    status_code = 409


class GatewayError(StorefrontError):
    """The payment processor is unreachable or refused the operation."""
    status_code = 502


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if isinstance(exc, MismatchError):
            logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
