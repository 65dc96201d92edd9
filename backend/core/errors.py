"""
Error taxonomy
==============
Client errors (not-found, conflict) are never retried. Integration errors
(dispatch, on-chain reads) are recovered where they happen: a failed dispatch
becomes a ledger row, a failed balance read is a transient 503 for the caller.
LedgerStateError is a programming-contract violation and is never swallowed.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(message)


class ConflictError(ServiceError):
    status_code = 409


class DispatchError(ServiceError):
    """Remote agent trigger was unreachable, timed out, or did not answer 202."""
    status_code = 502


class OnChainReadError(ServiceError):
    status_code = 503


class LedgerStateError(ServiceError):
    status_code = 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
