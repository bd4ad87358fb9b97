"""
Domain exceptions raised by the service layer.

Routers may still raise HTTPException for request-level problems; these
exceptions carry the business-rule failures and map onto HTTP status codes
through register_exception_handlers().
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class DomainError(Exception):
    """Base class for business-rule failures."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class NotFoundError(DomainError):
    status_code = 404


class ValidationFailed(DomainError):
    status_code = 400


class ConflictError(DomainError):
    status_code = 409


class InsufficientStockError(ConflictError):
    """Raised when a reservation or deduction would exceed available stock."""

    def __init__(self, message: str, requested: Optional[float] = None, available: Optional[float] = None) -> None:
        details: Dict[str, Any] = {}
        if requested is not None:
            details["requested"] = requested
        if available is not None:
            details["available"] = available
        super().__init__(message, details)


class TransitionNotAllowed(ConflictError):
    def __init__(self, current: str, target: str, reason: Optional[str] = None) -> None:
        message = reason or f"Cannot move from {current} to {target}"
        super().__init__(message, {"from": current, "to": target})


class ConfigurationError(DomainError):
    status_code = 503


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    structlog.get_logger("fieldops.errors").info(
        "domain_error",
        path=request.url.path,
        error=exc.message,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
    )
    body: Dict[str, Any] = {"detail": exc.message}
    if exc.details:
        body["errors"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
