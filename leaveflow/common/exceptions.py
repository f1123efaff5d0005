"""Custom exceptions and RFC 7807 Problem Detail error handlers."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

BASE_ERROR_URI = "https://leaveflow.dev/errors"


# ── Exception hierarchy ─────────────────────────────────────────────

class AppException(Exception):
    """Base for all application exceptions → RFC 7807 JSON."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        title: str,
        detail: str,
        errors: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.title = title
        self.detail = detail
        self.errors = errors
        super().__init__(detail)


class NotFoundException(AppException):
    """404 — entity not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=404,
            error_type="not-found",
            title=f"{entity_type} Not Found",
            detail=f"{entity_type} with id '{entity_id}' does not exist.",
        )


class ForbiddenException(AppException):
    """403 — insufficient permissions."""

    def __init__(
        self,
        detail: str = "You do not have permission to perform this action.",
    ) -> None:
        super().__init__(
            status_code=403,
            error_type="forbidden",
            title="Forbidden",
            detail=detail,
        )


AuthorizationError = ForbiddenException


class ValidationException(AppException):
    """400 — business-logic validation failures."""

    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__(
            status_code=400,
            error_type="validation-error",
            title="Validation Error",
            detail="One or more fields failed validation.",
            errors=errors,
        )


class InvalidRangeError(ValidationException):
    """400 — end date before start date."""

    def __init__(self, start: Any, end: Any) -> None:
        super().__init__(
            {"end_date": [f"End date {end} is before start date {start}."]}
        )


class InsufficientBalanceError(AppException):
    """400 — reservation exceeds the remaining balance."""

    def __init__(self, balance_type: str, remaining: Decimal, requested: Decimal) -> None:
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            status_code=400,
            error_type="insufficient-balance",
            title="Insufficient Balance",
            detail=(
                f"Insufficient {balance_type} balance. "
                f"Remaining: {remaining}, requested: {requested}."
            ),
            errors={"remaining": str(remaining), "requested": str(requested)},
        )


class OverlapConflictError(AppException):
    """409 — date range overlaps an existing request of the same employee."""

    def __init__(self, existing_id: Any) -> None:
        super().__init__(
            status_code=409,
            error_type="overlap-conflict",
            title="Conflict",
            detail="This period overlaps an existing leave request.",
            errors={"overlapping_request_id": str(existing_id)},
        )


class LedgerInconsistencyError(AppException):
    """409 — a commit/release does not match the reserved pending days."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            status_code=409,
            error_type="ledger-inconsistency",
            title="Ledger Inconsistency",
            detail=detail,
        )


class ConcurrencyConflictError(AppException):
    """409 — optimistic-lock failure; retried internally before surfacing."""

    def __init__(self, detail: str = "The record was modified concurrently.") -> None:
        super().__init__(
            status_code=409,
            error_type="concurrency-conflict",
            title="Concurrent Modification",
            detail=detail,
        )


class TransientFailureError(AppException):
    """503 — retries exhausted on a concurrency conflict."""

    def __init__(self, detail: str = "The operation could not be completed, please retry.") -> None:
        super().__init__(
            status_code=503,
            error_type="transient-failure",
            title="Service Temporarily Unavailable",
            detail=detail,
        )


# ── RFC 7807 builder ────────────────────────────────────────────────

def _build_problem_detail(exc: AppException, request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": f"{BASE_ERROR_URI}/{exc.error_type}",
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
    }
    if exc.errors:
        body["errors"] = exc.errors
    return body


# ── FastAPI handlers ────────────────────────────────────────────────

async def _handle_app_exception(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_problem_detail(exc, request),
        media_type="application/problem+json",
    )


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = err.get("loc", ())
        name = (
            ".".join(str(p) for p in loc[1:])
            if len(loc) > 1
            else str(loc[0]) if loc else "unknown"
        )
        field_errors.setdefault(name, []).append(err.get("msg", "Invalid value"))

    return JSONResponse(
        status_code=400,
        content={
            "type": f"{BASE_ERROR_URI}/validation-error",
            "title": "Validation Error",
            "status": 400,
            "detail": "Request validation failed.",
            "instance": str(request.url.path),
            "errors": field_errors,
        },
        media_type="application/problem+json",
    )


# ── Registration helper (called from main.py) ──────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""
    app.add_exception_handler(AppException, _handle_app_exception)          # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
