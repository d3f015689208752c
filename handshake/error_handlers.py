"""Global exception handlers enforcing API error response contracts."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from handshake.errors import ERROR_CODES, HandshakeError
from handshake.services.audit_service import AuditService, ProxyNetwork, extract_client_ip

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_request",
    404: "not_found",
    405: "method_not_allowed",
    413: "upload_too_large",
    422: "invalid_request",
    503: "service_unavailable",
}

logger = structlog.get_logger(__name__)


def _error_response(
    status_code: int,
    detail: str,
    code: str,
    extra: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build standardized JSON error payload."""
    content: dict[str, Any] = {"detail": detail, "code": code}
    if extra:
        content.update({key: value for key, value in extra.items() if key not in content})
    return JSONResponse(status_code=status_code, content=content, headers=headers or None)


def _resolve_error_code(status_code: int, raw_code: str | None) -> str:
    """Resolve a machine-readable error code for framework exceptions."""
    if raw_code is not None and (raw_code in ERROR_CODES or raw_code == "service_unavailable"):
        return raw_code
    return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "http_error")


def _extract_detail_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_detail = detail.get("detail", "Request failed.")
        raw_code = detail.get("code")
        return str(raw_detail), str(raw_code) if raw_code is not None else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_detail(detail: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error."
    return detail


def _correlation_id(request: Request) -> str:
    return str(
        getattr(
            request.state,
            "correlation_id",
            request.headers.get("x-correlation-id", "unknown"),
        )
    )


def _current_applicant_id() -> str | None:
    """Applicant bound to the logging context once its registration key resolved."""
    applicant_id = structlog.contextvars.get_contextvars().get("applicant_id")
    return str(applicant_id) if applicant_id else None


def _log_rejection(
    request: Request,
    exc: HandshakeError,
    applicant_id: str | None,
    trusted_proxies: Sequence[ProxyNetwork],
) -> None:
    """Emit the WARNING-level log every rejected handshake request produces."""
    logger.warning(
        "request_rejected",
        correlation_id=_correlation_id(request),
        applicant_id=applicant_id,
        ip_address=extract_client_ip(request, trusted_proxies),
        status_code=exc.status_code,
        code=exc.code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )


def register_exception_handlers(
    app: FastAPI,
    environment: str,
    audit_service: AuditService | None = None,
    trusted_proxies: Sequence[ProxyNetwork] = (),
) -> None:
    """Register global exception handlers enforcing error shape contract."""

    async def _audit_rejection(request: Request, code: str, applicant_id: str | None) -> None:
        if audit_service is None:
            return
        await audit_service.record(
            event_type="request_rejected",
            success=False,
            request=request,
            applicant_id=applicant_id,
            failure_reason=code,
            metadata={"path": request.url.path, "method": request.method},
        )

    @app.exception_handler(HandshakeError)
    async def handle_handshake_error(request: Request, exc: HandshakeError) -> JSONResponse:
        """Render a domain failure and leave an audit trail for known applicants."""
        applicant_id = _current_applicant_id()
        _log_rejection(request, exc, applicant_id, trusted_proxies)
        await _audit_rejection(request, exc.code, applicant_id)
        return _error_response(
            status_code=exc.status_code,
            detail=exc.detail,
            code=exc.code,
            extra=exc.extra,
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        raw_detail, raw_code = _extract_detail_and_code(exc.detail)
        code = _resolve_error_code(exc.status_code, raw_code)
        if exc.status_code < 500:
            await _audit_rejection(request, code, _current_applicant_id())
        return _error_response(
            status_code=exc.status_code,
            detail=raw_detail,
            code=code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        detail = "Invalid request payload."
        errors = exc.errors()
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()))
            detail = f"Invalid request payload: {location}: {errors[0].get('msg', 'invalid')}."
        logger.info(
            "request_validation_failed",
            correlation_id=_correlation_id(request),
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        await _audit_rejection(request, "invalid_request", _current_applicant_id())
        return _error_response(status_code=422, detail=detail, code="invalid_request")

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.error(
            "unhandled_exception",
            correlation_id=_correlation_id(request),
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        detail = _sanitize_detail(str(exc), 500, environment)
        return _error_response(status_code=500, detail=detail, code="internal_error")
