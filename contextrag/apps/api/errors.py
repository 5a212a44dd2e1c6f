from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contextrag.apps.api.response import error_response, is_versioned_request
from contextrag.core.errors import (
    BatchConsistencyError,
    ContextRagError,
    DocumentNotFoundError,
    IngestionJobNotFoundError,
    PayloadValidationError,
    ProviderConfigError,
    ProviderError,
    SearchIndexError,
    StorageError,
    UnsupportedContentError,
    WorkflowError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[ContextRagError], int, str], ...] = (
    (PayloadValidationError, 400, "PAYLOAD_INVALID"),
    (BatchConsistencyError, 400, "BATCH_INCONSISTENT"),
    (DocumentNotFoundError, 404, "DOCUMENT_NOT_FOUND"),
    (IngestionJobNotFoundError, 404, "BATCH_NOT_FOUND"),
    (UnsupportedContentError, 415, "UNSUPPORTED_CONTENT"),
    (WorkflowError, 409, "WORKFLOW_ERROR"),
    (ProviderConfigError, 503, "PROVIDER_MISCONFIGURED"),
    (ProviderError, 502, "PROVIDER_ERROR"),
    (StorageError, 503, "STORAGE_UNAVAILABLE"),
    (SearchIndexError, 503, "SEARCH_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a plain string or a {code, message, ...} dict.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: ContextRagError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: ContextRagError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, code, exc_info=exc)
    else:
        logger.warning("request_rejected path=%s code=%s message=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces on the wire; the log keeps them.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
