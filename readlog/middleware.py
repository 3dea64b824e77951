import os
import time
import traceback
import uuid

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from readlog.errors import ReadlogError
from readlog.logging_config import get_logger

logger = get_logger("readlog.http")

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
}

class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

class TimingAccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            logger.info(
                f"{request.method} {request.url.path} {status}",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "method": request.method,
                    "status": status,
                    "latency_ms": int((time.time() - start) * 1000),
                }
            )

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if os.getenv("ENABLE_HSTS", "true").lower() == "true":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Content-Security-Policy"] = os.getenv("CSP", "default-src 'none'; frame-ancestors 'none'")
        return response

class ErrorEnvelopeMiddleware(BaseHTTPMiddleware):
    """Last line of defence: anything unhandled becomes a 500 envelope."""
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            logger.error(f"Unhandled error: {exc} {traceback.format_exc()}", extra={"request_id": request_id})
            return JSONResponse(
                status_code=500,
                content={"error": {"message": "Internal server error", "code": "INTERNAL_SERVER_ERROR", "request_id": request_id}}
            )

async def readlog_error_handler(request: Request, exc: ReadlogError):
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.detail}", extra={"request_id": request_id})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {**exc.to_dict(), "request_id": request_id}},
    )

async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {
            "message": exc.detail,
            "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            "request_id": getattr(request.state, "request_id", None),
        }},
        headers=getattr(exc, "headers", None),
    )
