"""
Request context middleware.

The upstream identity layer authenticates the caller and forwards the
principal as headers; this module only reads them.

  X-Tenant-Id  → g.tenant_id  (opaque string)
  X-User-Id    → g.user_id    (int, None when absent or malformed)

It also records request duration, adds X-Request-Duration-Ms to every
response and logs API requests with structured ``extra=`` fields.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Slow request threshold (ms)
SLOW_THRESHOLD_MS = 1000


def _parse_user_id(raw: str | None) -> int | None:
    try:
        return int(raw) if raw not in (None, "") else None
    except ValueError:
        logger.warning("Ignoring malformed X-User-Id header %r", raw)
        return None


def init_request_context(app: Flask) -> None:
    """Register before/after hooks for principal extraction and timing."""

    @app.before_request
    def _load_principal():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])
        g.tenant_id = (request.headers.get("X-Tenant-Id") or "").strip() or None
        g.user_id = _parse_user_id(request.headers.get("X-User-Id"))

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        if request.path.startswith("/api/"):
            extra = {
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "tenant_id": getattr(g, "tenant_id", None),
            }
            if duration_ms > SLOW_THRESHOLD_MS:
                logger.warning("Slow request %s %s", request.method, request.path, extra=extra)
            else:
                logger.debug("%s %s → %s", request.method, request.path, response.status_code, extra=extra)
        return response
