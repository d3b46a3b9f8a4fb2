from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from warden.api.error_handling import register_exception_handlers
from warden.logging import get_logger, set_correlation_id
from warden.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application that hosts the auth dependencies.

    Routes are mounted by the embedding application; this factory installs the
    runtime, request correlation ids and the error envelope.
    """
    app = FastAPI(title="Warden", version=__version__)
    app.state.runtime = runtime or get_runtime()

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)

    @app.get("/healthz")
    def health() -> Dict[str, Any]:
        checks: Dict[str, str] = {}
        ledger = app.state.runtime.ledger
        verify = getattr(ledger, "verify_connection", None)
        if verify is not None:
            try:
                verify()
                checks["redis"] = "ok"
            except Exception as exc:
                logger.warning("health_check_redis_failed", error=str(exc))
                checks["redis"] = "error"
        status = "ok" if all(value == "ok" for value in checks.values()) else "degraded"
        return {"status": status, "version": __version__, "checks": checks}

    logger.info("app_created", version=__version__)
    return app


__all__ = ["create_app"]
