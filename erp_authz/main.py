from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from erp_authz.db import filters as _filters  # noqa: F401  (register SQLAlchemy filters)
from erp_authz.db.init_db import init_db
from erp_authz.errors import VALIDATION_ERROR, AppError
from erp_authz.logging_config import configure_app_logging
from erp_authz.permissions import load_permission_registry
from erp_authz.routers import audit, health, roles, users
from erp_authz.security.config import load_security_config
from erp_authz.security.dependencies import enforce_security
from erp_authz.settings import get_settings

logger = logging.getLogger(__name__)

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error(_request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=_error_body(VALIDATION_ERROR, "Request validation failed", {"errors": errors}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        settings = get_settings()
        configure_app_logging(settings.log_level)
        logger.info("App startup beginning")

        app.state.security_config = load_security_config(settings.resolved_security_config_path())
        logger.info("Loaded security config: %s", settings.resolved_security_config_path())
        app.state.permission_registry = load_permission_registry(settings.resolved_permissions_config_path())
        logger.info(
            "Loaded permission registry: %s (%d permissions)",
            settings.resolved_permissions_config_path(),
            len(app.state.permission_registry),
        )
        init_db(app.state.permission_registry)
        logger.info("Database initialized (tables ensured + seed if needed)")

        yield
        # Shutdown (nothing to clean up)

    # Global dependency: applies security with zero changes to route handlers.
    app = FastAPI(title="erp-authz", dependencies=[Depends(enforce_security)], lifespan=lifespan)
    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(users.router)
    app.include_router(audit.router)
    app.include_router(roles.router)

    return app


app = create_app()
