from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from tenant_lifecycle.db import SessionLocal
from tenant_lifecycle.logging_config import configure_logging
from tenant_lifecycle.routes import admin, provisioning, tenant
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.cipher import DecryptionError, SecretCipher
from tenant_lifecycle.services.confirm_tokens import ConfirmationTokenIssuer
from tenant_lifecycle.services.orchestrator import ProvisioningOrchestrator
from tenant_lifecycle.services.provisioner import DatabaseProvisioner
from tenant_lifecycle.services.resolver import TenantResolver
from tenant_lifecycle.services.tenant_cache import TenantContextCache
from tenant_lifecycle.settings import Settings, settings as default_settings

logger = structlog.get_logger(__name__)


def create_app(
    *,
    app_settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    provisioner: DatabaseProvisioner | None = None,
    cipher: SecretCipher | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    config = app_settings or default_settings
    sessions = session_factory or SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if configure_logs:
            configure_logging(config.LOG_LEVEL, config.LOG_JSON)

        app_cipher = cipher or SecretCipher(config.CONNECTION_ENCRYPTION_KEY)
        app_provisioner = provisioner or DatabaseProvisioner(
            config.TENANT_DB_SERVER_URL,
            config.TENANT_DB_URL_TEMPLATE,
            db_prefix=config.TENANT_DB_PREFIX,
            admin_email_template=config.TENANT_ADMIN_EMAIL_TEMPLATE,
            admin_initial_password=config.TENANT_ADMIN_INITIAL_PASSWORD or None,
        )
        cache = TenantContextCache(config.TENANT_CACHE_TTL_SECONDS, config.TENANT_CACHE_MAX_ENTRIES)
        orchestrator = ProvisioningOrchestrator(
            sessions,
            app_provisioner,
            app_cipher,
            cache=cache,
            workers=config.PROVISIONING_WORKERS,
            queue_size=config.PROVISIONING_QUEUE_SIZE,
            step_timeout_seconds=config.PROVISIONING_STEP_TIMEOUT_SECONDS,
            lease_seconds=config.PROVISIONING_LEASE_SECONDS,
        )

        app.state.session_factory = sessions
        app.state.cipher = app_cipher
        app.state.provisioner = app_provisioner
        app.state.tenant_cache = cache
        app.state.orchestrator = orchestrator
        app.state.resolver = TenantResolver(sessions, app_cipher, cache, secret_key=config.SECRET_KEY)
        app.state.token_issuer = ConfirmationTokenIssuer(
            config.SECRET_KEY,
            issuer=config.CONFIRM_TOKEN_ISSUER,
            audience=config.CONFIRM_TOKEN_AUDIENCE,
            ttl_seconds=config.CONFIRM_TOKEN_TTL_SECONDS,
        )

        with sessions() as db:
            registry.ensure_default_plans(db)
        await orchestrator.start()
        logger.info("tenant_lifecycle_started")

        yield

        logger.info("tenant_lifecycle_stopping")
        await orchestrator.stop(config.PROVISIONING_SHUTDOWN_GRACE_SECONDS)
        cache.clear()

    app = FastAPI(title="Tenant Lifecycle API", version="0.1.0", lifespan=lifespan)
    app.state.session_factory = sessions

    # Error envelope
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            if exc.detail.get("ok") is False:
                return JSONResponse(status_code=exc.status_code, content=exc.detail)
            if "code" in exc.detail and "message" in exc.detail:
                return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.detail})
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": {"code": "HTTP_ERROR", "message": str(exc.detail)}},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "ok": False,
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Validation failed.",
                    "details": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
                },
            },
        )

    @app.exception_handler(DecryptionError)
    async def decryption_exception_handler(request: Request, exc: DecryptionError) -> JSONResponse:
        logger.critical("tenant_secret_unreadable", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": {"code": "TENANT_SECRET_INVALID", "message": "Tenant connection could not be read."},
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(provisioning.router, prefix="/provision", tags=["provisioning"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])
    app.include_router(tenant.router, prefix="/api/tenant", tags=["tenant"])

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    @app.get("/readyz")
    def readyz(request: Request) -> JSONResponse:
        orchestrator = getattr(request.app.state, "orchestrator", None)
        ready = bool(orchestrator and orchestrator.running)
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ok": ready, "data": {"ready": ready, "provisioning": ready}},
        )

    return app


app = create_app()
