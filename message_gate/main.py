"""
message_gate/main.py — FastAPI application entry point
Startup builds the per-client form registry; each client's form is mounted
(CSRF token fetched) on its first request. Shutdown unmounts every form.
Includes: lifespan management, CORS, security headers, ping endpoint.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from message_gate.clients.backend_client import BackendClient
from message_gate.clients.ip_client import IPLookupClient
from message_gate.config import Settings, get_settings
from message_gate.core.logging import setup_logging
from message_gate.core.rate_limiter import RateLimitStore
from message_gate.routers import form
from message_gate.services.submission import FormRegistry

VERSION = "1.0.0"


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the form service. `transport` replaces the network for every
    outbound call (backend and IP lookup); tests pass an httpx.MockTransport.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.log_level)
        config = settings.form_config()
        logger.info(
            f"Message form starting (profile={settings.profile}, "
            f"cooldown={config.cooldown_duration_ms}ms, csrf={config.csrf.value})."
        )

        http = httpx.AsyncClient(timeout=settings.request_timeout_seconds, transport=transport)
        backend = BackendClient(settings.backend_base_url, http=http)
        ip_lookup = IPLookupClient(http=http, url=settings.ip_lookup_url)

        forms = FormRegistry(
            config=config,
            backend=backend,
            store=RateLimitStore(),
            resolve_identifier=ip_lookup.resolve_identifier,
            max_forms=settings.max_forms,
        )
        app.state.forms = forms
        app.state.settings = settings

        logger.info("Startup complete.")
        try:
            yield
        finally:
            await forms.close()
            await http.aclose()
            logger.info("Message form shut down.")

    app = FastAPI(
        title="Message Gate",
        description="Validates, sanitizes and throttles messages before forwarding them for moderation.",
        version=VERSION,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # ── CORS ──────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.environment == "development" else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ── Security headers ──────────────────────────────────────────────────────
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(form.router, prefix="/api", tags=["form"])

    @app.get("/api/ping", tags=["health"])
    async def ping():
        return {"status": "ok", "version": VERSION}

    return app


app = create_app()
