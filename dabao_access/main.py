"""Dabao access FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dabao_access.api.domains import router as domains_router
from dabao_access.api.health import router as health_router
from dabao_access.api.invites import router as invites_router
from dabao_access.api.members import router as members_router
from dabao_access.api.organizations import router as organizations_router
from dabao_access.api.projects import router as projects_router
from dabao_access.api.tenants import router as tenants_router
from dabao_access.api.tokens import router as tokens_router
from dabao_access.auth.gate import install_error_handlers
from dabao_access.config import Settings, settings as default_settings
from dabao_access.database import build_engine, build_session_factory
from dabao_access.services import Services, build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _attach(app: FastAPI, services: Services) -> None:
    app.state.services = services
    app.state.session_factory = services.session_factory
    app.state.resolver = services.resolver
    app.state.gate = services.gate


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the application. Pass ``services`` to run against injected
    collaborators (tests); otherwise they are created in the lifespan.
    """
    settings = settings or default_settings
    logging.getLogger().setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        engine = build_engine(settings)
        built = build_services(settings, build_session_factory(engine))
        _attach(app, built)
        logger.info("Access services ready (identity provider: %s)", settings.identity_provider)
        try:
            yield
        finally:
            for client in (built.identity, built.verifier):
                aclose = getattr(client, "aclose", None)
                if aclose is not None:
                    await aclose()
            await engine.dispose()

    app = FastAPI(
        title="Dabao Access",
        description="Tenant resolution and access control for the Dabao loyalty platform",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        _attach(app, services)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(tenants_router, prefix="/v1", tags=["Tenants"])
    app.include_router(organizations_router, prefix="/v1", tags=["Organizations"])
    app.include_router(projects_router, prefix="/v1", tags=["Projects"])
    app.include_router(members_router, prefix="/v1", tags=["Members"])
    app.include_router(invites_router, prefix="/v1", tags=["Invites"])
    app.include_router(domains_router, prefix="/v1", tags=["Domains"])
    app.include_router(tokens_router, prefix="/v1", tags=["Auth tokens"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"service": "dabao-access", "version": "0.1.0", "docs": "/docs"}

    return app


app = create_app()
