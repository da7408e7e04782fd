"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import IdentityService
from .notifications import build_dispatcher
from .repository import AccountRepository
from .security.passwords import PasswordHasher
from .security.tokens import TokenSigner

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the connection pool and every identity collaborator once per process."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    signer = TokenSigner(settings)
    dispatcher = build_dispatcher(settings)
    app.state.pool = pool
    app.state.token_signer = signer
    app.state.identity_service = IdentityService(
        repository=AccountRepository(pool),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        signer=signer,
        dispatcher=dispatcher,
        settings=settings,
    )
    logger.info("%s %s ready", settings.app_name, settings.version)
    try:
        yield
    finally:
        close = getattr(dispatcher, "close", None)
        if close is not None:
            close()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    """Expose Prometheus counters for scraping."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)


def run() -> None:
    """Console entry point: serve the app with uvicorn on the configured host/port."""
    import uvicorn

    uvicorn.run("tenant_identity.main:app", host=settings.http_host, port=settings.http_port)
