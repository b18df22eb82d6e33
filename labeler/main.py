"""
Labeler - signed content labels over XRPC

Main application entry point.

Labels are append-only. A retraction is a new label, never an edit.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labeler.api import install_error_handlers, router as xrpc_router
from labeler.config import LabelerConfig
from labeler.core import (
    AuthGate,
    AuthVerifier,
    LabelerService,
    QueryEngine,
    ReplayCoordinator,
    SharedSecretVerifier,
    Signer,
    SubscriptionHub,
    allow_list,
    load_signer,
)
from labeler.core.auth import AuthorizePolicy
from labeler.db import LabelStore, open_label_store
from labeler.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(
    config: Optional[LabelerConfig] = None,
    store: Optional[LabelStore] = None,
    signer: Optional[Signer] = None,
    verifier: Optional[AuthVerifier] = None,
    authorize: Optional[AuthorizePolicy] = None,
) -> FastAPI:
    """
    Build the labeler application.

    Anything not passed in is built from the environment at startup.
    A store passed in is owned by the caller and is not closed on shutdown.
    """
    config = config or LabelerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        label_store = store if store is not None else await open_label_store()
        label_signer = signer or load_signer(config.signing_key, production=config.production)
        hub = SubscriptionHub()

        labeler = LabelerService(config.did, label_store, label_signer, hub)

        app.state.config = config
        app.state.store = label_store
        app.state.hub = hub
        app.state.labeler = labeler
        app.state.query_engine = QueryEngine(label_store, labeler.bridge)
        app.state.replay = ReplayCoordinator(
            label_store, labeler.bridge, hub, batch_size=config.replay_batch_size
        )
        app.state.auth_gate = AuthGate(
            verifier or SharedSecretVerifier(config.auth_secret, max_age=config.auth_max_age),
            audience=config.did,
            authorize=authorize or allow_list(config.writer_dids),
        )

        logger.info(
            "Application startup complete",
            did=config.did,
            head=await label_store.max_id(),
            store_type=type(label_store).__name__,
        )

        yield

        # Close database connections if we opened them
        if store is None:
            await label_store.close()
            logger.info("Label store closed")

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Labeler",
        description="""
## Content Labeler

Issues signed labels about accounts and records, and serves them to
anyone who asks.

### Endpoints

- **queryLabels**: filtered, paginated snapshot of the label log
- **subscribeLabels**: WebSocket stream; replays from a cursor, then live
- **emitEvent**: authenticated write; creates and negates label values

### Guarantees

- Label ids are strictly increasing and never reused
- Every label that leaves the server is signed
- A subscriber resuming from a cursor sees every later label exactly once
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    install_error_handlers(app)
    app.include_router(xrpc_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "labeler"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Label store reachability and head id
        - Live subscriber count

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = await check_health(
            store=request.app.state.store,
            hub=request.app.state.hub,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters, gauges, and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()
