"""
CaseTrail - Case Management with Ledger-Backed Audit

Main application entry point.

    uvicorn casetrail.main:app

Storage, ledger and content collaborators are chosen from the
environment (see casetrail.db.config and casetrail.core.ledger_client).
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from casetrail import __version__
from casetrail.api import (
    actors_router,
    admin_router,
    cases_router,
    register_exception_handlers,
)
from casetrail.core import (
    AggregateStats,
    LedgerClient,
    LedgerConfig,
    WorkflowEngine,
    create_ledger_client,
)
from casetrail.db import (
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
    StoreDriver,
    get_store_driver,
)
from casetrail.db.config import get_database_config
from casetrail.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


async def _create_store() -> DocumentStore:
    driver = get_store_driver()
    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory document store (no persistence)")
        return InMemoryDocumentStore()

    config = get_database_config()
    if config is None:
        raise RuntimeError(
            "CASETRAIL_STORE_DRIVER=asyncpg but no DATABASE_URL or DATABASE_HOST is set"
        )
    store = await PostgresDocumentStore.connect(config)
    logger.info(
        "PostgreSQL document store connected",
        url=config.redacted_url(),
    )
    return store


def create_app(
    store: Optional[DocumentStore] = None,
    ledger: Optional[LedgerClient] = None,
    ledger_config: Optional[LedgerConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass an InMemoryDocumentStore and a SimulatedLedgerClient;
    production wiring comes from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = ledger_config or LedgerConfig.from_env()
        app_store = store or await _create_store()
        app_ledger = ledger or create_ledger_client(config)

        engine = WorkflowEngine.build(
            app_store,
            app_ledger,
            ledger_timeout=config.timeout_seconds,
        )
        app.state.store = app_store
        app.state.ledger = app_ledger
        app.state.engine = engine
        app.state.stats = AggregateStats(app_store)

        admin_wallet = os.getenv("CASETRAIL_ADMIN_WALLET", "").strip()
        if admin_wallet:
            admin = await engine.identity.ensure_admin(admin_wallet)
            logger.info("Admin wallet bootstrapped", actor_id=str(admin.id))

        logger.info(
            "Application startup complete",
            store_type=type(app_store).__name__,
            ledger_type=type(app_ledger).__name__,
            ledger_timeout_seconds=config.timeout_seconds,
        )

        yield

        await app_ledger.aclose()
        await app_store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CaseTrail",
        description="""
## Case Management Service

Role-based filing, verification, assignment and tracking of incident
reports, with ledger-confirmed audit events.

### Case Lifecycle

```
pending -> in_progress -> closed
pending -> rejected, in_progress -> rejected
```

### Write Outcomes

Every mutating endpoint returns a `TransitionResult`:

- **confirmed**: stored and confirmed on the ledger
- **partial**: stored, ledger confirmation failed (failure attached)
- **unchanged**: idempotent repeat, nothing written
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,  # Required for cookies
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(actors_router)
    app.include_router(cases_router)
    app.include_router(admin_router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness. For dependency checks use /health/detailed."""
        return {"status": "healthy", "service": "casetrail"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Document store connectivity
        - Simulated ledger chain integrity

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = await check_health(
            store=request.app.state.store,
            ledger=request.app.state.ledger,
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
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
