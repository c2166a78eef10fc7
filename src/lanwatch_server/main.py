import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
import logging

from .alerting import AlertDispatcher
from .auditor import StalenessAuditor
from .config import Settings
from .db import init_db, make_engine, make_session_factory
from .notifier import HttpPushNotifier, LoggingNotifier, Notifier
from .routes.alerts import router as alerts_router
from .routes.devices import router as devices_router
from .routes.heartbeat import router as heartbeat_router
from .routes.subscribers import router as subscribers_router
from .store import DeviceStore

logger = logging.getLogger(__name__)


async def audit_sweep(auditor: StalenessAuditor, interval_sec: float) -> None:
    """Re-audit every device periodically, so a dead edge agent is noticed without any write."""
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await run_in_threadpool(auditor.audit_all)
        except Exception:
            logger.exception("Audit sweep failed; retrying in %ss", interval_sec)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup and run the audit sweep until shutdown."""
    settings: Settings = app.state.settings

    logger.info("Initializing database...")
    init_db(app.state.engine)
    logger.info("Database initialized successfully")

    sweep = None
    if settings.audit_sweep_interval_sec > 0:
        sweep = asyncio.create_task(audit_sweep(app.state.auditor, settings.audit_sweep_interval_sec))
        logger.info("Audit sweep every %ss", settings.audit_sweep_interval_sec)
    try:
        yield
    finally:
        logger.info("Shutting down application")
        if sweep is not None:
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass
        close = getattr(app.state.notifier, "close", None)
        if close is not None:
            close()
        app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> FastAPI:
    """
    Build the backend app: store, auditor and alert dispatcher wired through
    the store's change feed.
    """
    settings = settings or Settings()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO if not settings.debug else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if notifier is None:
        if settings.push_gateway_url:
            notifier = HttpPushNotifier(settings.push_gateway_url, timeout=settings.notify_timeout_sec)
        else:
            logger.info("PUSH_GATEWAY_URL is not set; notifications will only be logged")
            notifier = LoggingNotifier()

    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    store = DeviceStore(session_factory)
    dispatcher = AlertDispatcher(session_factory, notifier)
    auditor = StalenessAuditor(
        store,
        dispatcher,
        heartbeat_interval_ms=settings.heartbeat_interval_ms,
        offline_threshold_checks=settings.offline_threshold_checks,
    )
    store.subscribe(auditor.on_change)

    app = FastAPI(
        title="lanwatch Server",
        description="Device liveness backend: device store, staleness auditor and alerts",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.store = store
    app.state.notifier = notifier
    app.state.dispatcher = dispatcher
    app.state.auditor = auditor

    # CORS middleware for web clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(devices_router)
    app.include_router(alerts_router)
    app.include_router(heartbeat_router)
    app.include_router(subscribers_router)

    @app.get("/")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "lanwatch Server"}

    return app


app = create_app()
