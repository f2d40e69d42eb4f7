"""IBP billing service entry point."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ibp_billing import __version__
from ibp_billing.adapters.config_provider import JsonFileConfigProvider
from ibp_billing.adapters.report_writer import ReportWriter
from ibp_billing.adapters.repositories import MemberEventRepository
from ibp_billing.adapters.state_file import JsonGenerationStateStore
from ibp_billing.api.router import router
from ibp_billing.core.scheduler import BillingScheduler, SystemClock
from ibp_billing.core.services import BillingService
from ibp_billing.observability import configure_logging, get_logger
from ibp_billing.settings import Settings

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, service: BillingService | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings; read from the environment when omitted.
        service: Pre-built BillingService. When given, the lifespan neither
            builds adapters nor starts the scheduler (used by tests).
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle."""
        if service is not None:
            app.state.billing_service = service
            yield
            return

        configure_logging(settings.log_level, settings.json_logs)
        logger.info(
            "ibp-billing starting",
            service=settings.service_name,
            version=__version__,
            config_path=str(settings.config_path),
            scheduler_enabled=settings.scheduler_enabled,
        )

        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        clock = SystemClock()
        billing = BillingService(
            config_provider=JsonFileConfigProvider(settings.config_path),
            event_log=MemberEventRepository(async_sessionmaker(engine, expire_on_commit=False)),
            renderer=ReportWriter(),
            settings=settings,
            clock=clock,
            state_store=JsonGenerationStateStore(settings.generation_state_path),
        )

        try:
            # Fatal: refuse to start on missing config or an unreachable event log.
            await billing.startup_check()
            await asyncio.to_thread(billing.refresh, verbose=True)
        except Exception:
            await engine.dispose()
            raise

        scheduler = BillingScheduler(billing, clock, settings)
        if settings.scheduler_enabled:
            scheduler.start()

        app.state.billing_service = billing
        try:
            yield
        finally:
            await scheduler.stop()
            await engine.dispose()
            logger.info("ibp-billing shutting down")

    app = FastAPI(title="ibp-billing", version=__version__, lifespan=lifespan)
    app.include_router(router, prefix="/api/v1")
    return app


app = create_app()
