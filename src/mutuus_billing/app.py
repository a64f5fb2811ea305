"""
FastAPI application factory for the billing service
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .billing_routes import router as billing_router
from .config import Config, config as default_config
from .db.base import Base
from .db.engine import configure_sessions, create_db_engine, create_session_factory
from .exceptions import register_exception_handlers
from .logging_config import RequestIDMiddleware, setup_logging
from .services.billing_gateway import BillingGateway, get_billing_gateway
from .services.metrics import get_metrics_collector
from .services.monthly_aggregator import MonthlyAggregator
from .services.scheduled_jobs import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Config] = None,
    gateway: Optional[BillingGateway] = None,
    session_factory=None
) -> FastAPI:
    """
    Build the billing API

    Args:
        config: Configuration (defaults to the environment)
        gateway: Payment gateway (defaults to Stripe with the configured key)
        session_factory: Session factory (defaults to one bound to DATABASE_URL)

    Returns:
        FastAPI application with collaborators on ``app.state``
    """
    config = config or default_config

    if session_factory is None:
        engine = create_db_engine(config)
        if engine.dialect.name == "sqlite":
            # Local runs only; PostgreSQL schemas are managed by Alembic
            Base.metadata.create_all(bind=engine)
        session_factory = create_session_factory(engine)
    configure_sessions(session_factory=session_factory)

    if gateway is None:
        try:
            gateway = get_billing_gateway(config)
        except ValueError as e:
            logger.warning(f"Payment gateway disabled: {e}")

    aggregator = None
    if gateway is not None:
        aggregator = MonthlyAggregator(session_factory, gateway, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 50)
        logger.info(f"Mutuus Billing API - Starting Up ({config.ENV})")
        logger.info("=" * 50)
        if config.SCHEDULER_ENABLED and aggregator is not None:
            start_scheduler(aggregator)
        else:
            logger.info("Background scheduler disabled")
        try:
            yield
        finally:
            if config.SCHEDULER_ENABLED and aggregator is not None:
                stop_scheduler()
            logger.info("Mutuus Billing API - Shut down")

    app = FastAPI(title="Mutuus Billing API", lifespan=lifespan)
    app.state.config = config
    app.state.gateway = gateway
    app.state.session_factory = session_factory
    app.state.aggregator = aggregator

    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    app.include_router(billing_router)

    @app.get("/health")
    async def health():
        """Liveness check"""
        return {
            "status": "healthy",
            "service": "mutuus-billing",
            "env": config.ENV,
            "payment_provider": "configured" if gateway is not None else "missing",
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Counters and timings in Prometheus text format"""
        return get_metrics_collector().format_prometheus()

    return app


def main(app: Optional[FastAPI] = None):
    """Entry point for ``mutuus-billing``"""
    import uvicorn

    setup_logging(default_config.ENV, default_config.LOG_LEVEL)
    logger.info(f"Starting Mutuus Billing API on port {default_config.PORT}")
    uvicorn.run(
        app or create_app(),
        host="0.0.0.0",
        port=default_config.PORT,
        log_config=None,
        access_log=True,
    )
