from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from aurelia.api import cur_version
from aurelia.api.routers import admin_routers, public_routers
from aurelia.background_workers.constants import RECONCILIATION_JOB, WEBHOOK_RETRY_JOB
from aurelia.background_workers.reconciliation_job import ReconciliationJob
from aurelia.background_workers.scheduler import JobScheduler
from aurelia.background_workers.webhook_retry_job import WebhookRetryJob
from aurelia.common.custom_exceptions import register_all_exceptions
from aurelia.common.logging_setup import get_logger, setup_logging, stop_logging
from aurelia.config.admin_config import admin_config as default_admin_config
from aurelia.config.settings import config_settings
from aurelia.db.connection import create_engine_and_session
from aurelia.metrics.custom_instrumentator import build_instrumentator
from aurelia.middlewares.request_id_middleware import RequestIdMiddleware
from aurelia.notifications.dispatcher import OrderNotifier
from aurelia.notifications.mailer import MailSender, build_mail_sender
from aurelia.orders.services import OrderService
from aurelia.payments.gateway import PaymentGatewayAdapter, RazorpayGateway
from aurelia.payments.services import PaymentService
from aurelia.payments.webhooks import razorpay_webhook

logger = get_logger("aurelia.app")


def create_app(settings=None, *, admin_settings=None,
               session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
               gateway: Optional[PaymentGatewayAdapter] = None,
               mail_sender: Optional[MailSender] = None,
               enable_scheduler: Optional[bool] = None) -> FastAPI:
    settings = settings or config_settings
    admin_settings = admin_settings or default_admin_config
    run_scheduler = settings.ENABLE_SCHEDULER if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        setup_logging()

        engine = None
        factory = session_factory
        if factory is None:
            engine, factory = create_engine_and_session(settings.DATABASE_URL, echo=settings.DB_ECHO)

        # refuse to start without gateway credentials
        payment_gateway = gateway or RazorpayGateway.from_settings(settings)

        notifier = OrderNotifier(mail_sender or build_mail_sender(settings))
        payment_service = PaymentService(factory, payment_gateway, notifier, settings)
        order_service = OrderService(factory, notifier, settings, payment_service=payment_service)

        scheduler = JobScheduler()
        scheduler.register(
            RECONCILIATION_JOB,
            settings.RECONCILIATION_INTERVAL_SECONDS,
            ReconciliationJob.from_settings(payment_service, settings).run,
        )
        scheduler.register(
            WEBHOOK_RETRY_JOB,
            settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
            WebhookRetryJob(payment_service, batch_size=settings.WEBHOOK_RETRY_BATCH_SIZE).run,
        )

        app.state.session_factory = factory
        app.state.payment_service = payment_service
        app.state.order_service = order_service
        app.state.notifier = notifier
        app.state.scheduler = scheduler

        if run_scheduler:
            scheduler.start()
        logger.info("app.started", extra={"scheduler": run_scheduler, "service": admin_settings.SERVICE_NAME})

        try:
            yield
        finally:
            # new requests are no longer accepted at this point
            await scheduler.shutdown(timeout=settings.SCHEDULER_SHUTDOWN_TIMEOUT)
            await notifier.drain()
            if engine is not None:
                await engine.dispose()
            logger.info("app.stopped")
            stop_logging()

    app = FastAPI(
        title="Aurelia",
        version=cur_version,
        lifespan=app_lifespan)
    app.state.settings = settings
    app.state.admin_config = admin_settings

    app.include_router(public_routers)

    app.add_api_route(settings.RZPAY_WEBHOOK_PATH, razorpay_webhook, methods=["POST"], name="razorpay_webhook")

    if admin_settings.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    if settings.ENABLE_METRICS:
        build_instrumentator().instrument(app).expose(app, endpoint="/metrics")

    return app


app = create_app()
