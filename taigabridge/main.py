"""FastAPI application entry point."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from uuid import uuid4

# Configure logging to output to stdout
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taigabridge.config import get_settings
from taigabridge.routers import health, telegram
from taigabridge.services import telegram_bot
from taigabridge.services.clients import TaigaClientFactory
from taigabridge.services.commands import BridgeBot
from taigabridge.services.link_store import LinkStore
from taigabridge.services.reconciler import NotificationReconciler
from taigabridge.services.wizard import WizardSessions

logger = logging.getLogger(__name__)

# How long a running notification cycle may take to finish on shutdown
SHUTDOWN_GRACE_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the link store, start the reconciler, register the webhook."""
    settings = get_settings()

    store = LinkStore(settings.link_storage_path)
    clients = TaigaClientFactory(
        settings.taiga_base_url, store, timeout=settings.taiga_request_timeout
    )
    app.state.store = store
    app.state.bot = BridgeBot(
        store,
        clients,
        telegram_bot.TelegramTransport(),
        WizardSessions(timeout=settings.wizard_timeout_seconds),
    )

    stop_event = asyncio.Event()
    reconciler_task = None
    if settings.notifications_enabled:
        reconciler = NotificationReconciler(
            store,
            notify=telegram_bot.send_text,
            client_factory=clients,
            interval=settings.poll_interval_seconds,
        )
        reconciler_task = asyncio.create_task(reconciler.run(stop_event))
        logger.info("Notification reconciler launched")
    else:
        logger.info("Notifications disabled; reconciler not started")

    if settings.telegram_webhook_url:
        try:
            await telegram_bot.set_webhook(
                settings.telegram_webhook_url, settings.telegram_webhook_secret
            )
            logger.info("Telegram webhook registered")
        except Exception:
            logger.exception("Failed to register Telegram webhook")

    yield

    # Shutdown: let a running cycle finish, cancel only if it overstays
    stop_event.set()
    if reconciler_task is not None:
        done, _ = await asyncio.wait({reconciler_task}, timeout=SHUTDOWN_GRACE_SECONDS)
        if not done:
            reconciler_task.cancel()
            try:
                await reconciler_task
            except asyncio.CancelledError:
                logger.info("Notification reconciler cancelled after grace period")


app = FastAPI(
    title="Taiga Bridge",
    description="Telegram bot for Taiga story tracking and change notifications",
    version="0.1.0",
    redirect_slashes=False,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(telegram.router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent format."""
    error_id = str(uuid4())

    if exc.status_code == 404:
        error_type = "not_found"
    elif exc.status_code == 400:
        error_type = "validation"
    elif exc.status_code in (401, 403):
        error_type = "auth"
    else:
        error_type = "server_error"

    logger.warning(
        "HTTP %s [%s]: %s - %s %s",
        exc.status_code,
        error_id,
        exc.detail,
        request.method,
        request.url.path,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc.detail), "error_type": error_type, "error_id": error_id},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unhandled exceptions."""
    error_id = str(uuid4())

    logger.error(
        "Unhandled exception [%s]: %s: %s - %s %s",
        error_id,
        type(exc).__name__,
        exc,
        request.method,
        request.url.path,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error_type": "server_error",
            "error_id": error_id,
        },
    )
