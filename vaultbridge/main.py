"""FastAPI application entry point."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vaultbridge import __version__
from vaultbridge.api import auth, credentials, requests, system
from vaultbridge.config import settings
from vaultbridge.database import create_db_and_tables
from vaultbridge.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from vaultbridge.engine.worker import get_worker, shutdown_worker
    get_worker().ledger.ensure_native_asset()

    # Converge the ownership mirrors before the loop starts writing to them
    from vaultbridge.engine.reconcile import run_reconcile
    try:
        await run_reconcile()
    except Exception as e:
        logger.error(f"Startup reconcile failed, continuing: {e}")

    from vaultbridge.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    telegram_bot = None
    if settings.telegram_bot_token:
        from vaultbridge.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()
    await shutdown_worker()


app = FastAPI(
    title="VaultBridge",
    description="Asynchronous request bridge to a managed-position service",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(system.router)
app.include_router(credentials.router)
