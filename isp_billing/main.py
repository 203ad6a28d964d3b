# isp_billing/main.py
import logging

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import health as health_api
from .api.billing import main as billing_main_api
from .api.subscriptions import main as subscriptions_main_api
from .core.config import get_settings
from .core.errors import InvariantViolation, LedgerError
from .db.engine_sync import create_sync_db_and_tables

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="ISP Billing Ledger", version="0.1.0")


# --- Database Initialization ---
@app.on_event("startup")
def on_startup():
    """Create tables and seed default settings on application startup"""
    create_sync_db_and_tables()
    logger.info("Database tables initialized")


# ============================================================================
# --- GLOBAL EXCEPTION HANDLER ---
# ============================================================================
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    if isinstance(exc, InvariantViolation):
        logger.error(f"Invariant violation on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__},
    )


app.include_router(health_api.router, prefix="/api")
app.include_router(billing_main_api.router, prefix="/api", tags=["Billing"])
app.include_router(subscriptions_main_api.router, prefix="/api", tags=["Subscriptions"])
