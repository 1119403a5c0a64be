from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
from pathlib import Path
import os
import logging

from token_billing import __version__
from token_billing.config import BillingSettings
from token_billing.errors import BillingError
from token_billing.routes import billing_router, billing_error_handler
from token_billing.scheduler import setup_scheduler
from token_billing.service import BillingService, build_store

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

app = FastAPI(title="Token Billing API", version=__version__)
api_router = APIRouter(prefix="/api")

scheduler = AsyncIOScheduler()


@api_router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(billing_router)
app.include_router(api_router)
app.add_exception_handler(BillingError, billing_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    settings = BillingSettings.from_env()

    db = None
    if settings.store_backend == "mongo":
        # Fail fast if the database is unavailable
        from database import check_db_connection, get_database
        db_ok, db_error = await check_db_connection()
        if not db_ok:
            logger.critical(f"Database connection failed on startup: {db_error}")
            raise RuntimeError(f"Cannot start application - database connection failed: {db_error}")
        db = get_database()

    app.state.billing = BillingService(build_store(settings, db), settings)

    setup_scheduler(scheduler, app.state.billing, settings)
    scheduler.start()
    logger.info(f"Token billing started (store={settings.store_backend})")


@app.on_event("shutdown")
async def shutdown():
    if scheduler.running:
        scheduler.shutdown()
    from database import close_client
    close_client()
