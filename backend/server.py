from message_wallet.billing_monitor import BillingMonitor
from message_wallet.config import BILLING_MONITOR_INTERVAL_MINUTES
from message_wallet.events import get_event_sink
from message_wallet.routes import billing_router
from message_wallet.wallet_service import WalletService
from database import get_client, get_store, check_db_connection
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="Agenda Billing - Message Wallet")

api_router = APIRouter(prefix="/api")

scheduler = AsyncIOScheduler()


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(billing_router)

app.include_router(api_router)

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


async def scheduled_wallet_cycle_reset():
    """Roll every wallet whose month ended, so the ledger shows the reset without waiting for traffic."""
    try:
        processed = await WalletService(get_store()).reset_due_cycles()
        logger.info(f"[WALLET-CYCLE-RESET] processed={processed}")
    except Exception as e:
        logger.error(f"[WALLET-CYCLE-RESET-ERROR] {e}")


async def scheduled_billing_monitor():
    """Send due-soon and blocked reminders and mark lapsed tenants delinquent."""
    try:
        counts = await BillingMonitor(get_store(), get_event_sink()).run_tick()
        logger.info(f"[BILLING-MONITOR] {counts}")
    except Exception as e:
        logger.error(f"[BILLING-MONITOR-ERROR] {e}")


@app.on_event("startup")
async def startup():
    ok, error = await check_db_connection()
    if not ok:
        logger.error(f"Starting without database: {error}")

    scheduler.add_job(
        scheduled_wallet_cycle_reset,
        CronTrigger(day=1, hour=0, minute=5, timezone='UTC'),
        id='wallet_cycle_reset',
        replace_existing=True
    )
    scheduler.add_job(
        scheduled_billing_monitor,
        IntervalTrigger(minutes=BILLING_MONITOR_INTERVAL_MINUTES),
        id='billing_monitor',
        replace_existing=True
    )
    scheduler.start()
    logger.info(
        f"Scheduler started - wallet cycle reset: day 1, 00:05 UTC; "
        f"billing monitor: every {BILLING_MONITOR_INTERVAL_MINUTES} min"
    )


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")

    get_client().close()
