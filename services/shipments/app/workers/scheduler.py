from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from app.core_settings import Settings, get_settings
from app.workers.carrier_sync import run_carrier_sync
from app.workers.simulation import run_simulation
from app.workers.stuck_detector import detect_stuck_shipments
from shared.core import get_logger

logger = get_logger(__name__)


def domestic_sync_job():
    """Carrier sync followed by stuck detection, as the cron endpoint does."""
    sync = run_carrier_sync()
    stuck = detect_stuck_shipments()
    logger.info(f"Scheduled domestic sync: {sync.updated} updated, {stuck.flagged} flagged")


def simulation_job():
    run_simulation()


def build_scheduler(settings: Optional[Settings] = None) -> BackgroundScheduler:
    settings = settings or get_settings()
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        domestic_sync_job,
        "interval",
        seconds=settings.CARRIER_SYNC_INTERVAL_SECONDS,
        id="domestic_sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        simulation_job,
        "interval",
        seconds=settings.SIMULATION_INTERVAL_SECONDS,
        id="simulation",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
