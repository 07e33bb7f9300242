"""APScheduler configuration for background maintenance jobs."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta
import logging
from sqlalchemy import select

from app.config import settings
from app.database import AsyncSessionLocal
from app.models import Prospect, ProspectStatus, IN_PROGRESS_STATUSES

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing interrupted"

# Create scheduler instance
scheduler = AsyncIOScheduler()


async def recover_stale_prospects(broker=None, session_factory=AsyncSessionLocal) -> int:
    """
    Mark prospects stuck in an in-progress status as failed.

    A prospect is stale when its row has not been touched for
    STALE_PROCESSING_MINUTES and no live run owns it (e.g. the server
    restarted mid-pipeline). Returns the number of prospects recovered.
    """
    cutoff = datetime.utcnow() - timedelta(minutes=settings.STALE_PROCESSING_MINUTES)
    running = broker.running_ids() if broker is not None else set()

    try:
        async with session_factory() as db:
            result = await db.execute(
                select(Prospect).where(
                    Prospect.status.in_(IN_PROGRESS_STATUSES),
                    Prospect.updated_at < cutoff
                )
            )
            stale = [p for p in result.scalars().all() if str(p.id) not in running]

            for prospect in stale:
                logger.warning(f"Prospect {prospect.id} stuck in '{prospect.status}', marking failed")
                prospect.status = ProspectStatus.FAILED.value
                prospect.last_error = INTERRUPTED_MESSAGE
                prospect.updated_at = datetime.utcnow()

            if stale:
                await db.commit()
                logger.info(f"Recovered {len(stale)} stale prospects")

            return len(stale)

    except Exception as e:
        logger.error(f"❌ Error in stale prospect recovery: {e}")
        return 0


def start_scheduler(broker=None):
    """
    Initialize and start the APScheduler.

    Jobs:
    - Stale prospect recovery: every 10 minutes
    """
    if scheduler.running:
        logger.info("Scheduler already running")
        return

    try:
        scheduler.add_job(
            recover_stale_prospects,
            trigger=IntervalTrigger(minutes=10),
            kwargs={"broker": broker},
            id='stale_prospect_recovery',
            name='Stale Prospect Recovery',
            replace_existing=True,
            max_instances=1
        )
        logger.info("✅ Scheduled: Stale Prospect Recovery (every 10 minutes)")

        scheduler.start()
        logger.info("✅ APScheduler started successfully!")

        for job in scheduler.get_jobs():
            logger.info(f"   • {job.name}: Next run at {job.next_run_time}")

    except Exception as e:
        logger.error(f"❌ Error starting scheduler: {e}")


def stop_scheduler():
    """Stop the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
