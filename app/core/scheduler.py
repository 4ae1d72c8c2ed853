from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = BackgroundScheduler(
    timezone="UTC",
    job_defaults={
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': 60
    }
)


def job_listener(event):
    if event.exception:
        logger.error(f"Job {event.job_id} failed with exception: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully")


def poll_maintenance_changes():
    """Publish a change when the stored settings version differs from the cached one.

    Picks up edits made outside this process (maintenance CLI, other replicas).
    """
    from app import crud
    from app.database import SessionLocal
    from app.core.maintenance_state import maintenance_store
    from app.core.realtime import MAINTENANCE_TABLE, change_feed, serialize_record

    cached = maintenance_store.cached
    if cached is None:
        #nothing cached yet, a load is on its way anyway
        return

    db = SessionLocal()
    try:
        db_settings = crud.get_maintenance_settings(db)
        version = db_settings.version if db_settings else None
        if version == cached.version:
            return

        logger.info(f"Maintenance settings version changed ({cached.version} -> {version})")
        if db_settings is None:
            change_feed.publish(MAINTENANCE_TABLE, "DELETE")
        else:
            change_feed.publish(MAINTENANCE_TABLE, "UPDATE", serialize_record(db_settings))
    except Exception as e:
        logger.error(f"Error polling maintenance settings, keeping last known settings: {e}")
    finally:
        db.close()


def init_scheduler():
    scheduler.add_listener(job_listener, EVENT_JOB_ERROR | EVENT_JOB_EXECUTED)

    scheduler.add_job(
        poll_maintenance_changes,
        trigger=IntervalTrigger(seconds=settings.MAINTENANCE_POLL_SECONDS),
        id='maintenance_poll',
        name='Maintenance Settings Change Poll',
        replace_existing=True
    )

    logger.info("Scheduler initialized with maintenance jobs")
    logger.info(f"  - Maintenance settings poll: every {settings.MAINTENANCE_POLL_SECONDS}s")


def start_scheduler():
    if not scheduler.running:
        scheduler.start()
        logger.info("Background scheduler started")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")

