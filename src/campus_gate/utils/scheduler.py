# src/campus_gate/utils/scheduler.py
from apscheduler.schedulers.background import BackgroundScheduler

from campus_gate.config import get_config
from campus_gate.services.notification_service import notify_expiring_gatepasses
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()


def send_expiry_notices():
    """Daily job: warn students whose gate pass runs out within the notice window."""
    try:
        sent = notify_expiring_gatepasses()
        logger.info(f"📅 Expiry notice run complete, {sent} notices sent")
        return sent
    except Exception as e:
        logger.error(f"❌ Expiry notice run failed: {str(e)}")
        raise


def init_scheduler(start=True):
    """Initialize the background scheduler for gate pass expiry notices."""
    try:
        scheduler = BackgroundScheduler({
            'apscheduler.job_defaults.max_instances': 1,
        }, timezone=config.GATE_TIMEZONE)
        scheduler.add_job(
            send_expiry_notices,
            trigger="cron",
            hour=config.EXPIRY_NOTICE_HOUR,
            minute=0,
            id='send_expiry_notices',
            replace_existing=True
        )
        if start:
            scheduler.start()
            logger.info("Scheduler started")
        return scheduler
    except Exception as e:
        logger.error(f"Error starting scheduler: {str(e)}")
        raise
