import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler

from linksweep.services.run_controller import get_controller

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def run_dead_link_sweep(app):
    with app.app_context():
        result = get_controller().start(background=False)
        if not result.success:
            logger.info("Scheduled check skipped: %s", result.error)


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return

    interval_minutes = app.config["CHECK_INTERVAL_MINUTES"]
    if not scheduler.get_jobs():
        scheduler.add_job(
            run_dead_link_sweep,
            "interval",
            minutes=interval_minutes,
            kwargs={"app": app},
            id="dead_link_sweep",
            replace_existing=True,
        )
        scheduler.start()
