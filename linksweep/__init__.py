import json
import logging

import click
from flask import Flask

from linksweep.api import api_bp
from linksweep.config import Config
from linksweep.extensions import db, migrate
from linksweep.jobs.scheduler import start_scheduler
from linksweep.services.events import EventChannel
from linksweep.services.run_controller import EXTENSION_KEY, RunController, get_controller
from linksweep.services.store import BookmarkStore


def _configure_logging(app: Flask) -> None:
    logger = logging.getLogger("linksweep")
    logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    _configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)

    app.register_blueprint(api_bp)

    app.extensions[EXTENSION_KEY] = RunController(
        app, EventChannel(history_size=app.config["EVENT_HISTORY_SIZE"])
    )

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        BookmarkStore().ensure_roots()
        print("Initialized LinkSweep database.")

    @app.cli.command("check-links")
    def check_links_command():
        controller = get_controller()
        result = controller.start(background=False)
        if not result.success:
            raise click.ClickException(result.error or "check did not start")
        status = controller.status()
        print(f"Check {status['last_outcome']['status']}: {status['stats']}")

    @app.cli.command("capture-snapshot")
    def capture_snapshot_command():
        result = get_controller().capture()
        if not result.success:
            raise click.ClickException(result.error or "capture failed")
        print(f"Snapshot captured at {result.data['timestamp']}.")

    @app.cli.command("restore-snapshot")
    @click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False))
    def restore_snapshot_command(path):
        controller = get_controller()
        if path:
            try:
                with open(path, encoding="utf-8") as handle:
                    data = json.load(handle)
            except ValueError as exc:
                raise click.ClickException(f"Invalid backup file format: {exc}")
            result = controller.restore_from_data(data)
        else:
            result = controller.restore_stored()
        if not result.success:
            raise click.ClickException(result.error or "restore failed")
        restore = result.data["restore"]
        print(
            f"Restored {restore['created']} nodes "
            f"({restore['cleared']} cleared, {restore['failed']} skipped)."
        )

    with app.app_context():
        db.create_all()
        BookmarkStore().ensure_roots()

    start_scheduler(app)
    return app
