import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'linksweep.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"
    CHECK_INTERVAL_MINUTES = int(os.environ.get("CHECK_INTERVAL_MINUTES", "1440"))
    CHECK_RUN_IN_BACKGROUND = True
    CHECK_BATCH_SIZE = int(os.environ.get("CHECK_BATCH_SIZE", "3"))
    CHECK_BATCH_DELAY_SECONDS = float(
        os.environ.get("CHECK_BATCH_DELAY_SECONDS", "3.0")
    )
    PROBE_HEAD_TIMEOUT = float(os.environ.get("PROBE_HEAD_TIMEOUT", "5.0"))
    PROBE_GET_TIMEOUT = float(os.environ.get("PROBE_GET_TIMEOUT", "3.0"))
    SNAPSHOT_SCHEMA_VERSION = "1.0"
    EVENT_HISTORY_SIZE = int(os.environ.get("EVENT_HISTORY_SIZE", "200"))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SCHEDULER_ENABLED = False
    CHECK_BATCH_DELAY_SECONDS = 0.0
    CHECK_RUN_IN_BACKGROUND = False
    PROBE_HEAD_TIMEOUT = 0.5
    PROBE_GET_TIMEOUT = 0.5
