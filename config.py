"""Runtime configuration for the queue scheduler.

Values come from environment variables and are read once at import.  There
is no settings file; deployments set the variables and local development
falls back to the defaults below (SQLite next to this module, no Redis).
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")

DEFAULT_CONSULTATION_MINUTES = int(os.getenv("DEFAULT_CONSULTATION_MINUTES", "20"))
SESSION_LOCK_TIMEOUT = float(os.getenv("SESSION_LOCK_TIMEOUT", "5.0"))
MAX_RECALLS = int(os.getenv("MAX_RECALLS", "2"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

NOTIFICATION_LIST = os.getenv("NOTIFICATION_LIST", "queue_notifications")
NOTIFICATION_LOG_LIST = os.getenv("NOTIFICATION_LOG_LIST", "queue_notification_logs")

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "whatsapp:+14155238886")

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
