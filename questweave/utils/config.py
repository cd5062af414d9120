import os
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Connection string for the row store. Any SQLAlchemy async URL works;
# the default keeps everything in a local SQLite file.
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///questweave.db")

DB_ECHO = os.environ.get("DB_ECHO", "0").lower() in ("1", "true", "yes")

# Telegram bot token used to push GM notifications. Unlike the unlock
# history itself this is optional: without a token notifications are only
# stored in the ``gm_notifications`` table.
BOT_TOKEN: Optional[str] = os.environ.get("BOT_TOKEN") or None

# Telegram user IDs of the game masters provided as a semicolon separated
# list in the ``ADMIN_IDS`` environment variable.
ADMIN_IDS: List[int] = [
    int(uid) for uid in os.environ.get("ADMIN_IDS", "").split(";") if uid.strip()
]

# Weighted score an unlock condition needs on top of its required rules.
UNLOCK_SCORE_THRESHOLD = float(os.environ.get("UNLOCK_SCORE_THRESHOLD", "0.8"))

# Threshold used by ``weighted_threshold`` milestones that do not set one.
DEFAULT_WEIGHTED_THRESHOLD = float(os.environ.get("DEFAULT_WEIGHTED_THRESHOLD", "0.8"))

NOTIFICATION_TTL_HOURS = int(os.environ.get("NOTIFICATION_TTL_HOURS", "24"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


class Config:
    DATABASE_URL = DATABASE_URL
    DB_ECHO = DB_ECHO
    BOT_TOKEN = BOT_TOKEN
    ADMIN_IDS = ADMIN_IDS
    UNLOCK_SCORE_THRESHOLD = UNLOCK_SCORE_THRESHOLD
    DEFAULT_WEIGHTED_THRESHOLD = DEFAULT_WEIGHTED_THRESHOLD
    NOTIFICATION_TTL_HOURS = NOTIFICATION_TTL_HOURS
    LOG_LEVEL = LOG_LEVEL
