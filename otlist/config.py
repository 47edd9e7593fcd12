import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_PATH = os.getenv("DATABASE_PATH", "otlist.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_CASES = os.getenv("SEED_DEMO_CASES", "false").lower() in ("1", "true", "yes", "on")

# Activity log (per session owner, newest first)
ACTIVITY_LOG_LIMIT = int(os.getenv("ACTIVITY_LOG_LIMIT", "100"))

# Fallback display name when an email has no local part
DEFAULT_USERNAME = os.getenv("DEFAULT_USERNAME", "User")

# Seconds of silence before the change stream sends a ping
EVENT_PING_SECONDS = float(os.getenv("EVENT_PING_SECONDS", "10"))

# Elective cases cannot be rebooked onto these dates (ISO, comma-separated)
PUBLIC_HOLIDAYS = frozenset(
    d.strip() for d in os.getenv("PUBLIC_HOLIDAYS", "").split(",") if d.strip()
)
