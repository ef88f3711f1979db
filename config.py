import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# PostgreSQL connection string; SQLite is used when it is not set
DATABASE_URL = os.getenv("DATABASE_URL", "").strip() or None

# Render provides DATABASE_URL in postgres:// format, psycopg2 needs postgresql://
if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

SQLITE_PATH = os.getenv("SQLITE_PATH", os.path.join(BASE_DIR, "league.db"))
SQLITE_TIMEOUT_SECONDS = float(os.getenv("SQLITE_TIMEOUT_SECONDS", "30"))

# Hours after a week boundary before the week is considered due for
# finalization. Late score syncs landing inside this window still count.
FINALIZE_GRACE_HOURS = float(os.getenv("FINALIZE_GRACE_HOURS", "0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ROSTER_SIZES = (4, 6, 8, 10, 12, 14)
SEASON_LENGTHS = (6, 8, 10, 12)
PLAYOFF_SIZE = 4
SCORE_DECIMALS = 2
DAYS_PER_WEEK = 7

# Invite codes: no 0/O or 1/I so they can be read out loud
JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6
JOIN_CODE_ATTEMPTS = 10
