import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def _actors(name: str) -> frozenset:
    raw = os.environ.get(name, "")
    return frozenset(actor.strip() for actor in raw.split(",") if actor.strip())


# Database (required by the SQL store only, checked in database.py)
DATABASE_URL = os.environ.get("DATABASE_URL")
SQL_ECHO = _flag("SQL_ECHO")

# Period calendar
TIME_ZONE = os.environ.get("TIME_ZONE", "Asia/Tokyo")

# Transactions
TRANSACTION_MAX_ATTEMPTS = int(os.environ.get("TRANSACTION_MAX_ATTEMPTS", "5"))
DELETE_MAX_ATTEMPTS = int(os.environ.get("DELETE_MAX_ATTEMPTS", "3"))
DELETE_BACKOFF_SECONDS = float(os.environ.get("DELETE_BACKOFF_SECONDS", "0.5"))

# Authorization allowlists, resolved outside the core
ADMIN_ACTORS = _actors("ADMIN_ACTORS")
SUPER_ADMIN_ACTORS = _actors("SUPER_ADMIN_ACTORS")

# HTTP
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_JSON = _flag("LOG_JSON")
