# nima/core/config.py
import os
from datetime import timedelta
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from openai import OpenAI

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env", override=False)

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")

def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes"}

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== CREDITS ==================

FREE_WEEKLY_CREDITS = 5
WEEKLY_RESET_INTERVAL = timedelta(days=7)
LOW_CREDIT_THRESHOLD = 2

# Compare-and-swap attempts before a ledger write gives up
LEDGER_MAX_RETRIES = int(os.environ.get("LEDGER_MAX_RETRIES", "25"))

# ================== LOOKS ==================

MIN_LOOK_ITEMS = 2
MAX_LOOK_ITEMS = 6
MAX_STYLE_TAGS = 5
DEFAULT_CURRENCY = "KES"

LOOK_RATE_LIMIT = int(os.environ.get("LOOK_RATE_LIMIT", "10"))
LOOK_RATE_WINDOW = timedelta(hours=1)

LOOK_IMAGE_TTL_DAYS = int(os.environ.get("LOOK_IMAGE_TTL_DAYS", "30"))
MEDIA_DIR = Path(os.environ.get("MEDIA_DIR", str(ROOT_DIR / "media")))
MEDIA_URL_PREFIX = os.environ.get("MEDIA_URL_PREFIX", "/media").rstrip("/")

# ================== PAYMENTS (M-PESA STK PUSH) ==================

PAYMENT_API_URL = os.environ.get("PAYMENT_API_URL", "https://api.fingopay.io/v1/mpesa/charge")
PAYMENT_API_KEY = os.environ.get("PAYMENT_API_KEY", "").strip()
PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "").strip()
PAYMENT_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "30"))
LOG_DIR = os.getenv("LOG_DIR", "logs")

# ================== NOTIFICATIONS ==================

EXPO_PUSH_URL = os.environ.get("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_NOTIFICATIONS_ENABLED = env_bool("PUSH_NOTIFICATIONS_ENABLED", True)

# ================== OPENAI ==================

IMAGE_MODEL = os.environ.get("OPENAI_IMAGE_MODEL", "gpt-image-1")
IMAGE_SIZE = os.environ.get("OPENAI_IMAGE_SIZE", "1024x1536")
GENERATION_PROVIDER_NAME = "openai-gpt-image"

def get_openai_client() -> OpenAI:
    """
    Lazy init: the server starts without a key.
    Only the generation worker requires OPENAI_API_KEY.
    """
    key = os.environ.get("OPENAI_API_KEY")
    if not key:
        raise RuntimeError("OPENAI_API_KEY not configured (.env).")
    return OpenAI(api_key=key)

# ================== DATABASE ==================
# SQLite for local development, MySQL when configured

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host:
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "nima")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "nima.db"
    return f"sqlite+aiosqlite:///{db_path}"

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
