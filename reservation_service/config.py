import os
from decimal import Decimal

DATABASE_URL = os.getenv("RESERVATION_DB") or "sqlite+aiosqlite:///./reservations.db"
DB_ECHO = (os.getenv("RESERVATION_DB_ECHO") or "").lower() in ("1", "true", "yes")

REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/0"
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want notifications
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE") or "reservation_events"

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-secret"
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

# ---- External slip verifier ----
VERIFIER_URL = os.getenv("SLIP_VERIFIER_URL") or "https://developer.easyslip.com/api/v1/verify"
VERIFIER_API_KEY = os.getenv("SLIP_VERIFIER_API_KEY")
VERIFIER_TIMEOUT_SECONDS = float(os.getenv("SLIP_VERIFIER_TIMEOUT") or "10")

# ---- Locks / checkout ----
DEFAULT_LOCK_TTL_MINUTES = 15
MIN_LOCK_TTL_MINUTES = 1
MAX_LOCK_TTL_MINUTES = 120

# Currency conversion on the bank side can shift the amount by a fraction.
DEFAULT_AMOUNT_TOLERANCE = Decimal(os.getenv("AMOUNT_TOLERANCE") or "1.00")
DEFAULT_MAX_EVIDENCE_AGE_HOURS = 24
DEFAULT_CANCELLATION_WINDOW_HOURS = 24

# ---- Upload tokens ----
UPLOAD_TOKEN_TTL_MINUTES = 15
UPLOAD_MAX_BYTES = 10 * 1024 * 1024

# ---- Sweeper ----
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS") or "30")
COMPLETION_INTERVAL_SECONDS = float(os.getenv("COMPLETION_INTERVAL_SECONDS") or "3600")
DRAFT_STALE_MINUTES = int(os.getenv("DRAFT_STALE_MINUTES") or "60")

# ---- Rate limits (requests per minute per caller) ----
EVIDENCE_RATE_LIMIT = int(os.getenv("EVIDENCE_RATE_LIMIT") or "10")
LOCK_RATE_LIMIT = int(os.getenv("LOCK_RATE_LIMIT") or "30")
UPLOAD_TOKEN_RATE_LIMIT = int(os.getenv("UPLOAD_TOKEN_RATE_LIMIT") or "20")
CANCEL_RATE_LIMIT = int(os.getenv("CANCEL_RATE_LIMIT") or "5")

# ---- Tenant settings cache ----
TENANT_CACHE_TTL_SECONDS = int(os.getenv("TENANT_CACHE_TTL_SECONDS") or "60")
