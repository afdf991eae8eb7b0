import os
from decimal import Decimal


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [value.strip() for value in raw.split(",") if value.strip()]


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./stockhold.db")

# Availability below requested * ratio is still valid but reported as low headroom.
LOW_STOCK_HEADROOM_RATIO = Decimal(os.getenv("STOCKHOLD_LOW_STOCK_HEADROOM_RATIO", "1.2"))

RESERVATION_NUMBER_ATTEMPTS = int(os.getenv("STOCKHOLD_RESERVATION_NUMBER_ATTEMPTS", "5"))
CONCURRENCY_RETRIES = int(os.getenv("STOCKHOLD_CONCURRENCY_RETRIES", "1"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("STOCKHOLD_SWEEP_INTERVAL_SECONDS", "60"))

CORS_ORIGINS = _env_list("STOCKHOLD_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")

# SQLite has no row locks; BEGIN IMMEDIATE makes concurrent writers queue on the database lock.
SQLITE_IMMEDIATE_TRANSACTIONS = os.getenv("STOCKHOLD_SQLITE_IMMEDIATE_TRANSACTIONS", "true").lower() in {"1", "true", "yes"}
