"""
Runtime configuration for MedShare.

Everything is read from the environment (a local .env file is loaded first).
"""
import os
from datetime import time

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _wall_clock(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "medshare")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", 5000))

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_ISSUER = "medshare-api"
JWT_AUDIENCE = "medshare-client"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}

# Email
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", 465))
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASS = os.getenv("EMAIL_PASS")
EMAIL_FROM = os.getenv("EMAIL_FROM") or (f"MedShare <{EMAIL_USER}>" if EMAIL_USER else None)
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", 30))

# Expiry sweep
EXPIRY_REMINDER_DAYS = int(os.getenv("EXPIRY_REMINDER_DAYS", 7))
SWEEP_TIME = _wall_clock(os.getenv("SWEEP_TIME", "09:00"))
SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", True)

# Server
CLIENT_ORIGIN = os.getenv("CLIENT_ORIGIN", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")
PORT = int(os.getenv("PORT", 8000))
