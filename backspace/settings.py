import os
from pathlib import Path

from dotenv import load_dotenv

# --- Base Directory ---
BASE_DIR = Path(__file__).resolve().parent.parent

# --- Load Environment Variables ---
load_dotenv(BASE_DIR / ".env")

# --- Storage ---
DB_PATH = os.getenv("BACKSPACE_DB_PATH", str(BASE_DIR / "backspace.db"))
BUSY_TIMEOUT_MS = int(os.getenv("BACKSPACE_BUSY_TIMEOUT_MS", "5000"))

# --- Logging ---
LOG_LEVEL = os.getenv("BACKSPACE_LOG_LEVEL", "INFO").upper()
LOG_DIR = BASE_DIR / os.getenv("BACKSPACE_LOG_DIR", "logs")

# --- Billing ---
INVOICE_DUE_DAYS = int(os.getenv("BACKSPACE_INVOICE_DUE_DAYS", "7"))

# Sessions open longer than this are closed by the stale sweep.
STALE_SESSION_HOURS = float(os.getenv("BACKSPACE_STALE_SESSION_HOURS", "12"))

# --- Web ---
SECRET_KEY = os.getenv("BACKSPACE_SECRET_KEY", "backspace-secret")
