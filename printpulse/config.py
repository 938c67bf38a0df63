"""
Runtime configuration for the PrintPulse service.

Everything is read from the environment (a local .env is loaded first).
Modules import the constants they need; constructors take them as defaults
so tests can pass explicit values instead of patching the environment.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    return int(raw) if raw.strip() else default


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    return float(raw) if raw.strip() else default


# ── Gemini / Veo ─────────────────────────────────────────────────────────────

GEMINI_API_BASE = os.environ.get(
    "GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"
)

TRENDS_MODEL = os.environ.get("TRENDS_MODEL", "gemini-2.5-flash")
DESIGN_MODEL = os.environ.get("DESIGN_MODEL", "gemini-3-pro-image-preview")
LISTING_MODEL = os.environ.get("LISTING_MODEL", "gemini-3-pro-preview")
TITLE_MODEL = os.environ.get("TITLE_MODEL", "gemini-2.5-flash-lite")
MOCKUP_MODEL = os.environ.get("MOCKUP_MODEL", "gemini-2.5-flash-image")
VIDEO_MODEL = os.environ.get("VIDEO_MODEL", "veo-3.1-fast-generate-preview")

LISTING_THINKING_BUDGET = _int_env("LISTING_THINKING_BUDGET", 32768)

# Per-request transport timeout (seconds) for every adapter call
GENERATION_TIMEOUT = _float_env("GENERATION_TIMEOUT", 120.0)

# ── Video polling ────────────────────────────────────────────────────────────

VIDEO_POLL_INTERVAL = _float_env("VIDEO_POLL_INTERVAL", 10.0)  # seconds
VIDEO_MAX_POLLS = _int_env("VIDEO_MAX_POLLS", 90)  # 15 minutes at 10s

# ── Generation rate limit (0 disables pacing) ────────────────────────────────

GENERATION_MAX_REQUESTS = _int_env("GENERATION_MAX_REQUESTS", 0)
GENERATION_WINDOW_SECONDS = _int_env("GENERATION_WINDOW_SECONDS", 60)
REDIS_URL = os.environ.get("REDIS_URL", "")

# ── Credentials ──────────────────────────────────────────────────────────────

CREDENTIAL_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY")
CREDENTIALS_FILE = Path(
    os.environ.get("CREDENTIALS_FILE", str(Path.home() / ".printpulse" / "credentials.json"))
)

# ── Publishing (Supabase) ────────────────────────────────────────────────────

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
SUPABASE_LISTINGS_TABLE = os.environ.get("SUPABASE_LISTINGS_TABLE", "listings")
SUPABASE_ASSET_BUCKET = os.environ.get("SUPABASE_ASSET_BUCKET", "printpulse-assets")

# ── Server ───────────────────────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
API_SECRET = os.environ.get("PRINTPULSE_API_SECRET", "")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _int_env("PORT", 8000)
