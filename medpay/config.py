"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Backend (Supabase) ───────────────────────────────────────────────
PROFILES_TABLE = "profiles"
GRANTS_TABLE = "user_empresas"
COMPANY_COLUMN = "empresa_id"

# If set, a missing profile for this email is created with role=admin on
# first sign-in. Empty disables the bootstrap.
BOOTSTRAP_ADMIN_EMAIL = os.getenv("MEDPAY_BOOTSTRAP_ADMIN_EMAIL", "").strip().lower()

# ── Session storage ──────────────────────────────────────────────────
SESSION_STORAGE_KEY = "medpay.auth.session"
SESSION_STORAGE = os.getenv("SESSION_STORAGE", "memory")
SESSION_STORAGE_DIR = os.path.expanduser(os.getenv("SESSION_STORAGE_DIR", "~/.medpay"))
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# ── Routing ──────────────────────────────────────────────────────────
LOGIN_PATH = "/login"
LANDING_PATH = "/dashboard"
COMPANY_NOT_FOUND = "Empresa não encontrada"

# ── Reports / previews ───────────────────────────────────────────────
REPORT_TOP_N = 5
MAX_PREVIEW_ROWS = 20

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24
# Stored sessions expire with the token that points at them.
SESSION_TTL_SECONDS = TOKEN_EXPIRY_HOURS * 3600
TOKEN_COOKIE = "medpay_token"


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
