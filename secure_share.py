# secure_share.py

import os
import secrets
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

SHARE_BASE_URL = os.getenv("SHARE_BASE_URL", "http://localhost:8000").rstrip("/")
SHARE_PATH = "/" + os.getenv("SHARE_PATH", "/share").strip("/")
# 16 bytes = 128 bits, the floor for an unguessable public lookup key
SHARE_TOKEN_BYTES = max(16, int(os.getenv("SHARE_TOKEN_BYTES", "16")))

SECONDS_PER_DAY = 86400
# longest expiry accepted from clients (100 years)
MAX_EXPIRY_DAYS = 36500


# ─── TOKEN ─────────────────────────────────────────────

def generate_share_token(nbytes: int = SHARE_TOKEN_BYTES) -> str:
    """Fresh hex token from the OS CSPRNG."""
    return secrets.token_hex(max(16, nbytes))


def build_share_url(token: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or SHARE_BASE_URL).rstrip('/')}{SHARE_PATH}/{token}"


# ─── EXPIRY ─────────────────────────────────────────────

def compute_expiry(created_at: datetime, expiry_days: int) -> Optional[datetime]:
    """expiry_days == 0 means the share never expires."""
    if expiry_days < 0:
        raise ValueError("expiry_days must be >= 0")
    if expiry_days == 0:
        return None
    try:
        return created_at + timedelta(seconds=expiry_days * SECONDS_PER_DAY)
    except OverflowError as e:
        raise ValueError(f"expiry_days={expiry_days} is beyond the supported date range") from e
