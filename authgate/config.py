"""Process-level configuration for the Auth Gateway service."""

from __future__ import annotations

import os
from typing import List

from dotenv import load_dotenv

# Load environment variables from a .env file if present.
load_dotenv()


def _split_origins(value: str) -> List[str]:
    """Convert a comma-separated origin string into a clean list."""
    return [origin.strip() for origin in value.split(",") if origin.strip()]


DEFAULT_ALLOWED_ORIGINS = "http://localhost:8080,http://127.0.0.1:8080"

API_HOST = os.getenv("AUTHGATE_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("AUTHGATE_API_PORT", "3002"))
API_ALLOWED_ORIGINS = _split_origins(os.getenv("AUTHGATE_API_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS))
SESSION_PRUNE_ON_STARTUP = os.getenv("AUTHGATE_PRUNE_SESSIONS_ON_STARTUP", "true").strip().lower() in {"1", "true", "yes", "on"}
