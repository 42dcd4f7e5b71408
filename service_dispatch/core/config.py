"""Runtime configuration read from the environment."""

import os

from dotenv import load_dotenv

# Load environment variables from .env (for local development)
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./service_dispatch.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SEED_PROVIDERS_ON_STARTUP = _env_flag("SEED_PROVIDERS_ON_STARTUP", True)

# 0 disables the periodic availability reconciliation job.
RECONCILE_INTERVAL_MINUTES = _env_int("RECONCILE_INTERVAL_MINUTES", 5)

# Seed for the least-loaded tie-break; unset means nondeterministic.
ASSIGNMENT_RANDOM_SEED = _env_int("ASSIGNMENT_RANDOM_SEED", None)
