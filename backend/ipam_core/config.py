"""
Runtime configuration read from environment variables.
"""
import os

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    return int(value)


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ipam.db")

# Logging
LOG_DIR = os.getenv("IPAM_LOG_DIR", os.path.join(BASE_DIR, "logs"))
LOG_LEVEL = os.getenv("IPAM_LOG_LEVEL", "INFO").upper()
LOG_TO_FILE = _env_bool("IPAM_LOG_TO_FILE", True)

# Allocation bounds
IPV6_SEARCH_BUDGET = _env_int("IPAM_IPV6_SEARCH_BUDGET", 1000)
ALLOCATION_RETRIES = _env_int("IPAM_ALLOCATION_RETRIES", 3)
RESERVATION_MATERIALIZE_LIMIT = _env_int("IPAM_RESERVATION_MATERIALIZE_LIMIT", 1000)
RECENT_HISTORY_LIMIT = _env_int("IPAM_RECENT_HISTORY_LIMIT", 20)

# HTTP
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "IPAM_CORS_ORIGINS",
        "http://localhost:3000,http://localhost:8000,http://127.0.0.1:3000",
    ).split(",")
    if origin.strip()
]
