"""Runtime settings read from the environment at import time."""
import os
from datetime import timedelta


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


PENDING_EXPIRY = timedelta(hours=_float("PENDING_EXPIRY_HOURS", 24))
REVERSAL_WINDOW = timedelta(minutes=_float("REVERSAL_WINDOW_MINUTES", 5))
LISTING_CLOSE_AFTER = timedelta(hours=_float("LISTING_CLOSE_AFTER_HOURS", 24))
REQUEST_TTL = timedelta(days=_float("REQUEST_TTL_DAYS", 30))

DEFAULT_SEARCH_RADIUS_MILES = _float("DEFAULT_SEARCH_RADIUS_MILES", 25)
SWEEP_INTERVAL_SECONDS = _float("SWEEP_INTERVAL_SECONDS", 300)

# push transport; unset URL means pushes are only logged
PUSH_WEBHOOK_URL = os.environ.get("PUSH_WEBHOOK_URL")
PUSH_TIMEOUT_SECONDS = _float("PUSH_TIMEOUT_SECONDS", 5)
PUSH_ATTEMPTS = int(os.environ.get("PUSH_ATTEMPTS", 2))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
