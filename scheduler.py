"""
Periodic expiry sweep.

run_expiry_sweep() advances every time-based transition that is due:
stale pending confirmations expire, long-departed listings close, and
expired standing requests and subscriptions are deactivated. Every step is
a per-row conditional update, so overlapping or late sweeps are harmless.
"""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from config import SWEEP_INTERVAL_SECONDS
from confirmations import expire_pending
from db import get_session, get_lock
from listings import close_departed_listings, deactivate_expired_requests
from models import utcnow

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expiry-sweep"


def run_expiry_sweep(now: Optional[datetime] = None) -> dict:
    """Never raises; failures are logged and the remaining steps still run."""
    lock = get_lock("expiry-sweep")
    acquired = lock.acquire(timeout=5)
    if not acquired:
        return {"status": "locked"}
    now = now or utcnow()
    result = {"expired_confirmations": 0, "closed_listings": 0, "deactivated_requests": 0}
    try:
        session = get_session()
        try:
            steps = (
                ("expired_confirmations", lambda: len(expire_pending(session, now))),
                ("closed_listings", lambda: len(close_departed_listings(session, now))),
                ("deactivated_requests", lambda: deactivate_expired_requests(session, now)),
            )
            for key, step in steps:
                try:
                    result[key] = step()
                except Exception:
                    session.rollback()
                    logger.exception("expiry sweep step %s failed", key)
        finally:
            session.close()
    except Exception:
        logger.exception("expiry sweep could not run")
    finally:
        lock.release()
    logger.info("expiry sweep: %s", result)
    return result


def build_scheduler(interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> BackgroundScheduler:
    """A background scheduler running run_expiry_sweep every interval_seconds. Not started."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_expiry_sweep,
        "interval",
        seconds=interval_seconds,
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
