"""
Notification dispatch: persist deduplicated NotificationRecords for matches
and push each new record through the configured transport.

The stored record is the source of truth. Pushing is best effort; a failed
push is logged and the record stays.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

import httpx
from sqlalchemy.exc import IntegrityError

import config
from errors import ForbiddenError, NotFoundError, TransportError
from matching import Match, matches_for_listing, matches_for_request
from models import Listing, NotificationRecord, StandingRequest

logger = logging.getLogger(__name__)


def record_payload(record: NotificationRecord) -> dict:
    return {
        "id": record.id,
        "recipient_id": record.recipient_id,
        "type": record.notification_type,
        "priority": record.priority,
        "title": record.title,
        "message": record.message,
        "is_read": record.is_read,
        "related_user_id": record.related_user_id,
        "related_id": record.related_id,
        "created_at": record.created_at.isoformat(),
    }


class HttpPushTransport:
    """POSTs each record as JSON to a webhook; bounded by a timeout, retried a few times."""

    def __init__(self, url: str, timeout: float = config.PUSH_TIMEOUT_SECONDS,
                 attempts: int = config.PUSH_ATTEMPTS, client: Optional[httpx.Client] = None):
        self.url = url
        self.attempts = max(1, attempts)
        self.client = client or httpx.Client(timeout=timeout)

    def close(self):
        self.client.close()

    def push(self, recipient_id: int, record: NotificationRecord) -> bool:
        body = {"recipient_id": recipient_id, "notification": record_payload(record)}
        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                resp = self.client.post(self.url, json=body)
                resp.raise_for_status()
                return True
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning("push attempt %s/%s for notification %s failed: %s",
                               attempt, self.attempts, record.id, exc)
        raise TransportError(f"push to {self.url} failed: {last_error}")


class LogPushTransport:
    """Used when no webhook is configured: the push is only logged."""

    def push(self, recipient_id: int, record: NotificationRecord) -> bool:
        logger.info("notification %s (%s) for user %s", record.id, record.notification_type, recipient_id)
        return True

    def close(self):
        pass


_transport = None


def get_transport():
    """Process-wide transport, built on first use so one httpx pool is shared."""
    global _transport
    if _transport is None:
        if config.PUSH_WEBHOOK_URL:
            _transport = HttpPushTransport(config.PUSH_WEBHOOK_URL)
        else:
            _transport = LogPushTransport()
    return _transport


def close_transport():
    global _transport
    if _transport is not None:
        _transport.close()
        _transport = None


def _exists(session, match: Match) -> bool:
    return session.query(NotificationRecord.id).filter(
        NotificationRecord.recipient_id == match.recipient_id,
        NotificationRecord.related_id == match.related_id,
        NotificationRecord.notification_type == match.notification_type,
    ).first() is not None


def dispatch(session, matches: Iterable[Match], transport=None) -> int:
    """Persist one record per unseen dedup key and push it. Returns the number created."""
    transport = transport or get_transport()
    created = 0
    for match in matches:
        if _exists(session, match):
            continue
        record = NotificationRecord(
            recipient_id=match.recipient_id,
            notification_type=match.notification_type,
            priority=match.priority,
            title=match.title,
            message=match.message,
            related_user_id=match.related_user_id,
            related_id=match.related_id,
        )
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            # a concurrent dispatch inserted the same key first
            session.rollback()
            continue
        session.refresh(record)
        created += 1
        try:
            transport.push(match.recipient_id, record)
        except TransportError as exc:
            logger.warning("notification %s stored but not pushed: %s", record.id, exc)
        except Exception:
            logger.exception("push transport failed for notification %s", record.id)
    return created


def announce_listing(session, listing: Listing, transport=None, now: Optional[datetime] = None) -> int:
    count = dispatch(session, matches_for_listing(session, listing, now), transport)
    logger.info("listing %s: %s new notifications", listing.id, count)
    return count


def announce_request(session, request: StandingRequest, transport=None, now: Optional[datetime] = None) -> int:
    count = dispatch(session, matches_for_request(session, request, now), transport)
    logger.info("request %s: %s new notifications", request.id, count)
    return count


def list_notifications(session, recipient_id: int, unread_only: bool = False) -> List[NotificationRecord]:
    query = session.query(NotificationRecord).filter(NotificationRecord.recipient_id == recipient_id)
    if unread_only:
        query = query.filter(NotificationRecord.is_read == False)  # noqa: E712
    return query.order_by(NotificationRecord.created_at.desc(), NotificationRecord.id.desc()).all()


def _owned_record(session, notification_id: int, recipient_id: int) -> NotificationRecord:
    record = session.get(NotificationRecord, notification_id)
    if not record:
        raise NotFoundError("notification not found")
    if record.recipient_id != recipient_id:
        raise ForbiddenError("not your notification")
    return record


def mark_read(session, notification_id: int, recipient_id: int) -> NotificationRecord:
    record = _owned_record(session, notification_id, recipient_id)
    record.is_read = True
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def delete_notification(session, notification_id: int, recipient_id: int) -> None:
    record = _owned_record(session, notification_id, recipient_id)
    session.delete(record)
    session.commit()
