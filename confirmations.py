"""
Booking confirmation lifecycle.

    pending  -> accepted | rejected | expired | cancelled
    accepted -> cancelled
    cancelled -> (prior status), once, within the reversal window

rejected and expired are terminal. Seat counters move only through
reserve_seats / release_seats, each a single conditional UPDATE, and every
status change is a conditional UPDATE on the status it expects to leave.
A transition that loses a race therefore fails instead of overwriting.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func

from config import PENDING_EXPIRY, REVERSAL_WINDOW
from errors import CapacityError, ForbiddenError, NotFoundError, StateError, TravelMatchError, ValidationError
from models import (
    Confirmation, Listing,
    OPEN, PENDING, ACCEPTED, REJECTED, CANCELLED, EXPIRED,
    utcnow,
)

logger = logging.getLogger(__name__)

EXPIRING_SOON = timedelta(hours=6)


@dataclass
class HistoryEntry:
    confirmation: Confirmation
    can_reverse: bool
    can_request_again: bool


# ────────────────────────── capacity primitive ──────────────────────────────

def reserve_seats(session, listing_id: int, seats: int) -> None:
    """Decrement seats_available only if the listing is open and enough remain. Caller commits or rolls back."""
    updated = session.query(Listing).filter(
        Listing.id == listing_id,
        Listing.status == OPEN,
        Listing.seats_available >= seats,
    ).update({Listing.seats_available: Listing.seats_available - seats}, synchronize_session=False)
    if not updated:
        status = session.query(Listing.status).filter(Listing.id == listing_id).scalar()
        if status != OPEN:
            raise StateError("listing is closed")
        raise CapacityError("seat no longer available")


def release_seats(session, listing_id: int, seats: int) -> None:
    """Increment seats_available, never past total_seats. Caller commits or rolls back."""
    updated = session.query(Listing).filter(
        Listing.id == listing_id,
        Listing.seats_available + seats <= Listing.total_seats,
    ).update({Listing.seats_available: Listing.seats_available + seats}, synchronize_session=False)
    if not updated:
        raise StateError(f"listing {listing_id} has no committed seats to release")


def committed_seats(session, listing_id: int) -> int:
    total = session.query(func.coalesce(func.sum(Confirmation.seats_requested), 0)).filter(
        Confirmation.listing_id == listing_id,
        Confirmation.status == ACCEPTED,
    ).scalar()
    return int(total)


# ────────────────────────── helpers ─────────────────────────────────────────

def get_confirmation(session, confirmation_id: int) -> Confirmation:
    confirmation = session.get(Confirmation, confirmation_id)
    if not confirmation:
        raise NotFoundError("confirmation not found")
    return confirmation


def _transition(session, confirmation_id: int, from_status: str, values: dict) -> bool:
    updated = session.query(Confirmation).filter(
        Confirmation.id == confirmation_id,
        Confirmation.status == from_status,
    ).update(values, synchronize_session=False)
    return bool(updated)


def _require_owner(confirmation: Confirmation, actor_id: int):
    if confirmation.owner_id != actor_id:
        raise ForbiddenError("only the listing owner can do this")


def _require_party(confirmation: Confirmation, actor_id: int):
    if actor_id not in (confirmation.owner_id, confirmation.requester_id):
        raise ForbiddenError("not a party to this confirmation")


def _is_stale(confirmation: Confirmation, now: datetime) -> bool:
    return confirmation.status == PENDING and now - confirmation.created_at >= PENDING_EXPIRY


def _require_bookable(session, listing_id: int, now: datetime) -> Listing:
    listing = session.get(Listing, listing_id)
    if not listing or listing.status != OPEN:
        raise StateError("listing is closed")
    if listing.departure_at <= now:
        raise StateError("listing has already departed")
    return listing


def _commit_or_rollback(session, work):
    try:
        work()
        session.commit()
    except TravelMatchError:
        session.rollback()
        raise


def _open_confirmation(session, listing: Listing, requester_id: int, seats: int,
                       now: datetime, request_count: int = 1) -> Confirmation:
    if seats is None or seats < 1:
        raise ValidationError("seats must be at least 1")
    if listing.owner_id == requester_id:
        raise ValidationError("you cannot join your own listing")
    if listing.status != OPEN or listing.departure_at <= now:
        raise StateError("listing is no longer taking requests")
    active = session.query(Confirmation.id).filter(
        Confirmation.listing_id == listing.id,
        Confirmation.requester_id == requester_id,
        Confirmation.status.in_([PENDING, ACCEPTED]),
    ).first()
    if active:
        raise StateError("you already have an open request for this listing")
    if seats > listing.seats_available:
        raise CapacityError(f"only {listing.seats_available} seats available")

    confirmation = Confirmation(
        listing_id=listing.id,
        listing_kind=listing.kind,
        owner_id=listing.owner_id,
        requester_id=requester_id,
        seats_requested=seats,
        created_at=now,
        updated_at=now,
        request_count=request_count,
    )
    session.add(confirmation)
    session.commit()
    session.refresh(confirmation)
    logger.info("confirmation %s requested: listing %s, user %s, %s seats",
                confirmation.id, listing.id, requester_id, seats)
    return confirmation


# ────────────────────────── transitions ─────────────────────────────────────

def request_to_join(session, listing_id: int, requester_id: int, seats: int = 1,
                    now: Optional[datetime] = None) -> Confirmation:
    """Open a pending confirmation. Seats are not reserved until the owner accepts."""
    now = now or utcnow()
    listing = session.get(Listing, listing_id)
    if not listing:
        raise NotFoundError("listing not found")
    return _open_confirmation(session, listing, requester_id, seats, now)


def accept(session, confirmation_id: int, actor_id: int, now: Optional[datetime] = None) -> Confirmation:
    now = now or utcnow()
    confirmation = get_confirmation(session, confirmation_id)
    _require_owner(confirmation, actor_id)
    if confirmation.status != PENDING:
        raise StateError(f"cannot accept a {confirmation.status} confirmation")
    if _is_stale(confirmation, now):
        _commit_or_rollback(session, lambda: _transition(
            session, confirmation.id, PENDING, {Confirmation.status: EXPIRED, Confirmation.updated_at: now}))
        raise StateError("confirmation has expired")
    _require_bookable(session, confirmation.listing_id, now)

    def work():
        if not _transition(session, confirmation.id, PENDING, {
                Confirmation.status: ACCEPTED,
                Confirmation.confirmed_at: now,
                Confirmation.updated_at: now}):
            raise StateError("confirmation is no longer pending")
        reserve_seats(session, confirmation.listing_id, confirmation.seats_requested)

    _commit_or_rollback(session, work)
    session.refresh(confirmation)
    logger.info("confirmation %s accepted", confirmation.id)
    return confirmation


def reject(session, confirmation_id: int, actor_id: int, now: Optional[datetime] = None) -> Confirmation:
    now = now or utcnow()
    confirmation = get_confirmation(session, confirmation_id)
    _require_owner(confirmation, actor_id)
    if confirmation.status != PENDING:
        raise StateError(f"cannot reject a {confirmation.status} confirmation")

    def work():
        if not _transition(session, confirmation.id, PENDING, {
                Confirmation.status: REJECTED,
                Confirmation.confirmed_at: now,
                Confirmation.updated_at: now}):
            raise StateError("confirmation is no longer pending")

    _commit_or_rollback(session, work)
    session.refresh(confirmation)
    return confirmation


def cancel(session, confirmation_id: int, actor_id: int, now: Optional[datetime] = None) -> Confirmation:
    """Either party cancels. Cancelling an accepted booking gives its seats back."""
    now = now or utcnow()
    confirmation = get_confirmation(session, confirmation_id)
    _require_party(confirmation, actor_id)
    prior = confirmation.status
    if prior not in (PENDING, ACCEPTED):
        raise StateError(f"cannot cancel a {prior} confirmation")

    def work():
        if not _transition(session, confirmation.id, prior, {
                Confirmation.status: CANCELLED,
                Confirmation.cancelled_at: now,
                Confirmation.cancelled_by: actor_id,
                Confirmation.status_before_cancel: prior,
                Confirmation.updated_at: now}):
            raise StateError(f"confirmation is no longer {prior}")
        if prior == ACCEPTED:
            release_seats(session, confirmation.listing_id, confirmation.seats_requested)

    _commit_or_rollback(session, work)
    session.refresh(confirmation)
    logger.info("confirmation %s cancelled by user %s (was %s)", confirmation.id, actor_id, prior)
    return confirmation


def can_reverse(confirmation: Confirmation, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (confirmation.status == CANCELLED
            and not confirmation.reversed
            and confirmation.cancelled_at is not None
            and confirmation.status_before_cancel in (PENDING, ACCEPTED)
            and now - confirmation.cancelled_at <= REVERSAL_WINDOW)


def reverse(session, confirmation_id: int, actor_id: int, now: Optional[datetime] = None) -> Confirmation:
    """Undo a cancellation within the reversal window, at most once per confirmation."""
    now = now or utcnow()
    confirmation = get_confirmation(session, confirmation_id)
    _require_party(confirmation, actor_id)
    if confirmation.status != CANCELLED:
        raise StateError(f"cannot reverse a {confirmation.status} confirmation")
    if confirmation.reversed:
        raise StateError("this confirmation was already reversed once")
    if not can_reverse(confirmation, now):
        raise StateError("the reversal window has passed")
    restored = confirmation.status_before_cancel
    _require_bookable(session, confirmation.listing_id, now)

    def work():
        if not _transition(session, confirmation.id, CANCELLED, {
                Confirmation.status: restored,
                Confirmation.reversed: True,
                Confirmation.updated_at: now}):
            raise StateError("confirmation is no longer cancelled")
        if restored == ACCEPTED:
            reserve_seats(session, confirmation.listing_id, confirmation.seats_requested)

    _commit_or_rollback(session, work)
    session.refresh(confirmation)
    logger.info("confirmation %s cancellation reversed by user %s", confirmation.id, actor_id)
    return confirmation


def request_again(session, confirmation_id: int, requester_id: int,
                  now: Optional[datetime] = None) -> Confirmation:
    """After a rejection or expiry, open a fresh pending confirmation on the same listing."""
    now = now or utcnow()
    previous = get_confirmation(session, confirmation_id)
    if previous.requester_id != requester_id:
        raise ForbiddenError("only the requester can request again")
    if previous.status not in (REJECTED, EXPIRED):
        raise StateError("can only request again after a rejection or expiry")
    listing = session.get(Listing, previous.listing_id)
    if not listing:
        raise NotFoundError("listing not found")
    return _open_confirmation(session, listing, requester_id, previous.seats_requested, now,
                              request_count=previous.request_count + 1)


def expire_pending(session, now: Optional[datetime] = None) -> List[int]:
    """Expire pending confirmations older than PENDING_EXPIRY. Safe to re-run."""
    now = now or utcnow()
    cutoff = now - PENDING_EXPIRY
    ids = [row.id for row in session.query(Confirmation.id).filter(
        Confirmation.status == PENDING, Confirmation.created_at <= cutoff).all()]
    expired = []
    for confirmation_id in ids:
        try:
            changed = _transition(session, confirmation_id, PENDING, {
                Confirmation.status: EXPIRED,
                Confirmation.updated_at: now})
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("failed to expire confirmation %s", confirmation_id)
            continue
        if changed:
            expired.append(confirmation_id)
    return expired


def confirmation_history(session, user_id: int, now: Optional[datetime] = None) -> List[HistoryEntry]:
    """Every confirmation the user is party to, newest first, with the actions still open to them."""
    now = now or utcnow()
    rows = session.query(Confirmation).filter(
        (Confirmation.owner_id == user_id) | (Confirmation.requester_id == user_id)
    ).order_by(Confirmation.created_at.desc(), Confirmation.id.desc()).all()
    listings = {}
    entries = []
    for c in rows:
        if c.listing_id not in listings:
            listings[c.listing_id] = session.get(Listing, c.listing_id)
        listing = listings[c.listing_id]
        bookable = listing is not None and listing.status == OPEN and listing.departure_at > now
        again = c.status in (REJECTED, EXPIRED) and c.requester_id == user_id and bookable
        entries.append(HistoryEntry(c, bookable and can_reverse(c, now), again))
    return entries


# ────────────────────────── expiry info / stats ─────────────────────────────

def pending_expires_at(confirmation: Confirmation) -> Optional[datetime]:
    if confirmation.status != PENDING:
        return None
    return confirmation.created_at + PENDING_EXPIRY


def time_until(now: datetime, moment: datetime) -> str:
    """Coarse human-readable countdown: days, else hours, else minutes."""
    remaining = max(moment - now, timedelta(0))
    hours = int(remaining.total_seconds() // 3600)
    if hours > 24:
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    minutes = int(remaining.total_seconds() // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def confirmation_stats(session, user_id: int, now: Optional[datetime] = None) -> dict:
    """Per-status counts over the user's history plus when each pending request lapses."""
    now = now or utcnow()
    entries = confirmation_history(session, user_id, now)
    stats = {status: 0 for status in (PENDING, ACCEPTED, REJECTED, CANCELLED, EXPIRED)}
    stats.update(total=len(entries), reversed=0, can_reverse=0, can_request_again=0, expiring_soon=0)
    pending = []
    for entry in entries:
        c = entry.confirmation
        stats[c.status] += 1
        stats["reversed"] += int(c.reversed)
        stats["can_reverse"] += int(entry.can_reverse)
        stats["can_request_again"] += int(entry.can_request_again)
        expires_at = pending_expires_at(c)
        if expires_at is None:
            continue
        if expires_at - now <= EXPIRING_SOON:
            stats["expiring_soon"] += 1
        pending.append({
            "id": c.id,
            "expires_at": expires_at,
            "is_expired": expires_at <= now,
            "time_left": time_until(now, expires_at),
        })
    stats["pending_expiry"] = pending
    return stats
