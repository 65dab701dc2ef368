"""
Creation and owner-driven lifecycle of listings, standing requests and
notification subscriptions.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence, Tuple

import pytz
from sqlalchemy import func

from config import LISTING_CLOSE_AFTER, REQUEST_TTL, DEFAULT_SEARCH_RADIUS_MILES
from criteria import DateCriteria, last_day, to_columns
from errors import ForbiddenError, NotFoundError, StateError, ValidationError
from locations import Place
from models import (
    Listing, StandingRequest, NotificationSubscription, Confirmation, NotificationRecord,
    LISTING_KINDS, OPEN, CLOSED, PENDING, REJECTED, ROLE_DRIVER, ROLE_PASSENGER, RIDE_MATCH, TRIP_MATCH,
    as_utc, utcnow,
)

logger = logging.getLogger(__name__)

MAX_STOPS = 3
EDITABLE_FIELDS = ("price", "currency", "negotiable", "departure_timezone")


def _check_kind(kind: str):
    if kind not in LISTING_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(LISTING_KINDS)}")


def _check_place(place: Optional[Place], label: str):
    if place is None or not (place.address or "").strip():
        raise ValidationError(f"{label} location is required")


def _check_radius(radius: float, unit: str):
    if radius is None or radius < 0:
        raise ValidationError("search radius must be a non-negative number")
    if unit not in ("mi", "km"):
        raise ValidationError("radius unit must be 'mi' or 'km'")


def _zone(name: str):
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"unknown timezone {name!r}")


def resolve_departure(departure_at: datetime, departure_timezone: Optional[str] = None) -> Tuple[datetime, date]:
    """UTC instant and local calendar day of a departure.

    An aware datetime carries its own offset. A naive one is wall-clock time in
    departure_timezone when that is given, otherwise UTC.
    """
    if departure_at.tzinfo is None and departure_timezone:
        departure_at = _zone(departure_timezone).localize(departure_at)
    return as_utc(departure_at), departure_at.date()


def local_day(utc_departure: datetime, departure_timezone: Optional[str] = None) -> date:
    if not departure_timezone:
        return utc_departure.date()
    return pytz.utc.localize(utc_departure).astimezone(_zone(departure_timezone)).date()


def get_listing(session, listing_id: int) -> Listing:
    listing = session.get(Listing, listing_id)
    if not listing:
        raise NotFoundError("listing not found")
    return listing


def create_listing(session, owner_id: int, kind: str, origin: Place, destination: Place,
                   departure_at: datetime, total_seats: int = 1, stops: Sequence[Place] = (),
                   price: Optional[float] = None, currency: str = "USD", negotiable: bool = False,
                   departure_timezone: Optional[str] = None) -> Listing:
    _check_kind(kind)
    _check_place(origin, "origin")
    _check_place(destination, "destination")
    if len(stops) > MAX_STOPS:
        raise ValidationError(f"a listing has at most {MAX_STOPS} intermediate stops")
    if total_seats is None or total_seats < 1:
        raise ValidationError("total_seats must be at least 1")
    if price is not None and price < 0:
        raise ValidationError("price must not be negative")
    departure_utc, departure_date = resolve_departure(departure_at, departure_timezone)

    listing = Listing(
        owner_id=owner_id,
        kind=kind,
        origin=origin.address,
        origin_lat=origin.latitude,
        origin_lng=origin.longitude,
        destination=destination.address,
        dest_lat=destination.latitude,
        dest_lng=destination.longitude,
        stops=[s.to_dict() for s in stops],
        departure_at=departure_utc,
        departure_timezone=departure_timezone,
        departure_date=departure_date,
        price=price,
        currency=currency,
        negotiable=negotiable,
        total_seats=total_seats,
        seats_available=total_seats,
    )
    session.add(listing)
    session.commit()
    session.refresh(listing)
    logger.info("listing %s posted by user %s (%s)", listing.id, owner_id, kind)
    return listing


def edit_listing(session, listing_id: int, actor_id: int, origin: Optional[Place] = None,
                 destination: Optional[Place] = None, departure_at: Optional[datetime] = None,
                 stops: Optional[Sequence[Place]] = None, total_seats: Optional[int] = None,
                 **changes) -> Listing:
    """Owner edit. Changing total_seats shifts seats_available by the same delta."""
    listing = get_listing(session, listing_id)
    if listing.owner_id != actor_id:
        raise ForbiddenError("only the owner can edit a listing")
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"cannot edit {', '.join(sorted(unknown))}")

    if origin is not None:
        _check_place(origin, "origin")
        listing.origin, listing.origin_lat, listing.origin_lng = origin.address, origin.latitude, origin.longitude
    if destination is not None:
        _check_place(destination, "destination")
        listing.destination, listing.dest_lat, listing.dest_lng = (
            destination.address, destination.latitude, destination.longitude)
    if stops is not None:
        if len(stops) > MAX_STOPS:
            raise ValidationError(f"a listing has at most {MAX_STOPS} intermediate stops")
        listing.stops = [s.to_dict() for s in stops]
    for name, value in changes.items():
        setattr(listing, name, value)
    if departure_at is not None:
        listing.departure_at, listing.departure_date = resolve_departure(departure_at, listing.departure_timezone)
    elif "departure_timezone" in changes:
        listing.departure_date = local_day(listing.departure_at, listing.departure_timezone)

    if total_seats is not None and total_seats != listing.total_seats:
        if total_seats < 1:
            raise ValidationError("total_seats must be at least 1")
        delta = total_seats - listing.total_seats
        # conditional on the counters we read, so a concurrent accept cannot be lost
        updated = session.query(Listing).filter(
            Listing.id == listing.id,
            Listing.total_seats == listing.total_seats,
            Listing.seats_available + delta >= 0,
        ).update({
            Listing.total_seats: Listing.total_seats + delta,
            Listing.seats_available: Listing.seats_available + delta,
        }, synchronize_session=False)
        if not updated:
            session.rollback()
            raise StateError("seats already committed exceed the new total")

    session.add(listing)
    session.commit()
    session.refresh(listing)
    return listing


def close_listing(session, listing_id: int, actor_id: int, reason: Optional[str] = None,
                  now: Optional[datetime] = None) -> Listing:
    """Close a listing to new enquiries and reject every pending confirmation on it."""
    now = now or utcnow()
    listing = get_listing(session, listing_id)
    if listing.owner_id != actor_id:
        raise ForbiddenError("you can only close your own listings")
    if listing.status == CLOSED:
        raise StateError("listing is already closed")
    listing.status = CLOSED
    listing.closed_at = now
    listing.closed_reason = reason
    session.add(listing)
    rejected = session.query(Confirmation).filter(
        Confirmation.listing_id == listing.id,
        Confirmation.status == PENDING,
    ).update({
        Confirmation.status: REJECTED,
        Confirmation.confirmed_at: now,
        Confirmation.updated_at: now,
    }, synchronize_session=False)
    session.commit()
    session.refresh(listing)
    logger.info("listing %s closed by owner, %s pending confirmations rejected", listing.id, rejected)
    return listing


def reopen_listing(session, listing_id: int, actor_id: int, now: Optional[datetime] = None) -> Listing:
    now = now or utcnow()
    listing = get_listing(session, listing_id)
    if listing.owner_id != actor_id:
        raise ForbiddenError("you can only reopen your own listings")
    if listing.status != CLOSED:
        raise StateError("listing is not closed")
    if listing.departure_at <= now:
        raise StateError("cannot reopen a listing that has already departed")
    listing.status = OPEN
    listing.closed_at = None
    listing.closed_reason = None
    session.add(listing)
    session.commit()
    session.refresh(listing)
    return listing


def close_departed_listings(session, now: Optional[datetime] = None) -> List[int]:
    """Close open listings that departed more than LISTING_CLOSE_AFTER ago. Returns closed ids."""
    now = now or utcnow()
    cutoff = now - LISTING_CLOSE_AFTER
    ids = [row.id for row in session.query(Listing.id).filter(
        Listing.status == OPEN, Listing.departure_at < cutoff).all()]
    closed = []
    for listing_id in ids:
        try:
            updated = session.query(Listing).filter(
                Listing.id == listing_id, Listing.status == OPEN,
            ).update({
                Listing.status: CLOSED,
                Listing.closed_at: now,
                Listing.closed_reason: "departed",
            }, synchronize_session=False)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("failed to close departed listing %s", listing_id)
            continue
        if updated:
            closed.append(listing_id)
    return closed


def _criteria_columns(kind: str, origin: Place, destination: Place, dates: DateCriteria,
                      radius: float, unit: str) -> dict:
    _check_kind(kind)
    _check_place(origin, "origin")
    _check_place(destination, "destination")
    _check_radius(radius, unit)
    if dates is None:
        raise ValidationError("a date, a set of dates or a month is required")
    columns = to_columns(dates)
    columns.update(
        kind=kind,
        origin=origin.address,
        origin_lat=origin.latitude,
        origin_lng=origin.longitude,
        destination=destination.address,
        dest_lat=destination.latitude,
        dest_lng=destination.longitude,
        search_radius=radius,
        radius_unit=unit,
    )
    return columns


def create_standing_request(session, owner_id: int, kind: str, origin: Place, destination: Place,
                            dates: DateCriteria, time_preference: Optional[str] = None,
                            radius: float = DEFAULT_SEARCH_RADIUS_MILES, unit: str = "mi",
                            notes: Optional[str] = None, expires_at: Optional[datetime] = None,
                            now: Optional[datetime] = None) -> StandingRequest:
    now = now or utcnow()
    request = StandingRequest(
        owner_id=owner_id,
        time_preference=time_preference,
        notes=notes,
        created_at=now,
        expires_at=as_utc(expires_at) if expires_at else now + REQUEST_TTL,
        **_criteria_columns(kind, origin, destination, dates, radius, unit),
    )
    session.add(request)
    session.commit()
    session.refresh(request)
    logger.info("standing %s request %s created by user %s", kind, request.id, owner_id)
    return request


def create_subscription(session, owner_id: int, kind: str, origin: Place, destination: Place,
                        dates: DateCriteria, role: str = ROLE_PASSENGER,
                        radius: float = DEFAULT_SEARCH_RADIUS_MILES, unit: str = "mi",
                        expires_at: Optional[datetime] = None,
                        now: Optional[datetime] = None) -> NotificationSubscription:
    if role not in (ROLE_PASSENGER, ROLE_DRIVER):
        raise ValidationError("role must be 'passenger' or 'driver'")
    now = now or utcnow()
    subscription = NotificationSubscription(
        owner_id=owner_id,
        role=role,
        created_at=now,
        expires_at=as_utc(expires_at) if expires_at else now + REQUEST_TTL,
        **_criteria_columns(kind, origin, destination, dates, radius, unit),
    )
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


def is_expired(row, now: datetime) -> bool:
    """A request or subscription is stale once past expires_at or past its last requested day."""
    if row.expires_at is not None and row.expires_at <= now:
        return True
    end_of_last_day = datetime.combine(last_day(row.dates), time.min) + timedelta(days=1)
    return end_of_last_day <= now


def deactivate_expired_requests(session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    count = 0
    for model in (StandingRequest, NotificationSubscription):
        for row in session.query(model).filter(model.is_active == True).all():  # noqa: E712
            try:
                if not is_expired(row, now):
                    continue
                updated = session.query(model).filter(
                    model.id == row.id, model.is_active == True,  # noqa: E712
                ).update({model.is_active: False}, synchronize_session=False)
                session.commit()
                count += updated
            except Exception:
                session.rollback()
                logger.exception("failed to deactivate %s %s", model.__name__, row.id)
    return count


def closure_history(session, owner_id: int) -> List[Listing]:
    """The owner's closed listings, most recently closed first."""
    return session.query(Listing).filter(
        Listing.owner_id == owner_id,
        Listing.status == CLOSED,
    ).order_by(Listing.closed_at.desc(), Listing.id.desc()).all()


# ────────────────────────── owner management of requests ────────────────────

def _owned(session, model, row_id: int, actor_id: int):
    row = session.get(model, row_id)
    if not row:
        raise NotFoundError(f"{model.__name__} {row_id} not found")
    if row.owner_id != actor_id:
        raise ForbiddenError("you can only manage your own requests")
    return row


def _list_owned(session, model, owner_id: int, active_only: bool = False):
    query = session.query(model).filter(model.owner_id == owner_id)
    if active_only:
        query = query.filter(model.is_active == True)  # noqa: E712
    return query.order_by(model.created_at.desc(), model.id.desc()).all()


def _edit_criteria(session, row, origin: Optional[Place], destination: Optional[Place],
                   dates: Optional[DateCriteria], radius: Optional[float], unit: Optional[str],
                   expires_at: Optional[datetime], extra: dict):
    columns = _criteria_columns(
        row.kind,
        origin or row.origin_place,
        destination or row.destination_place,
        dates or row.dates,
        row.search_radius if radius is None else radius,
        unit or row.radius_unit,
    )
    for name, value in columns.items():
        setattr(row, name, value)
    for name, value in extra.items():
        setattr(row, name, value)
    if expires_at is not None:
        row.expires_at = as_utc(expires_at)
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def list_standing_requests(session, owner_id: int, active_only: bool = False) -> List[StandingRequest]:
    return _list_owned(session, StandingRequest, owner_id, active_only)


def edit_standing_request(session, request_id: int, actor_id: int, origin: Optional[Place] = None,
                          destination: Optional[Place] = None, dates: Optional[DateCriteria] = None,
                          radius: Optional[float] = None, unit: Optional[str] = None,
                          time_preference: Optional[str] = None, notes: Optional[str] = None,
                          expires_at: Optional[datetime] = None) -> StandingRequest:
    """Owner edit of route, dates, radius or notes. Kind and owner never change."""
    request = _owned(session, StandingRequest, request_id, actor_id)
    extra = {k: v for k, v in (("time_preference", time_preference), ("notes", notes)) if v is not None}
    request = _edit_criteria(session, request, origin, destination, dates, radius, unit, expires_at, extra)
    logger.info("standing request %s edited by user %s", request.id, actor_id)
    return request


def delete_standing_request(session, request_id: int, actor_id: int) -> None:
    request = _owned(session, StandingRequest, request_id, actor_id)
    session.delete(request)
    session.commit()
    logger.info("standing request %s deleted by user %s", request_id, actor_id)


def list_subscriptions(session, owner_id: int, active_only: bool = False) -> List[NotificationSubscription]:
    return _list_owned(session, NotificationSubscription, owner_id, active_only)


def edit_subscription(session, subscription_id: int, actor_id: int, origin: Optional[Place] = None,
                      destination: Optional[Place] = None, dates: Optional[DateCriteria] = None,
                      radius: Optional[float] = None, unit: Optional[str] = None,
                      role: Optional[str] = None, expires_at: Optional[datetime] = None) -> NotificationSubscription:
    subscription = _owned(session, NotificationSubscription, subscription_id, actor_id)
    extra = {}
    if role is not None:
        if role not in (ROLE_PASSENGER, ROLE_DRIVER):
            raise ValidationError("role must be 'passenger' or 'driver'")
        extra["role"] = role
    return _edit_criteria(session, subscription, origin, destination, dates, radius, unit, expires_at, extra)


def delete_subscription(session, subscription_id: int, actor_id: int) -> None:
    subscription = _owned(session, NotificationSubscription, subscription_id, actor_id)
    session.delete(subscription)
    session.commit()


def request_stats(session, owner_id: int) -> dict:
    active = session.query(func.count(StandingRequest.id)).filter(
        StandingRequest.owner_id == owner_id, StandingRequest.is_active == True,  # noqa: E712
    ).scalar()
    total = session.query(func.count(StandingRequest.id)).filter(StandingRequest.owner_id == owner_id).scalar()
    matches = session.query(func.count(NotificationRecord.id)).filter(
        NotificationRecord.recipient_id == owner_id,
        NotificationRecord.notification_type.in_([RIDE_MATCH, TRIP_MATCH]),
    ).scalar()
    return {"active_requests": active, "total_requests": total, "matches_received": matches}
