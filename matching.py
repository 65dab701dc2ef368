"""
Bidirectional matching between listings and standing requests.

A listing satisfies a request when both are the same kind, belong to
different users, the listing is open and not yet departed, the request's
dates include the departure day, and both ends of the route match. Trips are
airport-to-airport and match strictly; rides match flexibly within the
request's radius, including the ride's intermediate stops.

The same predicate drives both directions, so a request found for a new
listing always finds that listing back.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from criteria import contains, overlaps
from geo import to_miles
from listings import is_expired
from locations import FLEXIBLE, STRICT, location_matches
from models import (
    Listing, StandingRequest, NotificationSubscription,
    TRIP, OPEN, ROLE_DRIVER, ROLE_PASSENGER,
    RIDE_MATCH, TRIP_MATCH, RIDE_REQUEST_ALERT, TRIP_REQUEST_ALERT, HIGH, MEDIUM,
    utcnow,
)

Criteria = Union[StandingRequest, NotificationSubscription]


@dataclass(frozen=True)
class Match:
    """One notification-worthy pairing, addressed to one recipient."""
    recipient_id: int
    notification_type: str
    priority: str
    related_id: int
    related_user_id: int
    title: str = ""
    message: str = ""

    @property
    def dedup_key(self):
        return (self.recipient_id, self.related_id, self.notification_type)


def _mode(kind: str) -> str:
    return STRICT if kind == TRIP else FLEXIBLE


def _is_live(criteria: Criteria, now: datetime) -> bool:
    return criteria.is_active and not is_expired(criteria, now)


def listing_satisfies_request(listing: Listing, request: Criteria, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if listing.kind != request.kind or listing.owner_id == request.owner_id:
        return False
    if listing.status != OPEN or listing.departure_at < now:
        return False
    if not _is_live(request, now):
        return False
    if not contains(request.dates, listing.local_date):
        return False
    mode = _mode(listing.kind)
    radius = to_miles(request.search_radius, request.radius_unit)
    stops = listing.waypoints
    return (location_matches(listing.origin_place, stops, request.origin_place, mode, radius)
            and location_matches(listing.destination_place, stops, request.destination_place, mode, radius))


def request_satisfies_subscription(request: StandingRequest, subscription: NotificationSubscription,
                                   now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if request.kind != subscription.kind or request.owner_id == subscription.owner_id:
        return False
    if not (_is_live(request, now) and _is_live(subscription, now)):
        return False
    if not overlaps(request.dates, subscription.dates):
        return False
    mode = _mode(request.kind)
    radius = to_miles(subscription.search_radius, subscription.radius_unit)
    return (location_matches(request.origin_place, [], subscription.origin_place, mode, radius)
            and location_matches(request.destination_place, [], subscription.destination_place, mode, radius))


def on_listing_posted(session, listing: Listing, now: Optional[datetime] = None) -> List[StandingRequest]:
    """Active standing requests the new (or edited) listing satisfies."""
    now = now or utcnow()
    candidates = session.query(StandingRequest).filter(
        StandingRequest.kind == listing.kind,
        StandingRequest.is_active == True,  # noqa: E712
        StandingRequest.owner_id != listing.owner_id,
    ).order_by(StandingRequest.created_at).all()
    return [r for r in candidates if listing_satisfies_request(listing, r, now)]


def on_request_posted(session, request: StandingRequest, now: Optional[datetime] = None) -> List[Listing]:
    """Open listings that satisfy the new standing request, soonest departure first."""
    now = now or utcnow()
    candidates = session.query(Listing).filter(
        Listing.kind == request.kind,
        Listing.status == OPEN,
        Listing.departure_at >= now,
        Listing.owner_id != request.owner_id,
    ).order_by(Listing.departure_at).all()
    return [l for l in candidates if listing_satisfies_request(l, request, now)]


def subscriptions_for_listing(session, listing: Listing,
                              now: Optional[datetime] = None) -> List[NotificationSubscription]:
    now = now or utcnow()
    candidates = session.query(NotificationSubscription).filter(
        NotificationSubscription.kind == listing.kind,
        NotificationSubscription.role == ROLE_PASSENGER,
        NotificationSubscription.is_active == True,  # noqa: E712
    ).all()
    return [s for s in candidates if listing_satisfies_request(listing, s, now)]


def subscriptions_for_request(session, request: StandingRequest,
                              now: Optional[datetime] = None) -> List[NotificationSubscription]:
    now = now or utcnow()
    candidates = session.query(NotificationSubscription).filter(
        NotificationSubscription.kind == request.kind,
        NotificationSubscription.role == ROLE_DRIVER,
        NotificationSubscription.is_active == True,  # noqa: E712
    ).all()
    return [s for s in candidates if request_satisfies_subscription(request, s, now)]


def _describe_listing(listing: Listing) -> str:
    when = listing.departure_at.strftime("%a, %b %d at %H:%M")
    price = f"{listing.currency} {listing.price:g}" if listing.price else "free"
    return f"{listing.origin} → {listing.destination} on {when} ({price})"


def _describe_request(request: StandingRequest) -> str:
    if request.date_type == "specific_date":
        when = f"on {request.specific_date.isoformat()}"
    elif request.date_type == "month":
        when = f"in {request.month}"
    else:
        when = "on multiple dates"
    return f"{request.origin} → {request.destination} {when}"


def matches_for_listing(session, listing: Listing, now: Optional[datetime] = None) -> List[Match]:
    """Recipients to alert about a new listing: direct requests first, then subscriptions."""
    kind_type = TRIP_MATCH if listing.kind == TRIP else RIDE_MATCH
    title = "Matching trip found" if listing.kind == TRIP else "Matching ride found"
    message = _describe_listing(listing)
    matches = [
        Match(r.owner_id, kind_type, HIGH, listing.id, listing.owner_id, title, message)
        for r in on_listing_posted(session, listing, now)
    ]
    matches += [
        Match(s.owner_id, kind_type, MEDIUM, listing.id, listing.owner_id, title, message)
        for s in subscriptions_for_listing(session, listing, now)
    ]
    return matches


def matches_for_request(session, request: StandingRequest, now: Optional[datetime] = None) -> List[Match]:
    """Recipients to alert about a new request: owners of matching listings, then subscribers."""
    kind_type = TRIP_REQUEST_ALERT if request.kind == TRIP else RIDE_REQUEST_ALERT
    title = "Trip request alert" if request.kind == TRIP else "Ride request alert"
    message = _describe_request(request)
    matches = [
        Match(l.owner_id, kind_type, HIGH, request.id, request.owner_id, title, message)
        for l in on_request_posted(session, request, now)
    ]
    matches += [
        Match(s.owner_id, kind_type, MEDIUM, request.id, request.owner_id, title, message)
        for s in subscriptions_for_request(session, request, now)
    ]
    return matches
