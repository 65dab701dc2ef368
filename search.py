"""Listing search: date window, future-only, then origin/destination matching."""
from datetime import datetime
from typing import Iterable, List, Optional

from criteria import DateCriteria, contains, window
from errors import ValidationError
from locations import Place, FLEXIBLE, location_matches
from models import Listing, LISTING_KINDS, OPEN, utcnow


def search_listings(corpus: Iterable[Listing], origin: Optional[Place] = None,
                    destination: Optional[Place] = None, dates: Optional[DateCriteria] = None,
                    mode: str = FLEXIBLE, radius_miles: Optional[float] = None,
                    now: Optional[datetime] = None) -> List[Listing]:
    """Filter a listing corpus by date window, departure in the future, and location.

    Origin and destination criteria are independently optional; when both are
    given both must match. Results come back in ascending departure order.
    """
    if radius_miles is not None and radius_miles < 0:
        raise ValidationError("radius must not be negative")
    now = now or utcnow()

    candidates = [l for l in corpus if l.departure_at >= now]
    if dates is not None:
        candidates = [l for l in candidates if contains(dates, l.local_date)]

    if origin is not None and not origin.address and not origin.has_coordinates:
        origin = None
    if destination is not None and not destination.address and not destination.has_coordinates:
        destination = None

    if origin is not None or destination is not None:
        kept = []
        for listing in candidates:
            stops = listing.waypoints
            if origin is not None and not location_matches(
                    listing.origin_place, stops, origin, mode, radius_miles):
                continue
            if destination is not None and not location_matches(
                    listing.destination_place, stops, destination, mode, radius_miles):
                continue
            kept.append(listing)
        candidates = kept

    return sorted(candidates, key=lambda l: l.departure_at)


def search(session, kind: str, origin: Optional[Place] = None, destination: Optional[Place] = None,
           dates: Optional[DateCriteria] = None, mode: str = FLEXIBLE,
           radius_miles: Optional[float] = None, now: Optional[datetime] = None) -> List[Listing]:
    """Load open listings of one kind and run search_listings over them."""
    if kind not in LISTING_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(LISTING_KINDS)}")
    now = now or utcnow()
    query = session.query(Listing).filter(
        Listing.kind == kind,
        Listing.status == OPEN,
        Listing.departure_at >= now,
    )
    if dates is not None:
        # date criteria name local calendar days
        start, end = window(dates)
        query = query.filter(Listing.departure_date >= start.date(), Listing.departure_date < end.date())
    return search_listings(query.all(), origin, destination, dates, mode, radius_miles, now)
