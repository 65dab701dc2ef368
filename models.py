from typing import Optional, List
from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint, Column, JSON, UniqueConstraint
from datetime import date, datetime, timezone

from criteria import DateCriteria, parse_date_criteria
from locations import Place

TRIP = "trip"
RIDE = "ride"
LISTING_KINDS = (TRIP, RIDE)

OPEN = "open"
CLOSED = "closed"

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
CANCELLED = "cancelled"
EXPIRED = "expired"
TERMINAL_STATUSES = (REJECTED, EXPIRED)

ROLE_PASSENGER = "passenger"  # alerted about new listings
ROLE_DRIVER = "driver"  # alerted about new requests

RIDE_MATCH = "ride_match"
TRIP_MATCH = "trip_match"
RIDE_REQUEST_ALERT = "ride_request_alert"
TRIP_REQUEST_ALERT = "trip_request_alert"

HIGH = "high"
MEDIUM = "medium"
LOW = "low"


def utcnow() -> datetime:
    """Naive UTC; every stored timestamp is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


class Listing(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("seats_available >= 0 AND seats_available <= total_seats", name="ck_listing_seats"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    kind: str = Field(index=True)  # trip, ride
    origin: str
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    destination: str
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    stops: List[dict] = Field(default_factory=list, sa_column=Column(JSON))  # [{address, latitude, longitude}]
    departure_at: datetime = Field(index=True)
    departure_timezone: Optional[str] = None  # IANA name, e.g. America/Los_Angeles
    departure_date: Optional[date] = Field(default=None, index=True)  # local calendar day
    price: Optional[float] = None
    currency: str = "USD"
    negotiable: bool = False
    total_seats: int = 1
    seats_available: int = 1
    status: str = Field(default=OPEN, index=True)  # open, closed
    closed_at: Optional[datetime] = None
    closed_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def origin_place(self) -> Place:
        return Place(self.origin, self.origin_lat, self.origin_lng)

    @property
    def destination_place(self) -> Place:
        return Place(self.destination, self.dest_lat, self.dest_lng)

    @property
    def local_date(self) -> date:
        """Calendar day of departure where the ride leaves; date criteria compare against this."""
        return self.departure_date or self.departure_at.date()

    @property
    def waypoints(self) -> List[Place]:
        return [Place.from_dict(s) for s in (self.stops or [])]


class _Criteria:
    """Location/date columns shared by standing requests and subscriptions."""

    @property
    def origin_place(self) -> Place:
        return Place(self.origin, self.origin_lat, self.origin_lng)

    @property
    def destination_place(self) -> Place:
        return Place(self.destination, self.dest_lat, self.dest_lng)

    @property
    def dates(self) -> DateCriteria:
        return parse_date_criteria(self.date_type, self.specific_date, self.multiple_dates, self.month)


class StandingRequest(_Criteria, SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    kind: str = Field(index=True)
    origin: str
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    destination: str
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    date_type: str  # specific_date, multiple_dates, month
    specific_date: Optional[date] = None
    multiple_dates: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    month: Optional[str] = None  # YYYY-MM
    time_preference: Optional[str] = None
    search_radius: float = 25.0
    radius_unit: str = "mi"  # mi, km
    notes: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


class NotificationSubscription(_Criteria, SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    kind: str = Field(index=True)
    role: str = Field(default=ROLE_PASSENGER, index=True)  # passenger, driver
    origin: str
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    destination: str
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    date_type: str
    specific_date: Optional[date] = None
    multiple_dates: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    month: Optional[str] = None
    search_radius: float = 25.0
    radius_unit: str = "mi"
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


class Confirmation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: int = Field(foreign_key="listing.id", index=True)
    listing_kind: str
    owner_id: int = Field(index=True)
    requester_id: int = Field(index=True)
    status: str = Field(default=PENDING, index=True)  # pending, accepted, rejected, cancelled, expired
    seats_requested: int = 1
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    status_before_cancel: Optional[str] = None
    reversed: bool = False
    request_count: int = 1


class NotificationRecord(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("recipient_id", "related_id", "notification_type", name="uq_notification_dedup"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: int = Field(index=True)
    notification_type: str  # ride_match, trip_match, ride_request_alert, trip_request_alert
    priority: str = MEDIUM  # high, medium, low
    title: str = ""
    message: str = ""
    is_read: bool = Field(default=False, index=True)
    related_user_id: Optional[int] = None
    related_id: int
    created_at: datetime = Field(default_factory=utcnow)
