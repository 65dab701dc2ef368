from datetime import timedelta
from db import init_db, get_session
from criteria import ExactDate, Month
from listings import create_listing, create_standing_request
from locations import Place
from models import RIDE, TRIP, utcnow
import random

CITIES = [
    Place("New York, NY", 40.7128, -74.0060),
    Place("Newark, NJ", 40.7357, -74.1724),
    Place("Philadelphia, PA", 39.9526, -75.1652),
    Place("Boston, MA", 42.3601, -71.0589),
    Place("Washington, DC", 38.9072, -77.0369),
]
AIRPORTS = ["JFK", "EWR", "LGA", "BOS", "IAD"]


def seed(now=None):
    init_db()
    now = now or utcnow()
    session = get_session()
    # rides between nearby cities over the next three weeks
    for i in range(1, 21):
        origin, destination = random.sample(CITIES, 2)
        create_listing(
            session,
            owner_id=i,
            kind=RIDE,
            origin=origin,
            destination=destination,
            departure_at=now + timedelta(days=random.randint(1, 21), hours=random.randint(0, 23)),
            total_seats=random.choice([1, 2, 3, 4]),
            price=float(random.randint(10, 60)),
        )
    # airport companion trips
    for i in range(21, 31):
        leaving, arriving = random.sample(AIRPORTS, 2)
        create_listing(
            session,
            owner_id=i,
            kind=TRIP,
            origin=Place(leaving),
            destination=Place(arriving),
            departure_at=now + timedelta(days=random.randint(1, 30)),
        )
    # passengers waiting for a ride on a given day or month
    for i in range(31, 51):
        origin, destination = random.sample(CITIES, 2)
        day = (now + timedelta(days=random.randint(1, 21))).date()
        dates = ExactDate(day) if i % 2 else Month(day.year, day.month)
        create_standing_request(
            session,
            owner_id=i,
            kind=RIDE,
            origin=origin,
            destination=destination,
            dates=dates,
            radius=25,
            now=now,
        )
    print("Seeded sample data")


if __name__ == "__main__":
    seed()
