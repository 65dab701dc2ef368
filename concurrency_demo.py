"""Concurrency demo: ten passengers race for a three-seat ride.
The owner accepts all ten requests at once against the ASGI app; exactly three
accepts succeed and the rest answer 409 (seat no longer available).
This runs in-process and doesn't require the server to be started separately.
Run: python concurrency_demo.py
"""
import asyncio
from datetime import timedelta
from db import init_db, get_session
from listings import create_listing
from locations import Place
from main import app
from models import RIDE, utcnow
import confirmations
import httpx


async def run():
    init_db()
    session = get_session()
    ride = create_listing(session, owner_id=1, kind=RIDE, origin=Place("Paris, France"),
                          destination=Place("Lyon"), departure_at=utcnow() + timedelta(days=2),
                          total_seats=3)
    pending = [confirmations.request_to_join(session, ride.id, requester_id=100 + i) for i in range(10)]
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post(f"/confirmations/{c.id}/accept", json={"actor_id": 1}) for c in pending]
        res = await asyncio.gather(*tasks)
        for r in res:
            print(r.status_code, r.json())
    session.refresh(ride)
    print("seats_available:", ride.seats_available)


if __name__ == "__main__":
    asyncio.run(run())
