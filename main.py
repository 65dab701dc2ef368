from contextlib import asynccontextmanager
from datetime import datetime
import logging

from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.requests import Request
from starlette.routing import Route

import config
import confirmations
import listings
from criteria import Month, parse_date_criteria
from db import init_db, get_session
from errors import TravelMatchError, ValidationError
from geo import to_miles
from locations import Place, FLEXIBLE, STRICT
from notifications import announce_listing, announce_request, list_notifications, mark_read, \
    delete_notification, record_payload, close_transport
from scheduler import build_scheduler, run_expiry_sweep
from search import search

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


def _listing_out(l):
    return {
        "id": l.id,
        "owner_id": l.owner_id,
        "kind": l.kind,
        "origin": l.origin_place.to_dict(),
        "destination": l.destination_place.to_dict(),
        "stops": l.stops or [],
        "departure_at": _iso(l.departure_at),
        "departure_timezone": l.departure_timezone,
        "departure_date": _iso(l.local_date),
        "price": l.price,
        "currency": l.currency,
        "negotiable": l.negotiable,
        "total_seats": l.total_seats,
        "seats_available": l.seats_available,
        "status": l.status,
        "closed_at": _iso(l.closed_at),
        "closed_reason": l.closed_reason,
    }


def _request_out(r):
    return {
        "id": r.id,
        "owner_id": r.owner_id,
        "kind": r.kind,
        "origin": r.origin_place.to_dict(),
        "destination": r.destination_place.to_dict(),
        "date_type": r.date_type,
        "specific_date": _iso(r.specific_date),
        "multiple_dates": r.multiple_dates,
        "month": r.month,
        "search_radius": r.search_radius,
        "radius_unit": r.radius_unit,
        "is_active": r.is_active,
        "expires_at": _iso(r.expires_at),
    }


def _subscription_out(s):
    out = _request_out(s)
    out["role"] = s.role
    return out


def _confirmation_out(c):
    return {
        "id": c.id,
        "listing_id": c.listing_id,
        "listing_kind": c.listing_kind,
        "owner_id": c.owner_id,
        "requester_id": c.requester_id,
        "status": c.status,
        "seats_requested": c.seats_requested,
        "created_at": _iso(c.created_at),
        "confirmed_at": _iso(c.confirmed_at),
        "cancelled_at": _iso(c.cancelled_at),
        "reversed": c.reversed,
    }


def _place(payload: dict, key: str, required: bool = True):
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"missing {key}")
        return None
    if isinstance(value, str):
        return Place(value)
    return Place.from_dict(value)


def _datetime(value, key: str) -> datetime:
    if not value:
        raise ValidationError(f"missing {key}")
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid {key}: {value!r}")


def _int(value, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"missing or invalid {key}")


def _float(value):
    if value in (None, ""):
        return None
    try:
        return float(value)
    except ValueError:
        raise ValidationError(f"invalid number {value!r}")


def _dates(payload: dict):
    return parse_date_criteria(payload.get("date_type"), payload.get("specific_date"),
                               payload.get("multiple_dates"), payload.get("month"))


def _criteria_changes(payload: dict) -> dict:
    """Optional route/date/radius fields of a request or subscription edit."""
    return {
        "origin": _place(payload, "origin", required=False),
        "destination": _place(payload, "destination", required=False),
        "dates": _dates(payload),
        "radius": payload.get("search_radius"),
        "unit": payload.get("radius_unit"),
        "expires_at": _datetime(payload["expires_at"], "expires_at") if payload.get("expires_at") else None,
    }


async def handle_domain_error(request: Request, exc: TravelMatchError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


async def search_listings(request: Request):
    q = request.query_params
    origin = destination = None
    if q.get("from") or q.get("from_lat"):
        origin = Place(q.get("from", ""), _float(q.get("from_lat")), _float(q.get("from_lng")))
    if q.get("to") or q.get("to_lat"):
        destination = Place(q.get("to", ""), _float(q.get("to_lat")), _float(q.get("to_lng")))
    dates = None
    if q.get("month"):
        dates = Month.parse(q["month"])
    elif q.get("date"):
        dates = parse_date_criteria("specific_date", q["date"])
    mode = q.get("mode", FLEXIBLE)
    if mode not in (FLEXIBLE, STRICT):
        raise ValidationError("mode must be 'flexible' or 'strict'")
    radius = None
    if q.get("radius"):
        radius = to_miles(_float(q["radius"]), q.get("unit", "mi"))
    with get_session() as session:
        found = search(session, q.get("kind", "ride"), origin, destination, dates, mode, radius)
        return JSONResponse([_listing_out(l) for l in found])


async def create_listing(request: Request):
    payload = await request.json()
    with get_session() as session:
        listing = listings.create_listing(
            session,
            owner_id=_int(payload.get("owner_id"), "owner_id"),
            kind=payload.get("kind", "ride"),
            origin=_place(payload, "origin"),
            destination=_place(payload, "destination"),
            departure_at=_datetime(payload.get("departure_at"), "departure_at"),
            total_seats=payload.get("total_seats", 1),
            stops=[Place.from_dict(s) for s in payload.get("stops", [])],
            price=payload.get("price"),
            currency=payload.get("currency", "USD"),
            negotiable=payload.get("negotiable", False),
            departure_timezone=payload.get("departure_timezone"),
        )
        notified = announce_listing(session, listing)
        return JSONResponse({"listing": _listing_out(listing), "notified": notified}, status_code=201)


async def edit_listing(request: Request):
    listing_id = int(request.path_params["listing_id"])
    payload = await request.json()
    actor_id = _int(payload.pop("actor_id", None), "actor_id")
    changes = {k: v for k, v in payload.items() if k in listings.EDITABLE_FIELDS}
    with get_session() as session:
        listing = listings.edit_listing(
            session, listing_id, actor_id,
            origin=_place(payload, "origin", required=False),
            destination=_place(payload, "destination", required=False),
            departure_at=_datetime(payload["departure_at"], "departure_at") if "departure_at" in payload else None,
            stops=[Place.from_dict(s) for s in payload["stops"]] if "stops" in payload else None,
            total_seats=payload.get("total_seats"),
            **changes,
        )
        notified = announce_listing(session, listing)
        return JSONResponse({"listing": _listing_out(listing), "notified": notified})


async def close_listing(request: Request):
    listing_id = int(request.path_params["listing_id"])
    payload = await request.json()
    with get_session() as session:
        listing = listings.close_listing(session, listing_id, _int(payload.get("actor_id"), "actor_id"),
                                         payload.get("reason"))
        return JSONResponse(_listing_out(listing))


async def reopen_listing(request: Request):
    listing_id = int(request.path_params["listing_id"])
    payload = await request.json()
    with get_session() as session:
        listing = listings.reopen_listing(session, listing_id, _int(payload.get("actor_id"), "actor_id"))
        return JSONResponse(_listing_out(listing))


async def create_request(request: Request):
    payload = await request.json()
    with get_session() as session:
        standing = listings.create_standing_request(
            session,
            owner_id=_int(payload.get("owner_id"), "owner_id"),
            kind=payload.get("kind", "ride"),
            origin=_place(payload, "origin"),
            destination=_place(payload, "destination"),
            dates=_dates(payload),
            time_preference=payload.get("time_preference"),
            radius=payload.get("search_radius", config.DEFAULT_SEARCH_RADIUS_MILES),
            unit=payload.get("radius_unit", "mi"),
            notes=payload.get("notes"),
        )
        notified = announce_request(session, standing)
        return JSONResponse({"request": _request_out(standing), "notified": notified}, status_code=201)


async def edit_request(request: Request):
    request_id = int(request.path_params["request_id"])
    payload = await request.json()
    with get_session() as session:
        standing = listings.edit_standing_request(
            session, request_id, _int(payload.get("actor_id"), "actor_id"),
            time_preference=payload.get("time_preference"),
            notes=payload.get("notes"),
            **_criteria_changes(payload),
        )
        notified = announce_request(session, standing)
        return JSONResponse({"request": _request_out(standing), "notified": notified})


async def remove_request(request: Request):
    request_id = int(request.path_params["request_id"])
    actor_id = _int(request.query_params.get("actor_id"), "actor_id")
    with get_session() as session:
        listings.delete_standing_request(session, request_id, actor_id)
    return Response(status_code=204)


async def create_subscription(request: Request):
    payload = await request.json()
    with get_session() as session:
        subscription = listings.create_subscription(
            session,
            owner_id=_int(payload.get("owner_id"), "owner_id"),
            kind=payload.get("kind", "ride"),
            origin=_place(payload, "origin"),
            destination=_place(payload, "destination"),
            dates=_dates(payload),
            role=payload.get("role", "passenger"),
            radius=payload.get("search_radius", config.DEFAULT_SEARCH_RADIUS_MILES),
            unit=payload.get("radius_unit", "mi"),
        )
        return JSONResponse(_subscription_out(subscription), status_code=201)


async def edit_subscription(request: Request):
    subscription_id = int(request.path_params["subscription_id"])
    payload = await request.json()
    with get_session() as session:
        subscription = listings.edit_subscription(
            session, subscription_id, _int(payload.get("actor_id"), "actor_id"),
            role=payload.get("role"),
            **_criteria_changes(payload),
        )
        return JSONResponse(_subscription_out(subscription))


async def remove_subscription(request: Request):
    subscription_id = int(request.path_params["subscription_id"])
    actor_id = _int(request.query_params.get("actor_id"), "actor_id")
    with get_session() as session:
        listings.delete_subscription(session, subscription_id, actor_id)
    return Response(status_code=204)


async def join_listing(request: Request):
    listing_id = int(request.path_params["listing_id"])
    payload = await request.json()
    with get_session() as session:
        confirmation = confirmations.request_to_join(
            session, listing_id, _int(payload.get("requester_id"), "requester_id"), payload.get("seats", 1))
        return JSONResponse(_confirmation_out(confirmation), status_code=201)


CONFIRMATION_ACTIONS = {
    "accept": confirmations.accept,
    "reject": confirmations.reject,
    "cancel": confirmations.cancel,
    "reverse": confirmations.reverse,
    "request-again": confirmations.request_again,
}


async def confirmation_action(request: Request):
    confirmation_id = int(request.path_params["confirmation_id"])
    action = CONFIRMATION_ACTIONS.get(request.path_params["action"])
    if action is None:
        return JSONResponse({"error": "unknown action"}, status_code=404)
    payload = await request.json()
    with get_session() as session:
        confirmation = action(session, confirmation_id, _int(payload.get("actor_id"), "actor_id"))
        return JSONResponse(_confirmation_out(confirmation))


async def user_confirmations(request: Request):
    user_id = int(request.path_params["user_id"])
    out = []
    with get_session() as session:
        for entry in confirmations.confirmation_history(session, user_id):
            row = _confirmation_out(entry.confirmation)
            row["can_reverse"] = entry.can_reverse
            row["can_request_again"] = entry.can_request_again
            row["expires_at"] = _iso(confirmations.pending_expires_at(entry.confirmation))
            out.append(row)
    return JSONResponse(out)


async def user_confirmation_stats(request: Request):
    user_id = int(request.path_params["user_id"])
    with get_session() as session:
        stats = confirmations.confirmation_stats(session, user_id)
    for row in stats["pending_expiry"]:
        row["expires_at"] = _iso(row["expires_at"])
    return JSONResponse(stats)


async def user_closures(request: Request):
    user_id = int(request.path_params["user_id"])
    with get_session() as session:
        return JSONResponse([_listing_out(l) for l in listings.closure_history(session, user_id)])


async def user_requests(request: Request):
    user_id = int(request.path_params["user_id"])
    active_only = request.query_params.get("active") in ("1", "true")
    with get_session() as session:
        rows = listings.list_standing_requests(session, user_id, active_only)
        return JSONResponse([_request_out(r) for r in rows])


async def user_request_stats(request: Request):
    user_id = int(request.path_params["user_id"])
    with get_session() as session:
        return JSONResponse(listings.request_stats(session, user_id))


async def user_subscriptions(request: Request):
    user_id = int(request.path_params["user_id"])
    active_only = request.query_params.get("active") in ("1", "true")
    with get_session() as session:
        rows = listings.list_subscriptions(session, user_id, active_only)
        return JSONResponse([_subscription_out(s) for s in rows])


async def user_notifications(request: Request):
    user_id = int(request.path_params["user_id"])
    unread_only = request.query_params.get("unread") in ("1", "true")
    with get_session() as session:
        return JSONResponse([record_payload(r) for r in list_notifications(session, user_id, unread_only)])


async def read_notification(request: Request):
    notification_id = int(request.path_params["notification_id"])
    payload = await request.json()
    with get_session() as session:
        record = mark_read(session, notification_id, _int(payload.get("recipient_id"), "recipient_id"))
        return JSONResponse(record_payload(record))


async def remove_notification(request: Request):
    notification_id = int(request.path_params["notification_id"])
    recipient_id = _int(request.query_params.get("recipient_id"), "recipient_id")
    with get_session() as session:
        delete_notification(session, notification_id, recipient_id)
    return Response(status_code=204)


async def trigger_sweep(request: Request):
    return JSONResponse(run_expiry_sweep())


@asynccontextmanager
async def lifespan(app):
    logging.basicConfig(level=config.LOG_LEVEL)
    init_db()
    scheduler = None
    if config.SWEEP_INTERVAL_SECONDS > 0:
        scheduler = build_scheduler(config.SWEEP_INTERVAL_SECONDS)
        scheduler.start()
        logger.info("expiry sweep scheduled every %ss", config.SWEEP_INTERVAL_SECONDS)
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
        close_transport()


routes = [
    Route("/listings/search", search_listings, methods=["GET"]),
    Route("/listings", create_listing, methods=["POST"]),
    Route("/listings/{listing_id:int}", edit_listing, methods=["PATCH"]),
    Route("/listings/{listing_id:int}/close", close_listing, methods=["POST"]),
    Route("/listings/{listing_id:int}/reopen", reopen_listing, methods=["POST"]),
    Route("/listings/{listing_id:int}/join", join_listing, methods=["POST"]),
    Route("/requests", create_request, methods=["POST"]),
    Route("/requests/{request_id:int}", edit_request, methods=["PATCH"]),
    Route("/requests/{request_id:int}", remove_request, methods=["DELETE"]),
    Route("/subscriptions", create_subscription, methods=["POST"]),
    Route("/subscriptions/{subscription_id:int}", edit_subscription, methods=["PATCH"]),
    Route("/subscriptions/{subscription_id:int}", remove_subscription, methods=["DELETE"]),
    Route("/confirmations/{confirmation_id:int}/{action}", confirmation_action, methods=["POST"]),
    Route("/users/{user_id:int}/confirmations", user_confirmations, methods=["GET"]),
    Route("/users/{user_id:int}/confirmations/stats", user_confirmation_stats, methods=["GET"]),
    Route("/users/{user_id:int}/closures", user_closures, methods=["GET"]),
    Route("/users/{user_id:int}/requests", user_requests, methods=["GET"]),
    Route("/users/{user_id:int}/requests/stats", user_request_stats, methods=["GET"]),
    Route("/users/{user_id:int}/subscriptions", user_subscriptions, methods=["GET"]),
    Route("/users/{user_id:int}/notifications", user_notifications, methods=["GET"]),
    Route("/notifications/{notification_id:int}/read", read_notification, methods=["POST"]),
    Route("/notifications/{notification_id:int}", remove_notification, methods=["DELETE"]),
    Route("/sweep/trigger", trigger_sweep, methods=["POST"]),
]

app = Starlette(debug=False, routes=routes, lifespan=lifespan,
                exception_handlers={TravelMatchError: handle_domain_error})
