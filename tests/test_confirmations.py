"""
Tests for booking confirmations and the time-based sweep.
Covers:
- Join validation and the seat counter
- Accept / reject / cancel transitions and who may perform them
- Cancellation reversal window, once-only reversal, capacity on reversal
- Request-again after a rejection or expiry
- Pending expiry, departed listing closure, stale request deactivation
- Listing close / reopen / seat edits, closure history
- Confirmation stats and expiry countdowns
- Sweep scheduling
"""
from datetime import timedelta

import pytest

from conftest import NOW, make_listing, make_request
from confirmations import (
    accept, cancel, can_reverse, committed_seats, confirmation_history, confirmation_stats, expire_pending,
    pending_expires_at, release_seats, reject, request_again, request_to_join, reserve_seats, reverse,
    time_until,
)
from criteria import ExactDate, Month
from errors import CapacityError, ForbiddenError, NotFoundError, StateError, ValidationError
from listings import (
    close_departed_listings, close_listing, closure_history, deactivate_expired_requests, edit_listing,
    is_expired, reopen_listing,
)
from models import (
    Confirmation, Listing, StandingRequest,
    PENDING, ACCEPTED, REJECTED, CANCELLED, EXPIRED, OPEN, CLOSED,
)
from scheduler import SWEEP_JOB_ID, build_scheduler, run_expiry_sweep

OWNER = 1
ALICE = 101
BOB = 102
CAROL = 103


def seats_left(session, listing_id):
    return session.get(Listing, listing_id).seats_available


def assert_capacity_holds(session, listing_id):
    listing = session.get(Listing, listing_id)
    assert committed_seats(session, listing_id) + listing.seats_available == listing.total_seats


# ────────────────────────── join ────────────────────────────────────────────

def test_join_creates_pending_without_reserving(session):
    ride = make_listing(session, seats=2)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    assert c.status == PENDING
    assert c.owner_id == OWNER and c.listing_kind == ride.kind
    assert seats_left(session, ride.id) == 2


def test_join_own_listing_rejected(session):
    ride = make_listing(session)
    with pytest.raises(ValidationError):
        request_to_join(session, ride.id, OWNER, now=NOW)


def test_join_needs_at_least_one_seat(session):
    ride = make_listing(session)
    with pytest.raises(ValidationError):
        request_to_join(session, ride.id, ALICE, seats=0, now=NOW)


def test_join_more_seats_than_available(session):
    ride = make_listing(session, seats=2)
    with pytest.raises(CapacityError):
        request_to_join(session, ride.id, ALICE, seats=3, now=NOW)


def test_join_twice_while_open_rejected(session):
    ride = make_listing(session)
    request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(StateError):
        request_to_join(session, ride.id, ALICE, now=NOW)


def test_join_closed_or_departed_listing(session):
    closed = make_listing(session)
    close_listing(session, closed.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        request_to_join(session, closed.id, ALICE, now=NOW)
    departed = make_listing(session, departure_at=NOW - timedelta(minutes=5))
    with pytest.raises(StateError):
        request_to_join(session, departed.id, ALICE, now=NOW)


def test_join_unknown_listing(session):
    with pytest.raises(NotFoundError):
        request_to_join(session, 999, ALICE, now=NOW)


# ────────────────────────── accept / reject ─────────────────────────────────

def test_accept_then_capacity_exhausted(session):
    # Paris -> Lyon with two seats: Alice takes one, Bob asked for two
    ride = make_listing(session, seats=2)
    alice = request_to_join(session, ride.id, ALICE, seats=1, now=NOW)
    bob = request_to_join(session, ride.id, BOB, seats=2, now=NOW)

    assert accept(session, alice.id, OWNER, now=NOW).status == ACCEPTED
    assert seats_left(session, ride.id) == 1

    with pytest.raises(CapacityError):
        accept(session, bob.id, OWNER, now=NOW)
    assert seats_left(session, ride.id) == 1
    assert session.get(Confirmation, bob.id).status == PENDING
    assert_capacity_holds(session, ride.id)


def test_accept_sets_confirmed_at(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accepted = accept(session, c.id, OWNER, now=NOW + timedelta(minutes=3))
    assert accepted.confirmed_at == NOW + timedelta(minutes=3)


def test_only_owner_accepts_or_rejects(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(ForbiddenError):
        accept(session, c.id, ALICE, now=NOW)
    with pytest.raises(ForbiddenError):
        reject(session, c.id, BOB, now=NOW)
    assert session.get(Confirmation, c.id).status == PENDING


def test_rejected_is_terminal(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    assert reject(session, c.id, OWNER, now=NOW).status == REJECTED
    with pytest.raises(StateError):
        accept(session, c.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        cancel(session, c.id, ALICE, now=NOW)
    assert seats_left(session, ride.id) == 2


def test_accept_twice_fails(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        accept(session, c.id, OWNER, now=NOW)
    assert seats_left(session, ride.id) == 1


def test_accept_after_pending_expiry_marks_expired(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(StateError):
        accept(session, c.id, OWNER, now=NOW + timedelta(hours=24))
    assert session.get(Confirmation, c.id).status == EXPIRED
    assert seats_left(session, ride.id) == 2


def test_accept_on_closed_listing_fails(session):
    ride = make_listing(session, seats=2)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    # closed without going through close_listing, so the request is still pending
    ride.status = CLOSED
    session.add(ride)
    session.commit()
    with pytest.raises(StateError):
        accept(session, c.id, OWNER, now=NOW)
    assert session.get(Confirmation, c.id).status == PENDING
    assert seats_left(session, ride.id) == 2


def test_accept_after_departure_fails(session):
    ride = make_listing(session, departure_at=NOW + timedelta(hours=2))
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(StateError):
        accept(session, c.id, OWNER, now=NOW + timedelta(hours=3))
    assert session.get(Confirmation, c.id).status == PENDING


def test_reserve_on_closed_listing_is_state_error(session):
    ride = make_listing(session)
    close_listing(session, ride.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        reserve_seats(session, ride.id, 1)
    session.rollback()
    assert seats_left(session, ride.id) == 2


def test_unknown_confirmation(session):
    with pytest.raises(NotFoundError):
        accept(session, 12345, OWNER, now=NOW)


# ────────────────────────── cancel / reverse ────────────────────────────────

def test_cancel_accepted_returns_seats(session):
    ride = make_listing(session, seats=2)
    c = request_to_join(session, ride.id, ALICE, seats=2, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    assert seats_left(session, ride.id) == 0

    cancelled = cancel(session, c.id, ALICE, now=NOW + timedelta(minutes=1))
    assert cancelled.status == CANCELLED
    assert cancelled.status_before_cancel == ACCEPTED
    assert cancelled.cancelled_by == ALICE
    assert seats_left(session, ride.id) == 2
    assert_capacity_holds(session, ride.id)


def test_owner_can_cancel_but_stranger_cannot(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(ForbiddenError):
        cancel(session, c.id, BOB, now=NOW)
    assert cancel(session, c.id, OWNER, now=NOW).cancelled_by == OWNER


def test_reverse_inside_window_restores_accepted(session):
    ride = make_listing(session, seats=2)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    cancelled_at = NOW + timedelta(minutes=10)
    cancel(session, c.id, ALICE, now=cancelled_at)

    restored = reverse(session, c.id, ALICE, now=cancelled_at + timedelta(minutes=4, seconds=59))
    assert restored.status == ACCEPTED
    assert restored.reversed is True
    assert seats_left(session, ride.id) == 1
    assert_capacity_holds(session, ride.id)


def test_reverse_outside_window_fails(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    with pytest.raises(StateError):
        reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=5, seconds=1))
    assert session.get(Confirmation, c.id).status == CANCELLED
    assert seats_left(session, ride.id) == 2


def test_reverse_pending_cancellation_returns_to_pending(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    assert reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=1)).status == PENDING
    assert seats_left(session, ride.id) == 2


def test_reverse_only_once(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=1))
    cancel(session, c.id, ALICE, now=NOW + timedelta(minutes=2))
    with pytest.raises(StateError):
        reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=3))
    assert seats_left(session, ride.id) == 2


def test_reverse_fails_when_seat_was_taken(session):
    ride = make_listing(session, seats=1)
    alice = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, alice.id, OWNER, now=NOW)
    cancel(session, alice.id, ALICE, now=NOW)
    bob = request_to_join(session, ride.id, BOB, now=NOW)
    accept(session, bob.id, OWNER, now=NOW)

    with pytest.raises(CapacityError):
        reverse(session, alice.id, ALICE, now=NOW + timedelta(minutes=1))
    after = session.get(Confirmation, alice.id)
    assert after.status == CANCELLED and after.reversed is False
    assert seats_left(session, ride.id) == 0
    assert_capacity_holds(session, ride.id)


def test_reverse_on_closed_listing_fails(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    close_listing(session, ride.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=1))


def test_reverse_pending_cancellation_on_closed_listing_fails(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    close_listing(session, ride.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        reverse(session, c.id, ALICE, now=NOW + timedelta(minutes=1))
    assert session.get(Confirmation, c.id).status == CANCELLED


def test_can_reverse_boundaries(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    cancelled = cancel(session, c.id, ALICE, now=NOW)
    assert can_reverse(cancelled, NOW + timedelta(minutes=5))
    assert not can_reverse(cancelled, NOW + timedelta(minutes=5, seconds=1))


# ────────────────────────── request again ───────────────────────────────────

def test_request_again_after_rejection(session):
    ride = make_listing(session)
    first = request_to_join(session, ride.id, ALICE, now=NOW)
    reject(session, first.id, OWNER, now=NOW)
    second = request_again(session, first.id, ALICE, now=NOW + timedelta(hours=1))
    assert second.id != first.id
    assert second.status == PENDING
    assert second.request_count == 2
    assert session.get(Confirmation, first.id).status == REJECTED


def test_request_again_after_expiry(session):
    ride = make_listing(session)
    first = request_to_join(session, ride.id, ALICE, now=NOW)
    expire_pending(session, NOW + timedelta(hours=25))
    assert request_again(session, first.id, ALICE, now=NOW + timedelta(hours=26)).status == PENDING


def test_request_again_rules(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    with pytest.raises(StateError):
        request_again(session, c.id, ALICE, now=NOW)
    reject(session, c.id, OWNER, now=NOW)
    with pytest.raises(ForbiddenError):
        request_again(session, c.id, BOB, now=NOW)


# ────────────────────────── history ─────────────────────────────────────────

def test_history_flags(session):
    ride = make_listing(session, seats=3)
    rejected = request_to_join(session, ride.id, ALICE, now=NOW)
    reject(session, rejected.id, OWNER, now=NOW)
    cancelled = request_to_join(session, ride.id, BOB, now=NOW + timedelta(minutes=1))
    cancel(session, cancelled.id, BOB, now=NOW + timedelta(minutes=2))

    alice = {e.confirmation.id: e for e in confirmation_history(session, ALICE, NOW + timedelta(minutes=3))}
    assert alice[rejected.id].can_request_again is True
    assert alice[rejected.id].can_reverse is False

    owner = confirmation_history(session, OWNER, NOW + timedelta(minutes=3))
    assert [e.confirmation.id for e in owner] == [cancelled.id, rejected.id]
    by_id = {e.confirmation.id: e for e in owner}
    assert by_id[cancelled.id].can_reverse is True
    assert by_id[rejected.id].can_request_again is False

    later = {e.confirmation.id: e for e in confirmation_history(session, BOB, NOW + timedelta(minutes=8))}
    assert later[cancelled.id].can_reverse is False


def test_history_hides_reverse_once_listing_closed(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    cancel(session, c.id, ALICE, now=NOW)
    close_listing(session, ride.id, OWNER, now=NOW)
    [entry] = confirmation_history(session, ALICE, NOW + timedelta(minutes=1))
    assert entry.can_reverse is False


# ────────────────────────── stats ───────────────────────────────────────────

def test_confirmation_stats_counts_and_expiry(session):
    ride = make_listing(session, seats=3)
    pending = request_to_join(session, ride.id, ALICE, now=NOW)
    accepted = request_to_join(session, ride.id, BOB, now=NOW)
    accept(session, accepted.id, OWNER, now=NOW)
    rejected = request_to_join(session, ride.id, CAROL, now=NOW)
    reject(session, rejected.id, OWNER, now=NOW)

    later = NOW + timedelta(hours=20)
    stats = confirmation_stats(session, OWNER, later)
    assert (stats[PENDING], stats[ACCEPTED], stats[REJECTED], stats[CANCELLED], stats[EXPIRED]) == (1, 1, 1, 0, 0)
    assert stats["total"] == 3
    assert stats["expiring_soon"] == 1
    assert stats["can_request_again"] == 0
    assert stats["pending_expiry"] == [{
        "id": pending.id,
        "expires_at": NOW + timedelta(hours=24),
        "is_expired": False,
        "time_left": "4 hours",
    }]

    carol = confirmation_stats(session, CAROL, later)
    assert carol["total"] == 1 and carol["can_request_again"] == 1


def test_pending_expires_at_only_for_pending(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    assert pending_expires_at(c) == NOW + timedelta(hours=24)
    reject(session, c.id, OWNER, now=NOW)
    assert pending_expires_at(session.get(Confirmation, c.id)) is None


@pytest.mark.parametrize("left,text", [
    (timedelta(days=3), "3 days"),
    (timedelta(hours=25), "1 day"),
    (timedelta(hours=24), "24 hours"),
    (timedelta(hours=1, minutes=30), "1 hour"),
    (timedelta(seconds=90), "1 minute"),
    (timedelta(minutes=-5), "0 minutes"),
])
def test_time_until(left, text):
    assert time_until(NOW, NOW + left) == text


# ────────────────────────── seat primitive ──────────────────────────────────

def test_reserve_and_release_bounds(session):
    ride = make_listing(session, seats=2)
    with pytest.raises(StateError):
        release_seats(session, ride.id, 1)
    session.rollback()
    reserve_seats(session, ride.id, 2)
    session.commit()
    with pytest.raises(CapacityError):
        reserve_seats(session, ride.id, 1)
    session.rollback()
    assert seats_left(session, ride.id) == 0


# ────────────────────────── listing lifecycle ───────────────────────────────

def test_close_listing_rejects_pending(session):
    ride = make_listing(session, seats=3)
    pending = request_to_join(session, ride.id, ALICE, now=NOW)
    accepted = request_to_join(session, ride.id, BOB, now=NOW)
    accept(session, accepted.id, OWNER, now=NOW)

    closed = close_listing(session, ride.id, OWNER, reason="full", now=NOW)
    assert closed.status == CLOSED and closed.closed_reason == "full"
    assert session.get(Confirmation, pending.id).status == REJECTED
    assert session.get(Confirmation, accepted.id).status == ACCEPTED


def test_close_listing_owner_only_and_once(session):
    ride = make_listing(session)
    with pytest.raises(ForbiddenError):
        close_listing(session, ride.id, ALICE, now=NOW)
    close_listing(session, ride.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        close_listing(session, ride.id, OWNER, now=NOW)


def test_reopen_listing(session):
    ride = make_listing(session, departure_at=NOW + timedelta(days=1))
    close_listing(session, ride.id, OWNER, now=NOW)
    assert reopen_listing(session, ride.id, OWNER, now=NOW).status == OPEN
    with pytest.raises(StateError):
        reopen_listing(session, ride.id, OWNER, now=NOW)


def test_reopen_departed_listing_fails(session):
    ride = make_listing(session, departure_at=NOW + timedelta(hours=1))
    close_listing(session, ride.id, OWNER, now=NOW)
    with pytest.raises(StateError):
        reopen_listing(session, ride.id, OWNER, now=NOW + timedelta(hours=2))


def test_closure_history_newest_first(session):
    first = make_listing(session)
    second = make_listing(session)
    still_open = make_listing(session)
    other_owner = make_listing(session, owner_id=2)
    close_listing(session, first.id, OWNER, reason="full", now=NOW)
    close_listing(session, second.id, OWNER, now=NOW + timedelta(hours=1))
    close_listing(session, other_owner.id, 2, now=NOW)
    history = closure_history(session, OWNER)
    assert [l.id for l in history] == [second.id, first.id]
    assert history[1].closed_reason == "full"
    assert still_open.id not in [l.id for l in history]


def test_edit_seats_shifts_available(session):
    ride = make_listing(session, seats=3)
    c = request_to_join(session, ride.id, ALICE, seats=2, now=NOW)
    accept(session, c.id, OWNER, now=NOW)

    assert edit_listing(session, ride.id, OWNER, total_seats=4).seats_available == 2
    with pytest.raises(StateError):
        edit_listing(session, ride.id, OWNER, total_seats=1)
    edited = edit_listing(session, ride.id, OWNER, total_seats=2)
    assert (edited.total_seats, edited.seats_available) == (2, 0)
    assert_capacity_holds(session, ride.id)


def test_edit_listing_rules(session):
    ride = make_listing(session)
    with pytest.raises(ForbiddenError):
        edit_listing(session, ride.id, ALICE, price=10.0)
    with pytest.raises(ValidationError):
        edit_listing(session, ride.id, OWNER, status=CLOSED)
    assert edit_listing(session, ride.id, OWNER, price=10.0, negotiable=True).price == 10.0


# ────────────────────────── sweep ───────────────────────────────────────────

def test_expire_pending_only_after_window(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    assert expire_pending(session, NOW + timedelta(hours=23)) == []
    assert expire_pending(session, NOW + timedelta(hours=24)) == [c.id]
    assert expire_pending(session, NOW + timedelta(hours=25)) == []


def test_accepted_never_expires(session):
    ride = make_listing(session)
    c = request_to_join(session, ride.id, ALICE, now=NOW)
    accept(session, c.id, OWNER, now=NOW)
    assert expire_pending(session, NOW + timedelta(days=2)) == []
    assert session.get(Confirmation, c.id).status == ACCEPTED


def test_close_departed_listings(session):
    ride = make_listing(session, departure_at=NOW + timedelta(hours=1))
    assert close_departed_listings(session, NOW + timedelta(hours=24)) == []
    assert close_departed_listings(session, NOW + timedelta(hours=25, seconds=1)) == [ride.id]
    listing = session.get(Listing, ride.id)
    assert listing.status == CLOSED and listing.closed_reason == "departed"


def test_request_expiry(session):
    past_day = make_request(session, ExactDate(NOW.date()), owner_id=51)
    july = make_request(session, Month(2030, 7), owner_id=52)
    assert not is_expired(past_day, NOW)
    assert is_expired(past_day, NOW + timedelta(days=1))
    assert not is_expired(july, NOW + timedelta(days=1))
    # default time-to-live
    assert is_expired(july, NOW + timedelta(days=30))

    assert deactivate_expired_requests(session, NOW + timedelta(days=1)) == 1
    assert session.get(StandingRequest, past_day.id).is_active is False
    assert session.get(StandingRequest, july.id).is_active is True
    assert deactivate_expired_requests(session, NOW + timedelta(days=1)) == 0


def test_sweep_is_idempotent(session):
    ride = make_listing(session, departure_at=NOW + timedelta(hours=2))
    request_to_join(session, ride.id, ALICE, now=NOW)
    request_to_join(session, ride.id, BOB, now=NOW)
    make_request(session, ExactDate(NOW.date()))

    later = NOW + timedelta(days=2)
    first = run_expiry_sweep(later)
    assert first == {"expired_confirmations": 2, "closed_listings": 1, "deactivated_requests": 1}
    second = run_expiry_sweep(later)
    assert second == {"expired_confirmations": 0, "closed_listings": 0, "deactivated_requests": 0}


def test_scheduler_runs_sweep_on_interval():
    scheduler = build_scheduler(60)
    scheduler.start(paused=True)
    try:
        job = scheduler.get_job(SWEEP_JOB_ID)
        assert job.func is run_expiry_sweep
        assert job.trigger.interval == timedelta(seconds=60)
    finally:
        scheduler.shutdown(wait=False)
