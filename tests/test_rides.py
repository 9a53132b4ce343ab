from concurrent.futures import ThreadPoolExecutor, as_completed

import pytest

from captain_dispatch import rides
from captain_dispatch.database import session_scope
from captain_dispatch.errors import (
    FareUnavailableError,
    ForbiddenError,
    InvalidPasscodeError,
    InvalidTransitionError,
    RideNotFoundError,
    RideUnavailableError,
    RouteUnavailableError,
    ValidationError,
)
from captain_dispatch.models import Ride


def _new_ride(vehicle_type: str = "car", rider_id: str = "rider-1") -> Ride:
    with session_scope() as db:
        return rides.create_ride(db, rider_id, "MG Road", "Airport", vehicle_type, rider_name="Asha")


def _status(ride_id: str) -> Ride:
    with session_scope() as db:
        return rides.get_ride(db, ride_id)


def test_create_ride_pending_with_fare_and_otp():
    ride = _new_ride()
    assert ride.status == rides.PENDING
    assert ride.driver_id is None
    assert ride.fare == 250
    assert len(ride.otp) == 4 and ride.otp.isdigit()
    assert ride.distance_km == 10.0
    assert ride.duration_mins == 25
    assert ride.rider_name == "Asha"


def test_create_ride_requires_fields():
    with session_scope() as db:
        with pytest.raises(ValidationError):
            rides.create_ride(db, "rider-1", "MG Road", "Airport", "")
        with pytest.raises(ValidationError):
            rides.create_ride(db, "rider-1", "", "Airport", "car")


def test_create_ride_unknown_class_persists_nothing():
    with pytest.raises(FareUnavailableError):
        _new_ride("helicopter")
    with session_scope() as db:
        assert db.query(Ride).count() == 0


def test_create_ride_route_failure(maps):
    maps.fail = True
    with pytest.raises(RouteUnavailableError):
        _new_ride()


def test_otp_draws_digits():
    codes = {rides.generate_otp() for _ in range(200)}
    assert all(len(c) == 4 and c.isdigit() for c in codes)
    assert len(codes) > 1


def test_transition_table():
    assert rides.can_transition("pending", "accepted")
    assert rides.can_transition("ongoing", "cancelled")
    assert not rides.can_transition("pending", "ongoing")
    assert rides.can_transition("accepted", "completed")
    assert not rides.can_transition("pending", "completed")
    assert not rides.can_transition("completed", "cancelled")
    assert not rides.can_transition("cancelled", "pending")


def test_full_lifecycle():
    ride = _new_ride()
    with session_scope() as db:
        accepted = rides.claim_ride(db, ride.id, "driver-1")
    assert accepted.status == rides.ACCEPTED
    assert accepted.driver_id == "driver-1"
    assert accepted.accepted_at is not None

    with session_scope() as db:
        started = rides.start_ride(db, ride.id, ride.otp, actor_id="driver-1")
    assert started.status == rides.ONGOING
    assert started.started_at is not None

    with session_scope() as db:
        done = rides.complete_ride(db, ride.id, actor_id="driver-1")
    assert done.status == rides.COMPLETED
    assert done.completed_at is not None
    assert done.fare == 250


def test_wrong_passcode_leaves_ride_accepted():
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    wrong = "0000" if ride.otp != "0000" else "1111"
    with pytest.raises(InvalidPasscodeError):
        with session_scope() as db:
            rides.start_ride(db, ride.id, wrong, actor_id="driver-1")
    assert _status(ride.id).status == rides.ACCEPTED


def test_start_before_accept_is_invalid():
    ride = _new_ride()
    with pytest.raises(InvalidTransitionError):
        with session_scope() as db:
            rides.start_ride(db, ride.id, ride.otp)


def test_complete_requires_assigned_driver():
    ride = _new_ride()
    with pytest.raises(InvalidTransitionError):
        with session_scope() as db:
            rides.complete_ride(db, ride.id)
    assert _status(ride.id).status == rides.PENDING

    with session_scope() as db:
        rides.cancel_ride(db, ride.id)
    with pytest.raises(InvalidTransitionError):
        with session_scope() as db:
            rides.complete_ride(db, ride.id)


def test_complete_from_accepted_and_again():
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    with session_scope() as db:
        done = rides.complete_ride(db, ride.id, actor_id="driver-1")
    assert done.status == rides.COMPLETED
    assert done.driver_id == "driver-1"
    with session_scope() as db:
        again = rides.complete_ride(db, ride.id, actor_id="driver-1")
    assert again.completed_at == done.completed_at


def test_outsider_cannot_touch_ride():
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    with pytest.raises(ForbiddenError):
        with session_scope() as db:
            rides.start_ride(db, ride.id, ride.otp, actor_id="driver-2")
    with pytest.raises(ForbiddenError):
        with session_scope() as db:
            rides.cancel_ride(db, ride.id, actor_id="driver-2")


def test_claim_missing_ride():
    with pytest.raises(RideNotFoundError):
        with session_scope() as db:
            rides.claim_ride(db, "does-not-exist", "driver-1")


def test_second_claim_is_unavailable():
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    with pytest.raises(RideUnavailableError):
        with session_scope() as db:
            rides.claim_ride(db, ride.id, "driver-2")
    assert _status(ride.id).driver_id == "driver-1"


def test_cancel_is_idempotent():
    ride = _new_ride()
    with session_scope() as db:
        first = rides.cancel_ride(db, ride.id, actor_id="rider-1")
    assert first.status == rides.CANCELLED
    cancelled_at = first.cancelled_at
    with session_scope() as db:
        again = rides.cancel_ride(db, ride.id, actor_id="rider-1")
    assert again.status == rides.CANCELLED
    assert again.cancelled_at == cancelled_at


def test_cancel_after_completion_is_noop():
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    with session_scope() as db:
        rides.start_ride(db, ride.id, ride.otp)
    with session_scope() as db:
        rides.complete_ride(db, ride.id)
    with session_scope() as db:
        after = rides.cancel_ride(db, ride.id, actor_id="rider-1")
    assert after.status == rides.COMPLETED
    assert after.cancelled_at is None


def test_cancelled_ride_cannot_be_claimed():
    ride = _new_ride()
    with session_scope() as db:
        rides.cancel_ride(db, ride.id)
    with pytest.raises(RideUnavailableError):
        with session_scope() as db:
            rides.claim_ride(db, ride.id, "driver-1")


def test_claim_keeps_estimate_when_routing_down(maps):
    ride = _new_ride()
    maps.fail = True
    with session_scope() as db:
        accepted = rides.claim_ride(db, ride.id, "driver-1")
    assert accepted.status == rides.ACCEPTED
    assert accepted.distance_km == 10.0
    assert accepted.duration_mins == 25


def test_claim_refreshes_route(maps):
    ride = _new_ride()
    maps.distance_km = 12.5
    maps.duration_seconds = 1801
    with session_scope() as db:
        accepted = rides.claim_ride(db, ride.id, "driver-1")
    assert accepted.distance_km == 12.5
    assert accepted.duration_mins == 31
    assert accepted.fare == 250  # quoted fare does not move


@pytest.mark.parametrize("distance", [float("inf"), float("nan"), 0.0, -1.0])
def test_claim_ignores_unusable_route(maps, distance):
    ride = _new_ride()
    maps.distance_km = distance
    maps.duration_seconds = 3600
    with session_scope() as db:
        accepted = rides.claim_ride(db, ride.id, "driver-1")
    assert accepted.status == rides.ACCEPTED
    assert accepted.distance_km == 10.0
    assert accepted.duration_mins == 25
    assert _status(ride.id).distance_km == 10.0


def test_claim_routes_outside_the_read_transaction(maps):
    ride = _new_ride()
    seen = []
    lookup = maps.distance_and_duration

    with session_scope() as db:

        def tracking(origin, destination):
            seen.append(db.in_transaction())
            return lookup(origin, destination)

        maps.distance_and_duration = tracking
        rides.claim_ride(db, ride.id, "driver-1")
    assert seen == [False]


def test_late_claim_skips_routing(maps):
    ride = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, ride.id, "driver-1")
    calls = len(maps.calls)
    with pytest.raises(RideUnavailableError):
        with session_scope() as db:
            rides.claim_ride(db, ride.id, "driver-2")
    assert len(maps.calls) == calls


def _claim(ride_id: str, driver_id: str):
    try:
        with session_scope() as db:
            rides.claim_ride(db, ride_id, driver_id)
        return driver_id
    except RideUnavailableError:
        return None


def test_concurrent_claims_single_winner():
    ride = _new_ride()
    drivers = [f"driver-{i}" for i in range(8)]
    with ThreadPoolExecutor(max_workers=len(drivers)) as ex:
        futs = [ex.submit(_claim, ride.id, d) for d in drivers]
        results = [f.result() for f in as_completed(futs)]

    winners = [r for r in results if r]
    assert len(winners) == 1
    final = _status(ride.id)
    assert final.status == rides.ACCEPTED
    assert final.driver_id == winners[0]


def _cancel(ride_id: str, rider_id: str):
    with session_scope() as db:
        return rides.cancel_ride(db, ride_id, actor_id=rider_id).status


def test_claim_racing_cancel_never_resurrects():
    for _ in range(5):
        ride = _new_ride()
        with ThreadPoolExecutor(max_workers=2) as ex:
            claim = ex.submit(_claim, ride.id, "driver-1")
            cancel = ex.submit(_cancel, ride.id, "rider-1")
            winner = claim.result()
            assert cancel.result() == rides.CANCELLED
        final = _status(ride.id)
        assert final.status == rides.CANCELLED
        if winner is None:
            assert final.driver_id is None
        else:
            assert final.driver_id == "driver-1"


def test_histories_only_list_finished_rides():
    done = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, done.id, "driver-1")
    with session_scope() as db:
        rides.start_ride(db, done.id, done.otp)
    with session_scope() as db:
        rides.complete_ride(db, done.id)

    dropped = _new_ride()
    with session_scope() as db:
        rides.claim_ride(db, dropped.id, "driver-1")
    with session_scope() as db:
        rides.cancel_ride(db, dropped.id, actor_id="driver-1")

    _new_ride()  # still pending

    with session_scope() as db:
        history = rides.driver_history(db, "driver-1")
        rider_rows = rides.rider_history(db, "rider-1")
    assert history.total_rides == 2
    assert history.total_earnings == 250
    assert {r.id for r in rider_rows} == {done.id, dropped.id}
