"""Ride lifecycle state machine.

Every status change is a conditional ``UPDATE ... WHERE status IN (...)``:
the row count tells whether this caller won, so two drivers accepting the
same ride (or a claim racing a cancel) resolve in the database rather than in
process memory.
"""
from __future__ import annotations

import hmac
import logging
import math
import secrets
from dataclasses import dataclass

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import (
    ForbiddenError,
    InvalidPasscodeError,
    InvalidTransitionError,
    RideNotFoundError,
    RideUnavailableError,
    RouteUnavailableError,
    ValidationError,
)
from .fares import fare_for, fares_for_route, resolve_route, usable_distance
from .maps import get_maps_provider
from .models import Ride, RideStatus, TERMINAL_STATUSES, utcnow


logger = logging.getLogger("dispatch.rides")

PENDING = RideStatus.PENDING.value
ACCEPTED = RideStatus.ACCEPTED.value
ONGOING = RideStatus.ONGOING.value
COMPLETED = RideStatus.COMPLETED.value
CANCELLED = RideStatus.CANCELLED.value

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({ACCEPTED, CANCELLED}),
    ACCEPTED: frozenset({ONGOING, COMPLETED, CANCELLED}),
    ONGOING: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}
NON_TERMINAL = tuple(s for s in TRANSITIONS if s not in TERMINAL_STATUSES)
OTP_LENGTH = 4

CLAIMS = Counter(
    "dispatch_ride_claims_total",
    "Ride claim attempts",
    ["result"],
)
STATUS_TRANSITIONS = Counter(
    "dispatch_ride_status_transitions_total",
    "Ride status transitions",
    ["from", "to"],
)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _count_transition(frm: str | None, to: str | None):
    STATUS_TRANSITIONS.labels(str(frm or ""), str(to or "")).inc()


def generate_otp(length: int = OTP_LENGTH) -> str:
    # Uniform digit draws from the OS CSPRNG; leading zeros allowed
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def get_ride(db: Session, ride_id: str) -> Ride:
    ride = db.get(Ride, ride_id) if ride_id else None
    if ride is None:
        raise RideNotFoundError(rideId=ride_id)
    return ride


def _reload(db: Session, ride_id: str) -> Ride:
    return db.get(Ride, ride_id, populate_existing=True)


def _compare_and_set(db: Session, ride_id: str, expected: tuple[str, ...], **values) -> bool:
    result = db.execute(
        update(Ride)
        .where(Ride.id == ride_id, Ride.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _ensure_participant(ride: Ride, actor_id: str | None):
    if actor_id is None:
        return
    if actor_id not in (ride.rider_id, ride.driver_id):
        raise ForbiddenError("Not your ride", rideId=ride.id)


def create_ride(
    db: Session,
    rider_id: str,
    pickup: str,
    destination: str,
    vehicle_type: str,
    *,
    rider_name: str | None = None,
    maps=None,
) -> Ride:
    if not all((s or "").strip() for s in (rider_id, pickup, destination, vehicle_type)):
        raise ValidationError("User, pickup, destination and vehicle type are required")
    vehicle_type = vehicle_type.strip().lower()
    route = resolve_route(pickup, destination, maps=maps)
    fare = fare_for(vehicle_type, fares_for_route(route))
    ride = Ride(
        rider_id=rider_id,
        rider_name=rider_name,
        pickup=pickup.strip(),
        destination=destination.strip(),
        vehicle_type=vehicle_type,
        fare=fare,
        otp=generate_otp(),
        status=PENDING,
        distance_km=route.distance_km,
        duration_mins=math.ceil(route.duration_seconds / 60),
        duration_text=route.duration_text,
    )
    db.add(ride)
    db.flush()
    logger.info("ride %s created rider=%s class=%s fare=%s", ride.id, rider_id, vehicle_type, fare)
    return ride


def _refreshed_route(ride: Ride, maps=None) -> dict:
    try:
        route = (maps or get_maps_provider()).distance_and_duration(ride.pickup, ride.destination)
    except RouteUnavailableError:
        logger.warning("route refresh failed for ride %s, keeping creation estimate", ride.id)
        return {}
    if not usable_distance(route.distance_km):
        logger.warning("route refresh for ride %s gave distance %r, keeping creation estimate", ride.id, route.distance_km)
        return {}
    return {
        "distance_km": route.distance_km,
        "duration_mins": math.ceil(route.duration_seconds / 60),
        "duration_text": route.duration_text,
    }


def claim_ride(db: Session, ride_id: str, driver_id: str, maps=None) -> Ride:
    """Atomically move a pending ride to accepted for ``driver_id``.

    Losers of a concurrent claim get ``RideUnavailableError``. The route is
    refreshed before the update; if the provider is down or answers with an
    unusable distance the estimate taken at creation stays.

    The read transaction is committed before the routing call; the update
    runs in a fresh one.
    """
    if not driver_id:
        raise ValidationError("Driver id is required")
    ride = get_ride(db, ride_id)
    if ride.status != PENDING:
        CLAIMS.labels("unavailable").inc()
        raise RideUnavailableError(rideId=ride_id)
    db.commit()

    values = {"status": ACCEPTED, "driver_id": driver_id}
    values.update(_refreshed_route(ride, maps))
    values["accepted_at"] = utcnow()

    if not _compare_and_set(db, ride_id, (PENDING,), **values):
        CLAIMS.labels("lost").inc()
        logger.info("ride %s claim lost by driver %s", ride_id, driver_id)
        raise RideUnavailableError(rideId=ride_id)
    CLAIMS.labels("won").inc()
    _count_transition(PENDING, ACCEPTED)
    logger.info("ride %s accepted by driver %s", ride_id, driver_id)
    return _reload(db, ride_id)


def start_ride(db: Session, ride_id: str, otp: str, actor_id: str | None = None) -> Ride:
    ride = get_ride(db, ride_id)
    _ensure_participant(ride, actor_id)
    if not hmac.compare_digest(str(otp or "").encode(), ride.otp.encode()):
        raise InvalidPasscodeError(rideId=ride_id)
    if ride.status != ACCEPTED:
        raise InvalidTransitionError(f"Cannot start a ride that is {ride.status}", rideId=ride_id)
    if not _compare_and_set(db, ride_id, (ACCEPTED,), status=ONGOING, started_at=utcnow()):
        raise InvalidTransitionError(rideId=ride_id)
    _count_transition(ACCEPTED, ONGOING)
    return _reload(db, ride_id)


def complete_ride(db: Session, ride_id: str, actor_id: str | None = None) -> Ride:
    """Finish an assigned ride; completing it again returns the record unchanged."""
    ride = get_ride(db, ride_id)
    _ensure_participant(ride, actor_id)
    if ride.status == COMPLETED:
        return ride
    # A pending ride has no driver to complete it
    if not can_transition(ride.status, COMPLETED):
        raise InvalidTransitionError(f"Cannot complete a ride that is {ride.status}", rideId=ride_id)
    prev = ride.status
    if not _compare_and_set(db, ride_id, (ACCEPTED, ONGOING), status=COMPLETED, completed_at=utcnow()):
        raise InvalidTransitionError(rideId=ride_id)
    _count_transition(prev, COMPLETED)
    return _reload(db, ride_id)


def cancel_ride(db: Session, ride_id: str, actor_id: str | None = None) -> Ride:
    """Cancel from any non-terminal state; a terminal ride is returned as is."""
    ride = get_ride(db, ride_id)
    _ensure_participant(ride, actor_id)
    if ride.is_terminal:
        return ride
    prev = ride.status
    if _compare_and_set(db, ride_id, NON_TERMINAL, status=CANCELLED, cancelled_at=utcnow()):
        _count_transition(prev, CANCELLED)
        logger.info("ride %s cancelled from %s", ride_id, prev)
    return _reload(db, ride_id)


@dataclass
class DriverHistory:
    rides: list[Ride]
    total_rides: int
    total_earnings: int


def rider_history(db: Session, rider_id: str) -> list[Ride]:
    return (
        db.query(Ride)
        .filter(Ride.rider_id == rider_id)
        .filter(Ride.status.in_(list(TERMINAL_STATUSES)))
        .order_by(Ride.created_at.desc())
        .all()
    )


def driver_history(db: Session, driver_id: str) -> DriverHistory:
    rides = (
        db.query(Ride)
        .filter(Ride.driver_id == driver_id)
        .filter(Ride.status.in_(list(TERMINAL_STATUSES)))
        .order_by(Ride.created_at.desc())
        .all()
    )
    earnings = sum(r.fare or 0 for r in rides if r.status == COMPLETED)
    return DriverHistory(rides=rides, total_rides=len(rides), total_earnings=earnings)
