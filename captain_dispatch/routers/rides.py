from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import fares as fare_service
from .. import rides as ride_service
from ..auth import Identity, get_current_identity, require_driver, require_rider
from ..database import get_db, session_scope
from ..errors import ForbiddenError
from ..models import Ride
from ..schemas import EtaOut, FaresOut, RideCreateIn, RideOut, RidesListOut


router = APIRouter(prefix="/rides", tags=["rides"])


def ride_out(ride: Ride, viewer: Identity | None = None) -> RideOut:
    show_otp = viewer is None or viewer.id == ride.rider_id
    return RideOut(
        id=ride.id,
        status=ride.status,
        rider_id=ride.rider_id,
        driver_id=ride.driver_id,
        pickup=ride.pickup,
        destination=ride.destination,
        vehicle_type=ride.vehicle_type,
        fare=ride.fare,
        otp=ride.otp if show_otp else None,
        distance_km=ride.distance_km,
        duration_mins=ride.duration_mins,
        duration_text=ride.duration_text,
        created_at=ride.created_at,
        accepted_at=ride.accepted_at,
        started_at=ride.started_at,
        completed_at=ride.completed_at,
        cancelled_at=ride.cancelled_at,
    )


def _dispatcher(request: Request):
    return request.app.state.dispatcher


@router.get("/fares", response_model=FaresOut)
def get_fares(
    pickup: str = Query(default=""),
    destination: str = Query(default=""),
    identity: Identity = Depends(get_current_identity),
):
    return FaresOut(fares=fare_service.estimate_fares(pickup, destination))


@router.get("/eta", response_model=EtaOut)
def get_eta(
    pickup: str = Query(default=""),
    destination: str = Query(default=""),
    identity: Identity = Depends(get_current_identity),
):
    eta = fare_service.estimate_eta_for_addresses(pickup, destination)
    return EtaOut(
        estimated_travel_time=eta.minutes,
        estimated_travel_time_label=eta.human_label,
        total_distance=eta.distance_label,
        distance_label=f"Approx. {eta.distance_label} away",
        pickup_address=pickup,
        destination_address=destination,
    )


@router.post("", response_model=RideOut, status_code=status.HTTP_201_CREATED)
def create_ride(
    payload: RideCreateIn,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_rider),
):
    # Commit before drivers can see the request
    with session_scope() as db:
        ride = ride_service.create_ride(
            db,
            identity.id,
            payload.pickup,
            payload.destination,
            payload.vehicle_type,
            rider_name=identity.name,
        )
    background_tasks.add_task(_dispatcher(request).broadcast_new_ride, ride)
    return ride_out(ride, identity)


@router.get("/history", response_model=RidesListOut)
def rider_history(identity: Identity = Depends(require_rider), db: Session = Depends(get_db)):
    rows = ride_service.rider_history(db, identity.id)
    return RidesListOut(rides=[ride_out(r, identity) for r in rows])


@router.get("/{ride_id}", response_model=RideOut)
def get_ride(ride_id: str, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    ride = ride_service.get_ride(db, ride_id)
    # Any driver may look at a pending request; otherwise participants only
    if identity.id not in (ride.rider_id, ride.driver_id):
        if not (identity.is_driver and ride.status == ride_service.PENDING):
            raise ForbiddenError("Not your ride", rideId=ride_id)
    return ride_out(ride, identity)


@router.post("/{ride_id}/accept", response_model=RideOut)
def accept_ride(
    ride_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_driver),
):
    with session_scope() as db:
        ride = ride_service.claim_ride(db, ride_id, identity.id)
    background_tasks.add_task(_dispatcher(request).announce_acceptance, ride)
    return ride_out(ride, identity)


@router.post("/{ride_id}/cancel", response_model=RideOut)
def cancel_ride(
    ride_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
):
    with session_scope() as db:
        ride = ride_service.cancel_ride(db, ride_id, actor_id=identity.id)
    background_tasks.add_task(_dispatcher(request).announce_cancellation, ride)
    return ride_out(ride, identity)
