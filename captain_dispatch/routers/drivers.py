from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import rides as ride_service
from ..auth import Identity, get_current_identity, require_driver
from ..database import get_db
from ..presence import driver_stats
from ..schemas import DriverRidesOut, DriverStatsOut, OnlineCountOut
from .rides import ride_out


router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("/me/rides", response_model=DriverRidesOut)
def my_rides(identity: Identity = Depends(require_driver), db: Session = Depends(get_db)):
    history = ride_service.driver_history(db, identity.id)
    return DriverRidesOut(
        rides=[ride_out(r, identity) for r in history.rides],
        total_rides=history.total_rides,
        total_earnings=history.total_earnings,
    )


@router.get("/me/stats", response_model=DriverStatsOut)
def my_stats(identity: Identity = Depends(require_driver), db: Session = Depends(get_db)):
    stats = driver_stats(db, identity.id)
    return DriverStatsOut(
        total_hours=stats.total_hours,
        total_distance=stats.total_distance,
        total_jobs=stats.total_jobs,
        earnings=stats.earnings,
    )


@router.get("/online/count", response_model=OnlineCountOut)
def online_count(request: Request, identity: Identity = Depends(get_current_identity)):
    return OnlineCountOut(online_drivers=request.app.state.dispatcher.presence.get_active_driver_count())
