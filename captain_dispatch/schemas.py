from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RideCreateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pickup: str = Field(min_length=1, max_length=512)
    destination: str = Field(min_length=1, max_length=512)
    vehicle_type: str = Field(alias="vehicleType", min_length=1, max_length=32, description="auto|car|motorcycle")


class RideOut(BaseModel):
    id: str
    status: str
    rider_id: str
    driver_id: Optional[str] = None
    pickup: str
    destination: str
    vehicle_type: str
    fare: int
    otp: Optional[str] = None  # only shown to the rider
    distance_km: Optional[float] = None
    duration_mins: Optional[int] = None
    duration_text: Optional[str] = None
    created_at: datetime
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class RidesListOut(BaseModel):
    rides: List[RideOut]


class DriverRidesOut(BaseModel):
    rides: List[RideOut]
    total_rides: int
    total_earnings: int


class FaresOut(BaseModel):
    fares: Dict[str, int]


class EtaOut(BaseModel):
    estimated_travel_time: int
    estimated_travel_time_label: str
    total_distance: str
    distance_label: str
    pickup_address: str
    destination_address: str


class DriverStatsOut(BaseModel):
    total_hours: float
    total_distance: float
    total_jobs: int
    earnings: int


class OnlineCountOut(BaseModel):
    online_drivers: int
