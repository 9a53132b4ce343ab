import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def default_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC; SQLite drops tzinfo and the two backends must compare alike
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED.value, RideStatus.CANCELLED.value})


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_created", "created_at"),
        Index("ix_rides_rider", "rider_id"),
        Index("ix_rides_driver", "driver_id"),
    )

    id = Column(String(36), primary_key=True, default=default_uuid)
    rider_id = Column(String(64), nullable=False)
    rider_name = Column(String(128), nullable=True)
    driver_id = Column(String(64), nullable=True)  # null until accepted
    pickup = Column(String(512), nullable=False)
    destination = Column(String(512), nullable=False)
    vehicle_type = Column(String(32), nullable=False)
    fare = Column(Integer, nullable=False)
    otp = Column(String(4), nullable=False)
    status = Column(String(16), nullable=False, default=RideStatus.PENDING.value)
    distance_km = Column(Float, nullable=True)
    duration_mins = Column(Integer, nullable=True)
    duration_text = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DriverSession(Base):
    __tablename__ = "driver_sessions"
    __table_args__ = (
        Index("ix_driver_sessions_driver_login", "driver_id", "login_time"),
        # At most one open session per driver
        Index(
            "uq_driver_sessions_active",
            "driver_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(String(36), primary_key=True, default=default_uuid)
    driver_id = Column(String(64), nullable=False)
    login_time = Column(DateTime, nullable=False, default=utcnow)
    logout_time = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
