"""Driver presence: who receives broadcasts now, and the durable session log."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from prometheus_client import Gauge
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .config import settings
from .database import session_scope
from .fares import round_half_up
from .models import DriverSession, Ride, utcnow


logger = logging.getLogger("dispatch.presence")

ONLINE_DRIVERS = Gauge("dispatch_online_drivers", "Drivers currently in the online registry")


@dataclass(frozen=True)
class OnlineDriver:
    driver_id: str
    connection_id: str
    location: Optional[dict] = None
    vehicle_type: Optional[str] = None
    name: Optional[str] = None
    vehicle: Optional[dict] = None
    phone: Optional[str] = None
    rating: Optional[float] = None
    online_since: datetime = field(default_factory=utcnow)


class OnlineDriverRegistry:
    """In-memory driver id -> OnlineDriver map with a connection id index.

    Every mutation runs under one lock so the count never observes a half
    applied insert or delete.
    """

    def __init__(self) -> None:
        self._drivers: Dict[str, OnlineDriver] = {}
        self._by_connection: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def put(self, entry: OnlineDriver) -> int:
        async with self._lock:
            previous = self._drivers.get(entry.driver_id)
            if previous is not None and self._by_connection.get(previous.connection_id) == entry.driver_id:
                self._by_connection.pop(previous.connection_id, None)
            self._drivers[entry.driver_id] = entry
            self._by_connection[entry.connection_id] = entry.driver_id
            return len(self._drivers)

    async def remove(self, driver_id: str) -> OnlineDriver | None:
        async with self._lock:
            entry = self._drivers.pop(driver_id, None)
            if entry is not None and self._by_connection.get(entry.connection_id) == driver_id:
                self._by_connection.pop(entry.connection_id, None)
            return entry

    async def remove_connection(self, connection_id: str) -> OnlineDriver | None:
        async with self._lock:
            driver_id = self._by_connection.pop(connection_id, None)
            if driver_id is None:
                return None
            entry = self._drivers.get(driver_id)
            if entry is None or entry.connection_id != connection_id:
                return None
            return self._drivers.pop(driver_id)

    async def update_location(self, driver_id: str, location: dict) -> bool:
        async with self._lock:
            entry = self._drivers.get(driver_id)
            if entry is None:
                return False
            self._drivers[driver_id] = replace(entry, location=location)
            return True

    def get(self, driver_id: str | None) -> OnlineDriver | None:
        return self._drivers.get(driver_id) if driver_id else None

    def find_by_connection(self, connection_id: str) -> str | None:
        return self._by_connection.get(connection_id)

    def connection_ids(self) -> list[str]:
        return [entry.connection_id for entry in self._drivers.values()]

    def __contains__(self, driver_id: str) -> bool:
        return driver_id in self._drivers

    def __len__(self) -> int:
        return len(self._drivers)


def _active_session(db: Session, driver_id: str) -> DriverSession | None:
    return (
        db.query(DriverSession)
        .filter(DriverSession.driver_id == driver_id)
        .filter(DriverSession.is_active.is_(True))
        .one_or_none()
    )


def open_session(db: Session, driver_id: str) -> tuple[DriverSession, bool]:
    """Return the driver's active session, creating one if none is open."""
    active = _active_session(db, driver_id)
    if active is not None:
        return active, False
    row = DriverSession(driver_id=driver_id, login_time=utcnow(), is_active=True)
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent online signal opened it first
        db.rollback()
        active = _active_session(db, driver_id)
        if active is None:
            raise
        return active, False
    return row, True


def close_session(db: Session, driver_id: str, now: datetime | None = None) -> DriverSession | None:
    active = _active_session(db, driver_id)
    if active is None:
        return None
    now = now or utcnow()
    seconds = max(0.0, (now - active.login_time).total_seconds())
    active.logout_time = now
    active.is_active = False
    active.duration_minutes = round_half_up(seconds / 60)
    db.flush()
    return active


def close_orphaned_sessions(db: Session) -> int:
    """Close sessions left active by a previous process.

    No socket outlives a restart, so every active row at start-up is stale.
    Its real end is unknown; the row is closed at its login time and adds no
    online hours.
    """
    rows = db.query(DriverSession).filter(DriverSession.is_active.is_(True)).all()
    for row in rows:
        row.is_active = False
        row.logout_time = row.login_time
        row.duration_minutes = 0
    db.flush()
    return len(rows)


@dataclass
class DriverStats:
    total_hours: float
    total_distance: float
    total_jobs: int
    earnings: int


def driver_stats(db: Session, driver_id: str, now: datetime | None = None, window_hours: int | None = None) -> DriverStats:
    now = now or utcnow()
    hours = window_hours if window_hours is not None else settings.DRIVER_STATS_WINDOW_HOURS
    since = now - timedelta(hours=hours)
    sessions = (
        db.query(DriverSession)
        .filter(DriverSession.driver_id == driver_id)
        .filter(DriverSession.login_time >= since)
        .all()
    )
    online_seconds = 0.0
    for s in sessions:
        end = s.logout_time or now
        online_seconds += max(0.0, (end - s.login_time).total_seconds())
    completed = (
        db.query(Ride)
        .filter(Ride.driver_id == driver_id)
        .filter(Ride.status == "completed")
        .all()
    )
    return DriverStats(
        total_hours=round(online_seconds / 3600, 1),
        total_distance=round(sum(r.distance_km or 0 for r in completed), 2),
        total_jobs=len(completed),
        earnings=sum(r.fare or 0 for r in completed),
    )


CountListener = Callable[[int], Awaitable[None]]


class PresenceTracker:
    def __init__(
        self,
        registry: OnlineDriverRegistry | None = None,
        session_factory=session_scope,
        on_count_changed: CountListener | None = None,
    ) -> None:
        self.registry = registry or OnlineDriverRegistry()
        self.session_factory = session_factory
        self.on_count_changed = on_count_changed

    def _in_session(self, fn, *args):
        with self.session_factory() as db:
            return fn(db, *args)

    async def _publish(self) -> None:
        count = len(self.registry)
        ONLINE_DRIVERS.set(count)
        if self.on_count_changed is not None:
            await self.on_count_changed(count)

    async def mark_online(
        self,
        driver_id: str,
        connection_id: str,
        location: dict | None = None,
        vehicle_type: str | None = None,
        **details,
    ) -> OnlineDriver:
        _, created = await run_in_threadpool(self._in_session, open_session, driver_id)
        entry = OnlineDriver(
            driver_id=driver_id,
            connection_id=connection_id,
            location=location,
            vehicle_type=vehicle_type,
            **details,
        )
        await self.registry.put(entry)
        logger.info("driver %s online (new_session=%s)", driver_id, created)
        await self._publish()
        return entry

    async def mark_offline(self, driver_id: str) -> bool:
        closed = await run_in_threadpool(self._in_session, close_session, driver_id)
        removed = await self.registry.remove(driver_id)
        if closed is None and removed is None:
            return False
        logger.info("driver %s offline", driver_id)
        await self._publish()
        return True

    async def handle_disconnect(self, connection_id: str) -> str | None:
        entry = await self.registry.remove_connection(connection_id)
        if entry is None:
            return None
        logger.info("driver %s dropped with connection %s", entry.driver_id, connection_id)
        try:
            await run_in_threadpool(self._in_session, close_session, entry.driver_id)
        finally:
            await self._publish()
        return entry.driver_id

    async def update_location(self, driver_id: str, location: dict) -> bool:
        return await self.registry.update_location(driver_id, location)

    def get_active_driver_count(self) -> int:
        return len(self.registry)
