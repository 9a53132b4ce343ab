"""Socket event routing for the broadcast-then-claim protocol.

Frames are ``{"event": name, "data": payload}`` in both directions. Event
names and payload keys are the contract shared with the rider and captain
clients; do not rename them.
"""
from __future__ import annotations

import logging

import anyio
from prometheus_client import Counter
from starlette.concurrency import run_in_threadpool

from . import rides
from .database import session_scope
from .errors import DispatchError, ForbiddenError, ValidationError
from .models import Ride
from .presence import OnlineDriver, PresenceTracker
from .ws_manager import Connection, ConnectionManager


logger = logging.getLogger("dispatch.events")

WS_EVENTS = Counter(
    "dispatch_ws_events_total",
    "Inbound socket events",
    ["event"],
)

DEFAULT_DRIVER_RATING = 4.5


def _distance_label(km: float | None) -> str | None:
    if km is None:
        return None
    return f"{round(km, 2):g} km"


def _field(data, key: str):
    return data.get(key) if isinstance(data, dict) else None


def _ride_id(data, key: str = "rideId") -> str:
    # Some events carry the bare id, others an object
    value = data.get(key) if isinstance(data, dict) else data
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def new_request_payload(ride: Ride) -> dict:
    return {
        "rideId": ride.id,
        "userId": ride.rider_id,
        "userName": ride.rider_name,
        "pickup": ride.pickup,
        "destination": ride.destination,
        "vehicleType": ride.vehicle_type,
        "fare": ride.fare,
        "otp": ride.otp,
    }


def acceptance_payload(ride: Ride, driver: OnlineDriver | None) -> dict:
    return {
        "rideId": ride.id,
        "captain": {
            "id": ride.driver_id,
            "name": driver.name if driver else None,
            "vehicle": driver.vehicle if driver else None,
            "phone": (driver.phone if driver else None) or "",
            "rating": (driver.rating if driver else None) or DEFAULT_DRIVER_RATING,
        },
        "fare": ride.fare,
        "duration": ride.duration_mins,
        "durationText": ride.duration_text,
        "distance": _distance_label(ride.distance_km),
        "status": ride.status,
        "otp": ride.otp,
    }


class RideDispatcher:
    def __init__(
        self,
        manager: ConnectionManager,
        presence: PresenceTracker | None = None,
        session_factory=session_scope,
        maps=None,
    ) -> None:
        self.manager = manager
        self.session_factory = session_factory
        self.presence = presence or PresenceTracker(session_factory=session_factory)
        self.presence.on_count_changed = self.broadcast_driver_count
        self.maps = maps
        self._handlers = {
            "join:user": self.on_join_user,
            "captain:online": self.on_captain_online,
            "captain:offline": self.on_captain_offline,
            "ride:accept": self.on_ride_accept,
            "ride:start": self.on_ride_start,
            "ride:complete": self.on_ride_complete,
            "ride:cancel": self.on_ride_cancel,
            "captain:location_update": self.on_location_update,
        }

    async def _db(self, fn, *args, **kwargs):
        def call():
            with self.session_factory() as db:
                return fn(db, *args, **kwargs)

        return await run_in_threadpool(call)

    # inbound

    async def handle(self, conn: Connection, message) -> None:
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await conn.send("ride:error", ValidationError("Malformed frame").to_dict())
            return
        event = message["event"]
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("ride:error", ValidationError(f"Unknown event: {event}").to_dict())
            return
        WS_EVENTS.labels(event).inc()
        try:
            await handler(conn, message.get("data"))
        except DispatchError as exc:
            await conn.send("ride:error", exc.to_dict())
        except Exception:
            logger.exception("event %s from %s failed", event, conn.identity.id)
            await conn.send("ride:error", {"code": "internal_error", "message": f"Failed to handle {event}"})

    async def handle_disconnect(self, conn: Connection) -> None:
        """Runs for every closed socket, clean or not; safe after an explicit offline.

        Runs shielded from cancellation of the socket task.
        """
        with anyio.CancelScope(shield=True):
            # Out of the rooms first so the count push skips the dead socket
            await self.manager.disconnect(conn)
            try:
                await self.presence.handle_disconnect(conn.id)
            except DispatchError:
                logger.exception("closing session for connection %s failed", conn.id)

    @staticmethod
    def _require_driver(conn: Connection) -> str:
        if not conn.identity.is_driver:
            raise ForbiddenError("Driver only")
        return conn.identity.id

    @staticmethod
    def _check_self(conn: Connection, claimed: str | None) -> None:
        if claimed and str(claimed) != conn.identity.id:
            raise ForbiddenError("Identity mismatch")

    async def on_join_user(self, conn: Connection, data) -> None:
        self._check_self(conn, _field(data, "userId") if isinstance(data, dict) else data)
        await self.manager.join(conn, conn.identity.id)

    async def on_captain_online(self, conn: Connection, data) -> None:
        driver_id = self._require_driver(conn)
        data = data if isinstance(data, dict) else {}
        self._check_self(conn, data.get("id"))
        vehicle = data.get("vehicle") if isinstance(data.get("vehicle"), dict) else None
        try:
            await self.presence.mark_online(
                driver_id,
                conn.id,
                location=data.get("location"),
                vehicle_type=data.get("vehicleType") or (vehicle or {}).get("vehicleType"),
                name=data.get("name") or conn.identity.name,
                vehicle=vehicle,
                phone=data.get("phone"),
                rating=data.get("rating"),
            )
        except DispatchError:
            logger.exception("driver %s failed to go online", driver_id)
            await conn.send("captain:error", {"message": "Failed to go online"})
            return
        await self.manager.join(conn, driver_id)

    async def on_captain_offline(self, conn: Connection, data) -> None:
        driver_id = self._require_driver(conn)
        self._check_self(conn, _field(data, "id") if isinstance(data, dict) else data)
        await self.presence.mark_offline(driver_id)

    async def on_ride_accept(self, conn: Connection, data) -> None:
        driver_id = self._require_driver(conn)
        ride_id = _ride_id(data)
        self._check_self(conn, _field(data, "captainId"))
        ride = await self._db(rides.claim_ride, ride_id, driver_id, maps=self.maps)
        await self.announce_acceptance(ride, conn)

    async def on_ride_start(self, conn: Connection, data) -> None:
        ride_id = _ride_id(data)
        ride = await self._db(rides.start_ride, ride_id, _field(data, "otp"), actor_id=conn.identity.id)
        payload = {"rideId": ride.id}
        await self.manager.emit_to_room(ride.rider_id, "ride:started", payload)
        await self.manager.emit_to_room(ride.driver_id, "ride:started", payload)

    async def on_ride_complete(self, conn: Connection, data) -> None:
        ride_id = _ride_id(data)
        ride = await self._db(rides.complete_ride, ride_id, actor_id=conn.identity.id)
        payload = {
            "rideId": ride.id,
            "fare": ride.fare,
            "distance": ride.distance_km,
            "duration": ride.duration_mins,
        }
        await self.manager.emit_to_room(ride.rider_id, "ride:completed", payload)
        await self.manager.emit_to_room(ride.driver_id, "ride:completed", payload)

    async def on_ride_cancel(self, conn: Connection, data) -> None:
        ride_id = _ride_id(data)
        ride = await self._db(rides.cancel_ride, ride_id, actor_id=conn.identity.id)
        await self.announce_cancellation(ride)

    async def on_location_update(self, conn: Connection, data) -> None:
        driver_id = self._require_driver(conn)
        data = data if isinstance(data, dict) else {}
        self._check_self(conn, data.get("captainId"))
        location = data.get("location")
        if not isinstance(location, dict):
            raise ValidationError("location is required")
        await self.presence.update_location(driver_id, location)
        ride_id = data.get("rideId")
        if not ride_id:
            return
        ride = await self._db(rides.get_ride, ride_id)
        if ride.driver_id != driver_id:
            raise ForbiddenError("Not your ride", rideId=ride_id)
        if ride.rider_id:
            await self.manager.emit_to_room(
                ride.rider_id, "ride:location_update", {"location": location, "rideId": ride.id}
            )

    # outbound

    async def broadcast_new_ride(self, ride: Ride) -> int:
        # Every online driver; no proximity filter
        delivered = await self.manager.send_many(
            self.presence.registry.connection_ids(), "ride:new_request", new_request_payload(ride)
        )
        logger.info("ride %s broadcast to %s drivers", ride.id, delivered)
        return delivered

    async def announce_acceptance(self, ride: Ride, accepted_via: Connection | None = None) -> None:
        driver = self.presence.registry.get(ride.driver_id)
        payload = acceptance_payload(ride, driver)
        await self.manager.emit_to_room(ride.rider_id, "ride:accepted", payload)
        winner_conns = {accepted_via.id} if accepted_via else set()
        if driver is not None:
            winner_conns.add(driver.connection_id)
        others = [cid for cid in self.presence.registry.connection_ids() if cid not in winner_conns]
        await self.manager.send_many(others, "ride:unavailable", ride.id)
        confirmation = dict(payload, pickup=ride.pickup, destination=ride.destination)
        if accepted_via is not None:
            await accepted_via.send("ride:acceptance_confirmed", confirmation)
        else:
            await self.manager.emit_to_room(ride.driver_id, "ride:acceptance_confirmed", confirmation)

    async def announce_cancellation(self, ride: Ride) -> None:
        if ride.status != rides.CANCELLED:
            return
        payload = {"rideId": ride.id}
        await self.manager.emit_to_room(ride.rider_id, "ride:cancelled", payload)
        if ride.driver_id:
            await self.manager.emit_to_room(ride.driver_id, "ride:cancelled", payload)
        else:
            # Still listed as a request on every online driver
            await self.manager.send_many(self.presence.registry.connection_ids(), "ride:unavailable", ride.id)

    async def broadcast_driver_count(self, count: int) -> None:
        await self.manager.broadcast("drivers:count", count)
