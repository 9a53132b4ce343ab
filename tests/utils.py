import math
import time

from captain_dispatch.auth import create_access_token
from captain_dispatch.errors import RouteUnavailableError
from captain_dispatch.maps import Coordinates, RouteInfo


class FakeMaps:
    """Routing provider with a fixed answer; flip ``fail`` to simulate an outage."""

    def __init__(self, distance_km: float = 10.0, duration_seconds: int = 1500):
        self.distance_km = distance_km
        self.duration_seconds = duration_seconds
        self.fail = False
        self.calls = []

    def distance_and_duration(self, origin, destination):
        self.calls.append((origin, destination))
        if self.fail:
            raise RouteUnavailableError()
        return RouteInfo(
            distance_km=self.distance_km,
            duration_seconds=self.duration_seconds,
            duration_text=f"{math.ceil(self.duration_seconds / 60)} mins",
            distance_text=f"{self.distance_km:g} km",
        )

    def geocode(self, address):
        if self.fail:
            raise RouteUnavailableError("Unable to get coordinates for the provided address")
        return Coordinates(lat=12.9716, lng=77.5946)


def token(user_id: str, role: str = "rider", name: str | None = None) -> str:
    return create_access_token(user_id, role=role, name=name)


def auth(user_id: str, role: str = "rider", name: str | None = None) -> dict:
    return {"Authorization": f"Bearer {token(user_id, role=role, name=name)}"}


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


_ANY = object()


def receive_until(ws, event: str, data=_ANY, limit: int = 50):
    """Read frames until ``event`` arrives; skips driver count pushes and the like.

    With ``data`` given, frames of the same event carrying other data are skipped too.
    """
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("event") != event:
            continue
        if data is _ANY or frame["data"] == data:
            return frame["data"]
    raise AssertionError(f"{event} not received within {limit} frames")
