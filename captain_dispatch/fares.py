from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .config import FareRate, settings
from .errors import FareUnavailableError, InvalidInputError, RouteUnavailableError
from .maps import Coordinates, RouteInfo, get_maps_provider


logger = logging.getLogger("dispatch.fares")


@dataclass(frozen=True)
class EtaEstimate:
    minutes: int
    human_label: str
    distance_label: str


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fare_for_distance(distance_km: float, rate: FareRate) -> int:
    return round_half_up(max(rate.base_fare + distance_km * rate.per_km, rate.min_fare))


def usable_distance(km) -> bool:
    return km is not None and math.isfinite(km) and km > 0


def resolve_route(pickup: str, destination: str, maps=None) -> RouteInfo:
    """Route between two addresses, rejecting blank input and unusable distances."""
    if not (pickup or "").strip() or not (destination or "").strip():
        raise InvalidInputError()
    maps = maps or get_maps_provider()
    route = maps.distance_and_duration(pickup, destination)
    if not usable_distance(route.distance_km):
        raise RouteUnavailableError("Invalid distance calculation")
    return route


def fares_for_route(route: RouteInfo, rates: dict[str, FareRate] | None = None) -> dict[str, int]:
    rates = rates if rates is not None else settings.VEHICLE_FARE_RATES
    return {vehicle: fare_for_distance(route.distance_km, rate) for vehicle, rate in rates.items()}


def estimate_fares(pickup: str, destination: str, maps=None) -> dict[str, int]:
    route = resolve_route(pickup, destination, maps=maps)
    fares = fares_for_route(route)
    logger.debug("fares %.2f km: %s", route.distance_km, fares)
    return fares


def fare_for(vehicle_type: str, fares: dict[str, int]) -> int:
    fare = fares.get((vehicle_type or "").strip().lower())
    if not fare:
        raise FareUnavailableError(f"Could not calculate fare for vehicle type: {vehicle_type}")
    return fare


def format_duration_label(minutes: int) -> str:
    if minutes >= 60:
        hours, rest = divmod(minutes, 60)
        return f"{hours} hr {rest} min ride" if rest > 0 else f"{hours} hr ride"
    return f"{minutes} min ride"


def estimate_eta(pickup: Coordinates, destination: Coordinates, maps=None) -> EtaEstimate:
    if pickup is None or destination is None:
        raise InvalidInputError("Pickup and destination coordinates are required")
    maps = maps or get_maps_provider()
    route = maps.distance_and_duration(pickup, destination)
    minutes = math.ceil(route.duration_seconds / 60)
    return EtaEstimate(
        minutes=minutes,
        human_label=format_duration_label(minutes),
        distance_label=route.distance_text,
    )


def estimate_eta_for_addresses(pickup: str, destination: str, maps=None) -> EtaEstimate:
    if not (pickup or "").strip() or not (destination or "").strip():
        raise InvalidInputError("Pickup and destination addresses are required")
    maps = maps or get_maps_provider()
    return estimate_eta(maps.geocode(pickup), maps.geocode(destination), maps=maps)
