"""Distance and arrival-time estimation."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

import requests

from .models import Facility, Location

logger = logging.getLogger("scannerlink")

EARTH_RADIUS_MILES = 3959.0
METERS_TO_MILES = 0.000621371
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


@dataclass(frozen=True)
class DistanceResult:
    distance_miles: float
    duration_minutes: Optional[int] = None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_eta(
    distance_miles: float,
    average_speed_mph: float = 40.0,
    allowance_minutes: int = 2,
) -> int:
    drive_minutes = distance_miles / average_speed_mph * 60
    return round_half_up(drive_minutes) + allowance_minutes


def heuristic_eta(description: Optional[str]) -> int:
    if not description:
        return 8
    lowered = description.lower()
    if "i-" in lowered or "interstate" in lowered:
        return 12
    if "downtown" in lowered:
        return 6
    if "residential" in lowered:
        return 10
    return 8


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class GoogleMapsDistance:
    """Driving distance from the Google Distance Matrix API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("GOOGLE_MAPS_API_KEY", "")
        self.timeout = timeout
        self.session = session or requests.Session()
        if not self.api_key:
            logger.warning("Google Maps API key not configured for distance lookups")

    def lookup(self, origin: Location, destination: Facility) -> Optional[DistanceResult]:
        if not self.api_key or not origin.has_coordinates or not destination.address:
            return None
        params = {
            "origins": f"{origin.latitude},{origin.longitude}",
            "destinations": destination.address,
            "units": "imperial",
            "mode": "driving",
            "key": self.api_key,
        }
        try:
            resp = self.session.get(DISTANCE_MATRIX_URL, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Distance Matrix request failed: %s", exc)
            return None

        rows = data.get("rows") or []
        elements = rows[0].get("elements") if rows else None
        if data.get("status") != "OK" or not elements:
            logger.warning(
                "Distance Matrix error: %s %s", data.get("status"), data.get("error_message", "")
            )
            return None
        element = elements[0]
        if element.get("status") != "OK":
            logger.warning("Route to %s not found: %s", destination.name, element.get("status"))
            return None
        miles = round(element["distance"]["value"] * METERS_TO_MILES, 1)
        minutes = round_half_up(element["duration"]["value"] / 60)
        return DistanceResult(distance_miles=miles, duration_minutes=minutes)


class HaversineDistance:
    """Straight-line distance to facilities with known coordinates."""

    def __init__(self, average_speed_mph: float = 40.0) -> None:
        self.average_speed_mph = average_speed_mph

    def lookup(self, origin: Location, destination: Facility) -> Optional[DistanceResult]:
        if not origin.has_coordinates:
            return None
        if destination.latitude is None or destination.longitude is None:
            return None
        miles = haversine_miles(
            origin.latitude, origin.longitude, destination.latitude, destination.longitude
        )
        minutes = round_half_up(miles / self.average_speed_mph * 60)
        return DistanceResult(distance_miles=round(miles, 1), duration_minutes=minutes)


class ChainedDistance:
    """Ask each provider in turn; the first result wins."""

    def __init__(self, providers: Iterable) -> None:
        self.providers: List = list(providers)

    def lookup(self, origin: Location, destination: Facility) -> Optional[DistanceResult]:
        for provider in self.providers:
            result = provider.lookup(origin, destination)
            if result is not None:
                return result
        return None


def build_distance(config, average_speed_mph: float = 40.0):
    """Distance collaborator for a DistanceConfig."""
    haversine = HaversineDistance(average_speed_mph)
    if config.provider == "google":
        google = GoogleMapsDistance(config.api_key, timeout=config.timeout_seconds)
        return ChainedDistance([google, haversine])
    if config.provider == "haversine":
        return haversine
    if config.provider == "none":
        return None
    raise ValueError(f"Unknown distance provider: {config.provider}")
