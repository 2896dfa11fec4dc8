from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from math import asin, cos, radians, sin, sqrt

from app.config import settings

EARTH_RADIUS_M = 6371000.0


class GeofenceClassification(str, Enum):
    INSIDE = 'INSIDE'
    NEAR = 'NEAR'
    OUTSIDE = 'OUTSIDE'
    UNKNOWN = 'UNKNOWN'


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GeofenceResult:
    classification: GeofenceClassification
    distance_m: float | None = None
    radius_m: float | None = None

    @property
    def on_premises(self) -> bool:
        return self.classification in {GeofenceClassification.INSIDE, GeofenceClassification.NEAR}


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    d_lat = radians(b.latitude - a.latitude)
    d_lng = radians(b.longitude - a.longitude)
    s1 = sin(d_lat / 2)
    s2 = sin(d_lng / 2)
    qa = s1 * s1 + cos(radians(a.latitude)) * cos(radians(b.latitude)) * s2 * s2
    return 2 * EARTH_RADIUS_M * asin(min(1.0, sqrt(qa)))


def classify_distance(distance_m: float, radius_m: float, near_multiplier: float) -> GeofenceClassification:
    if distance_m <= radius_m:
        return GeofenceClassification.INSIDE
    if distance_m <= radius_m * near_multiplier:
        return GeofenceClassification.NEAR
    return GeofenceClassification.OUTSIDE


def evaluate(
    center: Coordinate | None,
    radius_m: float | None,
    reported: Coordinate | None,
    *,
    near_multiplier: float | None = None,
) -> GeofenceResult:
    if center is None or reported is None or radius_m is None:
        return GeofenceResult(classification=GeofenceClassification.UNKNOWN, radius_m=radius_m)

    multiplier = settings.geofence_near_multiplier if near_multiplier is None else near_multiplier
    distance = haversine_meters(center, reported)
    return GeofenceResult(
        classification=classify_distance(distance, float(radius_m), multiplier),
        distance_m=distance,
        radius_m=float(radius_m),
    )


def parse_coordinate(latitude, longitude) -> Coordinate | None:
    raw_lat = '' if latitude is None else str(latitude).strip()
    raw_lng = '' if longitude is None else str(longitude).strip()
    if raw_lat == '' and raw_lng == '':
        return None
    if raw_lat == '' or raw_lng == '':
        raise ValueError('Both latitude and longitude are required')
    try:
        lat = float(raw_lat)
        lng = float(raw_lng)
    except ValueError as exc:
        raise ValueError('Latitude and longitude must be numbers') from exc
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValueError('Coordinate is out of range')
    return Coordinate(latitude=lat, longitude=lng)


def store_center(store) -> Coordinate | None:
    if store.latitude is None or store.longitude is None:
        return None
    return Coordinate(latitude=float(store.latitude), longitude=float(store.longitude))


def store_radius(store) -> float:
    if store.geofence_radius_m is not None:
        return float(store.geofence_radius_m)
    return float(settings.default_geofence_radius_m)


def store_has_geofence(store) -> bool:
    return store_center(store) is not None


def evaluate_for_store(store, reported: Coordinate | None) -> GeofenceResult:
    center = store_center(store)
    if center is None:
        return GeofenceResult(classification=GeofenceClassification.UNKNOWN)
    return evaluate(center, store_radius(store), reported)
