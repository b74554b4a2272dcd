import math
import uuid
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    """Normalise an incoming datetime to naive UTC. Naive input is taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(dt_value) -> datetime | None:
    """Parse datetime from string (SQLite returns text) or return as-is."""
    if dt_value is None:
        return None
    if isinstance(dt_value, str):
        return to_utc_naive(datetime.fromisoformat(dt_value.replace(' ', 'T').replace('Z', '+00:00')))
    return dt_value


def to_iso8601(dt: datetime | str | None) -> str | None:
    """Convert datetime to ISO8601 string format, handling both datetime objects and strings"""
    if dt is None:
        return None
    if isinstance(dt, datetime):
        return dt.isoformat()
    try:
        return parse_datetime(dt).isoformat()
    except (ValueError, AttributeError):
        return dt


EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lng, max_lng) enclosing a circle of radius_km."""
    d_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return lat - d_lat, lat + d_lat, -180.0, 180.0
    d_lng = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    if lng - d_lng < -180.0 or lng + d_lng > 180.0:
        # Circle crosses the antimeridian
        return lat - d_lat, lat + d_lat, -180.0, 180.0
    return lat - d_lat, lat + d_lat, lng - d_lng, lng + d_lng
