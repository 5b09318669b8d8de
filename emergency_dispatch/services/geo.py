"""
Coordinate normalization, repair and distance utilities
"""
import math
from collections.abc import Mapping, Sequence
from typing import Any, Dict, Optional, Tuple

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.exceptions import ValidationError, ErrorCodes
from emergency_dispatch.core.logging import get_logger, BusinessEventType
from emergency_dispatch.models.dispatch import GeoCoordinate

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0

MIN_LONGITUDE, MAX_LONGITUDE = -180.0, 180.0
MIN_LATITUDE, MAX_LATITUDE = -90.0, 90.0


class CoordinateParseError(ValueError):
    """Raised when a location input cannot be read as a coordinate pair"""


def _to_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise CoordinateParseError(f"Not a number: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise CoordinateParseError(f"Not a number: {value!r}") from e
    if not math.isfinite(number):
        raise CoordinateParseError(f"Not a finite number: {value!r}")
    return number


def parse_coordinate(raw: Any) -> Tuple[float, float]:
    """
    Read a location input as a raw (longitude, latitude) pair

    Accepted shapes:
        - GeoCoordinate
        - [longitude, latitude] sequence
        - "longitude,latitude" string
        - {"longitude": .., "latitude": ..} mapping (lng/lon/lat aliases)
        - GeoJSON Point mapping

    Values are not range checked here.

    Raises:
        CoordinateParseError: input has none of the accepted shapes
    """
    if isinstance(raw, GeoCoordinate):
        return raw.longitude, raw.latitude

    if isinstance(raw, str):
        parts = [part.strip() for part in raw.split(",")]
        if len(parts) != 2:
            raise CoordinateParseError(f"Expected 'lon,lat' string, got {raw!r}")
        return _to_float(parts[0]), _to_float(parts[1])

    if isinstance(raw, Mapping):
        if "coordinates" in raw:
            return parse_coordinate(raw["coordinates"])
        longitude = next((raw[key] for key in ("longitude", "lng", "lon") if key in raw), None)
        latitude = next((raw[key] for key in ("latitude", "lat") if key in raw), None)
        if longitude is None or latitude is None:
            raise CoordinateParseError("Mapping must contain longitude and latitude")
        return _to_float(longitude), _to_float(latitude)

    if isinstance(raw, Sequence) and not isinstance(raw, (bytes, bytearray)):
        if len(raw) != 2:
            raise CoordinateParseError(f"Expected two values, got {len(raw)}")
        return _to_float(raw[0]), _to_float(raw[1])

    raise CoordinateParseError(f"Unsupported coordinate input: {type(raw).__name__}")


def is_valid_pair(longitude: float, latitude: float) -> bool:
    return (
        math.isfinite(longitude) and math.isfinite(latitude)
        and MIN_LONGITUDE <= longitude <= MAX_LONGITUDE
        and MIN_LATITUDE <= latitude <= MAX_LATITUDE
    )


def validate(raw: Any) -> bool:
    """True iff the input parses to finite, in-range longitude and latitude"""
    try:
        longitude, latitude = parse_coordinate(raw)
    except CoordinateParseError:
        return False
    return is_valid_pair(longitude, latitude)


def default_coordinate() -> GeoCoordinate:
    return GeoCoordinate(longitude=settings.DEFAULT_LONGITUDE, latitude=settings.DEFAULT_LATITUDE)


def looks_swapped(longitude: float, latitude: float) -> bool:
    """Latitude-sized longitude paired with a longitude-sized latitude"""
    return abs(longitude) <= settings.SWAP_MAX_LONGITUDE and abs(latitude) >= settings.SWAP_MIN_LATITUDE


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def repair(raw: Any, context: Optional[Dict[str, Any]] = None) -> Optional[GeoCoordinate]:
    """
    Turn any location input into a usable coordinate

    Swaps pairs that look swapped, clamps each axis into range and falls back to
    the configured default when the input cannot be parsed. ``None`` stays
    ``None``. Every changed value is logged with before and after values.
    """
    if raw is None:
        return None

    try:
        longitude, latitude = parse_coordinate(raw)
    except CoordinateParseError as e:
        repaired = default_coordinate()
        _log_repair(raw, repaired, "unparseable", context, error=str(e))
        return repaired

    reason = None
    if looks_swapped(longitude, latitude):
        longitude, latitude = latitude, longitude
        reason = "swapped"

    clamped_longitude = _clamp(longitude, MIN_LONGITUDE, MAX_LONGITUDE)
    clamped_latitude = _clamp(latitude, MIN_LATITUDE, MAX_LATITUDE)
    if (clamped_longitude, clamped_latitude) != (longitude, latitude):
        reason = f"{reason}+clamped" if reason else "clamped"

    repaired = GeoCoordinate(longitude=clamped_longitude, latitude=clamped_latitude)
    if reason:
        _log_repair(raw, repaired, reason, context)
    return repaired


def _log_repair(raw: Any, repaired: GeoCoordinate, reason: str, context: Optional[Dict[str, Any]], **extra):
    before = raw.as_list() if isinstance(raw, GeoCoordinate) else raw
    logger.business_event(
        BusinessEventType.COORDINATE_REPAIRED,
        before=repr(before),
        after=repaired.as_list(),
        reason=reason,
        **(context or {}),
        **extra
    )


def require_location(raw: Any, field: str = "location", context: Optional[Dict[str, Any]] = None) -> GeoCoordinate:
    """Boundary normalization: a location must be supplied, then it is repaired"""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError(f"{field} is required", field=field, error_code=ErrorCodes.INVALID_COORDINATES)
    return repair(raw, context=context)


def haversine_km(origin: GeoCoordinate, target: GeoCoordinate) -> float:
    """Great-circle distance in kilometers"""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(target.latitude)
    delta_lat = math.radians(target.latitude - origin.latitude)
    delta_lon = math.radians(target.longitude - origin.longitude)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def calculate_eta_minutes(distance_km: float, speed_kmh: Optional[float] = None) -> int:
    """Minutes to cover a straight-line distance at the average urban speed"""
    speed = speed_kmh or settings.AVERAGE_SPEED_KMH
    return max(0, math.ceil(distance_km / speed * 60))


def format_eta(minutes: int) -> str:
    if minutes < 1:
        return "<1 minute"
    if minutes == 1:
        return "1 minute"
    if minutes < 60:
        return f"{minutes} minutes"

    hours, remainder = divmod(minutes, 60)
    text = f"{hours} hour{'s' if hours > 1 else ''}"
    if remainder:
        text += f" {remainder} minute{'s' if remainder > 1 else ''}"
    return text
