# apps/utils/geo.py
import math

EARTH_RADIUS_KM = 6371
AVERAGE_SPEED_KMH = 25

SCORE_WEIGHTS = {
    "proximity": 0.4,
    "rating": 0.3,
    "completion": 0.2,
    "vehicle": 0.1,
}

VEHICLE_PRIORITY = {
    "motorcycle": 1.0,
    "scooter": 0.9,
    "car": 0.7,
    "bicycle": 0.5,
}
DEFAULT_VEHICLE_PRIORITY = 0.5
DEFAULT_RATING = 3.0
DEFAULT_COMPLETION_RATE = 0.8


def is_valid_coordinate(lat, lng):
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def haversine_km(lat1, lng1, lat2, lng2) -> float:
    """
    Great-circle distance between two points in kilometres.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Float error can push `a` a hair past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def estimate_eta_minutes(distance_km) -> int:
    return math.ceil(distance_km / AVERAGE_SPEED_KMH * 60)


def bounding_box(lat, lng, radius_km):
    """
    Returns (min_lat, max_lat, min_lng, max_lng) enclosing a circle of
    radius_km. Used as a cheap index-friendly pre-filter before haversine.
    """
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = max(-90.0, lat - lat_delta)
    max_lat = min(90.0, lat + lat_delta)

    cos_lat = math.cos(math.radians(lat))
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat < 1e-6:
        return min_lat, max_lat, -180.0, 180.0

    lng_delta = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    if lng_delta >= 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, max(-180.0, lng - lng_delta), min(180.0, lng + lng_delta)


def _clamp(value, low=0.0, high=1.0):
    return max(low, min(high, value))


def score_driver(driver, distance_km, max_distance_km) -> float:
    """
    Fitness of a candidate driver in [0, 1].

    Weighted sum of proximity, rating, completion rate and vehicle type.
    Missing stats fall back to neutral defaults so new drivers still rank.
    """
    if max_distance_km and max_distance_km > 0:
        proximity = 1 - _clamp(distance_km / max_distance_km)
    else:
        proximity = 1.0 if distance_km <= 0 else 0.0

    rating = getattr(driver, "average_rating", None) or DEFAULT_RATING
    rating_score = _clamp(float(rating) / 5)

    completion = getattr(driver, "completion_rate", None)
    if completion is None:
        completion = DEFAULT_COMPLETION_RATE
    completion_score = _clamp(float(completion))

    vehicle_score = VEHICLE_PRIORITY.get(
        getattr(driver, "vehicle_type", None), DEFAULT_VEHICLE_PRIORITY
    )

    score = (
        SCORE_WEIGHTS["proximity"] * proximity
        + SCORE_WEIGHTS["rating"] * rating_score
        + SCORE_WEIGHTS["completion"] * completion_score
        + SCORE_WEIGHTS["vehicle"] * vehicle_score
    )
    return round(_clamp(score), 2)
