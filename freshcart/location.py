"""
Location resolution: free text, GPS pins and stated distances to road
distance from Kisumu town centre.

Free text is looked up in a static gazetteer first. Misses go to the
OpenStreetMap Nominatim geocoder with directional filler stripped from the
query. Geocoded and GPS distances are straight-line (haversine) distances
scaled by a road indirection factor.
"""

import logging
import math
import re
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

import httpx

from freshcart.config import (
    GEOCODER_CANDIDATES,
    GEOCODER_CITY_CONTEXT,
    GEOCODER_COUNTRY_CODE,
    GEOCODER_COUNTRY_CONTEXT,
    GEOCODER_TIMEOUT_SECONDS,
    GEOCODER_URL,
    GEOCODER_USER_AGENT,
    GEOCODER_VIEWBOX,
    MAX_STATED_DISTANCE_KM,
    MAX_TRUSTED_GEOCODE_KM,
    REFERENCE_LAT,
    REFERENCE_LON,
    ROAD_DISTANCE_FACTOR,
)
from freshcart.models import LocationSource, ResolvedLocation

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


class GeoPoint(NamedTuple):
    lat: float
    lon: float


# Known places and their road distance (km) from Kisumu town centre.
GAZETTEER: Dict[str, float] = {
    "kisumu cbd": 0,
    "kisumu town": 0,
    "milimani": 2,
    "kondele": 3,
    "nyalenda": 3,
    "manyatta": 3,
    "nyawita": 3,
    "tom mboya": 3,
    "migosi": 4,
    "lolwe": 4,
    "dunga": 4,
    "obunga": 4,
    "bandani": 5,
    "kanyakwar": 5,
    "mamboleo": 6,
    "nyamasaria": 6,
    "kisumu airport": 6,
    "riat hills": 7,
    "riat": 8,
    "otonglo": 9,
    "kajulu": 9,
    "kibos": 10,
    "chiga": 10,
    "kisian": 12,
    "rabuor": 14,
    "maseno": 25,
    "ahero": 25,
    "kombewa": 30,
    "awasi": 38,
    "katito": 42,
}

_FILLER_PATTERNS = [
    # "near Kondele junction", "towards Kibos road", "past Alendu street"
    re.compile(
        r"\b(on|along|towards?|past|near|before|after|opposite|behind|next\s+to|by|via)"
        r"\s+[\w\s']+?\b(road|highway|rd|hwy|avenue|ave|street|st|way|junction|jn|jnc)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bon\s+\w+\s+road\b", re.IGNORECASE),
    # "Nairobi road side", "Busia road"
    re.compile(
        r"\b(nairobi|busia|kakamega|ahero|kericho|nandi)\s+(road|highway|rd|hwy|side|direction)\b",
        re.IGNORECASE,
    ),
]

_STATED_DISTANCE = re.compile(
    r"(?<![\d.,])(\d+(?:[.,]\d+)*)\s*(?:km|kms|kilomet(?:er|re)s?)\b",
    re.IGNORECASE,
)
_THOUSANDS = re.compile(r"^\d{1,3}(?:,\d{3})+(?:\.\d+)?$")
_DECIMAL_COMMA = re.compile(r"^\d+,\d{1,2}$")


# =============================================================================
# Distance math
# =============================================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_from_reference(point: GeoPoint) -> float:
    return haversine_km(REFERENCE_LAT, REFERENCE_LON, point.lat, point.lon)


def road_distance_km(straight_line_km: float, factor: float = ROAD_DISTANCE_FACTOR) -> float:
    """Scale a straight-line distance to road distance, rounded half up to whole km."""
    return float(math.floor(straight_line_km * factor + 0.5))


# =============================================================================
# Text helpers
# =============================================================================

def clean_location_text(text: str) -> str:
    """
    Strip directional filler that geocoders resolve instead of the place.

    "Rabuor, towards Ahero road" would otherwise geocode to Ahero. Falls back
    to the original text if nothing is left.
    """
    cleaned = text
    for pattern in _FILLER_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r",\s*,", ",", cleaned)
    cleaned = cleaned.strip().strip(", ").strip()
    return cleaned or text.strip()


def match_gazetteer(
    text: str,
    gazetteer: Dict[str, float] = GAZETTEER
) -> Optional[Tuple[str, float]]:
    """
    Find the longest gazetteer name occurring as a whole word in the text.

    Returns:
        (place name, road km) or None
    """
    lowered = text.lower()
    best: Optional[Tuple[str, float]] = None
    for name, distance in gazetteer.items():
        if not re.search(r"\b" + re.escape(name.lower()) + r"\b", lowered):
            continue
        if best is None or len(name) > len(best[0]):
            best = (name, distance)
    return best


def parse_distance_km(text: str, upper_bound: float = MAX_STATED_DISTANCE_KM) -> Optional[float]:
    """
    Extract an explicit distance such as "about 12km" or "7.5 kilometres".

    Values that are not positive or exceed the upper bound are rejected.
    """
    if not text:
        return None
    match = _STATED_DISTANCE.search(text)
    if not match:
        return None
    number = match.group(1)
    if _THOUSANDS.match(number):
        number = number.replace(",", "")
    elif _DECIMAL_COMMA.match(number):
        number = number.replace(",", ".")
    try:
        value = float(number)
    except ValueError:
        # e.g. "1.2.3km"
        return None
    if value <= 0 or value > upper_bound:
        return None
    return value


# =============================================================================
# Geocoder
# =============================================================================

class NominatimGeocoder:
    """
    Best-effort geocoding against an OpenStreetMap Nominatim endpoint.

    Every failure (network, HTTP status, malformed body, no plausible
    candidate) comes back as None.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        max_trusted_km: float = MAX_TRUSTED_GEOCODE_KM
    ):
        self.base_url = base_url or GEOCODER_URL
        self.client = client or httpx.Client(
            timeout=timeout or GEOCODER_TIMEOUT_SECONDS,
            headers={"User-Agent": user_agent or GEOCODER_USER_AGENT},
        )
        self.max_trusted_km = max_trusted_km

    def search(self, query: str, biased: bool = True) -> List[GeoPoint]:
        """Run one Nominatim search and return its candidate coordinates."""
        params = {
            "q": query,
            "format": "json",
            "limit": GEOCODER_CANDIDATES,
            "countrycodes": GEOCODER_COUNTRY_CODE,
        }
        if biased:
            params["viewbox"] = GEOCODER_VIEWBOX
            params["bounded"] = 0

        try:
            response = self.client.get(self.base_url, params=params)
            response.raise_for_status()
            results = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoder request failed for %r: %s", query, e)
            return []

        candidates = []
        for result in results if isinstance(results, list) else []:
            try:
                candidates.append(GeoPoint(float(result["lat"]), float(result["lon"])))
            except (KeyError, TypeError, ValueError):
                continue
        return candidates

    def closest_to_reference(self, candidates: List[GeoPoint]) -> Optional[GeoPoint]:
        if not candidates:
            return None
        return min(candidates, key=distance_from_reference)

    def geocode(self, place: str) -> Optional[GeoPoint]:
        """
        Geocode a cleaned place name.

        A query biased to the Kisumu area runs first; if it yields nothing a
        broader country-wide query is tried once. The closest candidate wins
        and is rejected if it lies beyond the trusted radius.
        """
        candidates = self.search(f"{place}, {GEOCODER_CITY_CONTEXT}", biased=True)
        if not candidates:
            candidates = self.search(f"{place}, {GEOCODER_COUNTRY_CONTEXT}", biased=False)

        best = self.closest_to_reference(candidates)
        if best is None:
            logger.info("No geocoder results for %r", place)
            return None

        straight_line = distance_from_reference(best)
        if straight_line > self.max_trusted_km:
            logger.info(
                "Geocode for %r is %.0fkm from Kisumu, treating as not found",
                place, straight_line,
            )
            return None
        return best

    def close(self):
        self.client.close()


# =============================================================================
# Resolver
# =============================================================================

LocationInput = Union[str, float, int, GeoPoint, Tuple[float, float]]


class LocationResolver:
    """
    Turns free text, GPS coordinates or a stated distance into a
    ResolvedLocation carrying the road distance used for delivery fees.
    """

    def __init__(
        self,
        geocoder: Optional[NominatimGeocoder] = None,
        gazetteer: Optional[Dict[str, float]] = None,
        road_factor: float = ROAD_DISTANCE_FACTOR
    ):
        self.geocoder = geocoder
        self.gazetteer = gazetteer if gazetteer is not None else GAZETTEER
        self.road_factor = road_factor

    def resolve(self, location: LocationInput) -> Optional[ResolvedLocation]:
        """Dispatch on the kind of input; None means not found."""
        if isinstance(location, str):
            return self.resolve_text(location)
        if isinstance(location, tuple) and len(location) == 2:
            return self.resolve_coordinates(float(location[0]), float(location[1]))
        if isinstance(location, (int, float)) and not isinstance(location, bool):
            return self.resolve_distance(float(location))
        raise TypeError(f"Unsupported location input: {location!r}")

    def resolve_text(self, text: str) -> Optional[ResolvedLocation]:
        """Gazetteer first, then the external geocoder."""
        text = (text or "").strip()
        if not text:
            return None

        hit = match_gazetteer(text, self.gazetteer)
        if hit:
            name, distance = hit
            logger.info("Gazetteer hit %r -> %s (%.0fkm)", text, name, distance)
            return ResolvedLocation(
                name=text,
                distance_km=float(distance),
                source=LocationSource.GAZETTEER,
            )

        if self.geocoder is None:
            return None

        cleaned = clean_location_text(text)
        logger.info("Geocoding %r (cleaned: %r)", text, cleaned)
        point = self.geocoder.geocode(cleaned)
        if point is None:
            return None

        return ResolvedLocation(
            name=text,
            distance_km=road_distance_km(distance_from_reference(point), self.road_factor),
            source=LocationSource.GEOCODER,
            latitude=point.lat,
            longitude=point.lon,
        )

    def resolve_coordinates(
        self,
        lat: float,
        lon: float,
        label: Optional[str] = None
    ) -> ResolvedLocation:
        """GPS pins skip the gazetteer and geocoder entirely."""
        point = GeoPoint(lat, lon)
        return ResolvedLocation(
            name=label or f"GPS ({lat:.4f}, {lon:.4f})",
            distance_km=road_distance_km(distance_from_reference(point), self.road_factor),
            source=LocationSource.GPS,
            latitude=lat,
            longitude=lon,
        )

    def resolve_distance(
        self,
        distance_km: float,
        label: Optional[str] = None
    ) -> Optional[ResolvedLocation]:
        if distance_km <= 0 or distance_km > MAX_STATED_DISTANCE_KM:
            return None
        return ResolvedLocation(
            name=label or f"About {distance_km:g} km from town",
            distance_km=distance_km,
            source=LocationSource.STATED_DISTANCE,
        )

    def resolve_message(self, text: str) -> Optional[ResolvedLocation]:
        """
        Resolve a customer's location reply.

        Falls back to an explicit distance ("about 10km") stated in the same
        text when the place itself cannot be found.
        """
        resolved = self.resolve_text(text)
        if resolved is not None:
            return resolved

        stated = parse_distance_km(text)
        if stated is None:
            return None
        logger.info("Using stated distance %.1fkm from %r", stated, text)
        return self.resolve_distance(stated, label=text.strip())
