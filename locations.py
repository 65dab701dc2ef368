"""
Location normalization and location matching.

Free-text locations are canonicalized (lower case, punctuation stripped,
whitespace collapsed) and expanded with known country, US state and Indian
state abbreviations so "Austin, TX" and "austin texas" compare equal.
"""
import itertools
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

from errors import ValidationError
from geo import haversine_miles

STRICT = "strict"
FLEXIBLE = "flexible"

COUNTRIES: Dict[str, List[str]] = {
    "united states": ["usa", "us", "united states of america"],
    "india": ["in", "ind", "bharat"],
    "united kingdom": ["uk", "gb", "great britain", "britain"],
    "canada": ["ca", "can"],
    "australia": ["au", "aus"],
    "germany": ["de", "deutschland"],
    "france": ["fr", "fra"],
    "italy": ["it", "ita"],
    "spain": ["es", "esp"],
    "japan": ["jp", "jpn"],
    "china": ["cn", "chn"],
    "brazil": ["br", "bra"],
    "mexico": ["mx", "mex"],
    "russia": ["ru", "rus"],
    "south africa": ["za", "rsa"],
}

US_STATES: Dict[str, str] = {
    "al": "alabama", "ak": "alaska", "az": "arizona", "ar": "arkansas", "ca": "california",
    "co": "colorado", "ct": "connecticut", "de": "delaware", "fl": "florida", "ga": "georgia",
    "hi": "hawaii", "id": "idaho", "il": "illinois", "in": "indiana", "ia": "iowa",
    "ks": "kansas", "ky": "kentucky", "la": "louisiana", "me": "maine", "md": "maryland",
    "ma": "massachusetts", "mi": "michigan", "mn": "minnesota", "ms": "mississippi", "mo": "missouri",
    "mt": "montana", "ne": "nebraska", "nv": "nevada", "nh": "new hampshire", "nj": "new jersey",
    "nm": "new mexico", "ny": "new york", "nc": "north carolina", "nd": "north dakota", "oh": "ohio",
    "ok": "oklahoma", "or": "oregon", "pa": "pennsylvania", "ri": "rhode island", "sc": "south carolina",
    "sd": "south dakota", "tn": "tennessee", "tx": "texas", "ut": "utah", "vt": "vermont",
    "va": "virginia", "wa": "washington", "wv": "west virginia", "wi": "wisconsin", "wy": "wyoming",
    "dc": "district of columbia",
}

INDIAN_STATES: Dict[str, str] = {
    "ap": "andhra pradesh", "ar": "arunachal pradesh", "as": "assam", "br": "bihar",
    "ct": "chhattisgarh", "ga": "goa", "gj": "gujarat", "hr": "haryana", "hp": "himachal pradesh",
    "jh": "jharkhand", "ka": "karnataka", "kl": "kerala", "mp": "madhya pradesh", "mh": "maharashtra",
    "mn": "manipur", "ml": "meghalaya", "mz": "mizoram", "nl": "nagaland", "or": "odisha",
    "pb": "punjab", "rj": "rajasthan", "sk": "sikkim", "tn": "tamil nadu", "tg": "telangana",
    "tr": "tripura", "up": "uttar pradesh", "ut": "uttarakhand", "wb": "west bengal",
}


def _build_lookup() -> Dict[str, List[List[str]]]:
    # phrase -> every expansion it can stand for, in table order (country, US state, Indian state)
    lookup: Dict[str, List[List[str]]] = {}

    def claim(phrase: str, expansion: List[str]):
        readings = lookup.setdefault(phrase, [])
        if expansion not in readings:
            readings.append(expansion)

    for full, abbreviations in COUNTRIES.items():
        for phrase in [full] + abbreviations:
            claim(phrase, [full] + abbreviations)
    for table in (US_STATES, INDIAN_STATES):
        for abbrev, full in table.items():
            claim(abbrev, [full, abbrev])
            claim(full, [full, abbrev])
    return lookup


_LOOKUP = _build_lookup()
_MAX_PHRASE = max(len(p.split()) for p in _LOOKUP)
_PUNCTUATION = re.compile(r"[,.\-]")
_SPACES = re.compile(r"\s+")
MAX_READINGS = 8


@dataclass(frozen=True)
class Place:
    """A location as posted: free text plus optional coordinates."""
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def point(self):
        return (self.latitude, self.longitude)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_dict(cls, data: dict) -> "Place":
        return cls(data.get("address") or "", data.get("latitude"), data.get("longitude"))

    def to_dict(self) -> dict:
        return {"address": self.address, "latitude": self.latitude, "longitude": self.longitude}


def canonicalize(location: str) -> str:
    normalized = _PUNCTUATION.sub(" ", location.lower())
    return _SPACES.sub(" ", normalized).strip()


def _segments(location: str) -> List[List[List[str]]]:
    """Greedy longest-phrase split; each segment lists the word groups it may read as."""
    words = canonicalize(location).split(" ")
    segments: List[List[List[str]]] = []
    i = 0
    while i < len(words):
        for size in range(min(_MAX_PHRASE, len(words) - i), 0, -1):
            phrase = " ".join(words[i:i + size])
            if phrase in _LOOKUP:
                segments.append([expansion + [phrase] for expansion in _LOOKUP[phrase]])
                i += size
                break
        else:
            segments.append([[words[i]]])
            i += 1
    return segments


def _readings(location: str) -> List[str]:
    """Normalized strings for every reading of ambiguous abbreviations ("ca": Canada or California).

    The first reading prefers countries, then US states, then Indian states.
    """
    out: List[str] = []
    for choice in itertools.islice(itertools.product(*_segments(location)), MAX_READINGS):
        words = [w for group in choice for w in group]
        # de-duplicate, keep first-seen order
        reading = " ".join(dict.fromkeys(words))
        if reading not in out:
            out.append(reading)
    return out


def normalize_location(location: str) -> str:
    """Canonical, abbreviation-expanded form used for text comparison."""
    if not location:
        return location
    return _readings(location)[0]


def location_variants(location: str) -> Set[str]:
    """Every token variant the location expands to, across all readings."""
    if not location:
        return set()
    return {w for segment in _segments(location) for group in segment for w in group}


def _text_contains(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return any(na in nb or nb in na for na in _readings(a) for nb in _readings(b))


def _strict_equal(candidate: str, search: str) -> bool:
    if not candidate or not search:
        return False
    targets = set(_readings(search))
    if targets & set(_readings(candidate)):
        return True
    # "Paris" names the locality of "Paris, France"
    locality = candidate.split(",", 1)[0]
    return bool(targets & set(_readings(locality)))


def location_matches(candidate: Place, waypoints: Sequence[Place], search: Place,
                     mode: str = FLEXIBLE, radius_miles: Optional[float] = None) -> bool:
    """Decide whether a posted location (with its stops) satisfies a searched one."""
    if mode == STRICT:
        return _strict_equal(candidate.address, search.address)
    if mode != FLEXIBLE:
        raise ValidationError(f"unknown match mode {mode!r}")
    if radius_miles is not None and radius_miles < 0:
        raise ValidationError("radius must not be negative")

    stops = list(waypoints or ())
    if _text_contains(candidate.address, search.address):
        return True
    if any(_text_contains(stop.address, search.address) for stop in stops):
        return True

    if radius_miles is None or not search.has_coordinates:
        return False
    for place in [candidate] + stops:
        if place.has_coordinates and haversine_miles(place.point, search.point) <= radius_miles:
            return True
    return False
