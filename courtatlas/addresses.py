"""
Address / name heuristics used by the record repair batch.

All pure functions; no I/O.
"""

from __future__ import annotations

import re
from typing import Dict, Tuple

STATE_NAME_TO_CODE: Dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "florida": "FL", "georgia": "GA",
    "hawaii": "HI", "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV", "new hampshire": "NH",
    "new jersey": "NJ", "new mexico": "NM", "new york": "NY", "north carolina": "NC",
    "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD", "tennessee": "TN",
    "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
    "dc": "DC",
}

_GENERIC_SPORT_NAME = re.compile(r"^(basketball|tennis|pickleball) courts?$", re.I)
_GENERIC_COURT_NAME = re.compile(r"^courts?\s*\d*$", re.I)
_TWO_LETTERS = re.compile(r"^[A-Za-z]{2}$")
_STATE_TOKEN = re.compile(r"\b([A-Za-z]{2})\b")
_NUMERIC_STREET = re.compile(r"^\d{3,6}\s")

_SMALL_WORDS = {"of", "and", "the", "at", "in", "on", "for", "to"}
_STATE_CODES = frozenset(STATE_NAME_TO_CODE.values())


def is_missing_address(s: str) -> bool:
    t = (s or "").strip()
    return not t or t.lower() == "address not specified"


def is_missing_or_generic_name(s: str) -> bool:
    t = (s or "").strip()
    if not t:
        return True
    if t.lower() == "unknown park":
        return True
    return bool(_GENERIC_SPORT_NAME.match(t) or _GENERIC_COURT_NAME.match(t))


def is_two_letter_state(s: str) -> bool:
    return bool(_TWO_LETTERS.match(s or ""))


def canon_state(state: str) -> str:
    """Full name or code -> two-letter code; unknown values are upper-cased as-is."""
    s = (state or "").strip()
    if not s:
        return s
    if is_two_letter_state(s):
        return s.upper()
    return STATE_NAME_TO_CODE.get(s.lower(), s.upper())


def street_from_address(address: str) -> str:
    a = address or ""
    if not a.strip():
        return ""
    return a.split(",", 1)[0].strip()


def looks_numeric_street(street: str) -> bool:
    return bool(_NUMERIC_STREET.match(street or ""))


def sport_plural_label(sport: str) -> str:
    if sport in ("tennisSingles", "tennisDoubles"):
        return "Tennis Courts"
    if sport in ("pickleballSingles", "pickleballDoubles"):
        return "Pickleball Courts"
    return "Basketball Courts"


def sport_family(sport: str) -> str:
    s = sport or ""
    if "tennis" in s:
        return "tennis"
    if "pickle" in s:
        return "pickleball"
    return "basketball"


def fallback_name(*, address: str, city: str, sport: str) -> str:
    """"{street} — {label}", else "{city} — {label}", else just the label."""
    label = sport_plural_label(sport or "basketball")
    street = street_from_address(address)
    if street and not looks_numeric_street(street):
        return f"{street} — {label}"
    if (city or "").strip():
        return f"{city.strip()} — {label}"
    return label


def parse_city_state(address: str) -> Tuple[str, str]:
    """
    Best-effort (city, state) from a comma-separated address.

    First pass looks for a known two-letter code ("Austin, TX 78701"); second pass
    for a full state name ("Austin, Texas"). City is the part before the match.
    Parts are scanned from the end, and the leading street part is skipped when
    there is more than one part ("12 Oak Ct, Austin, TX" is not Connecticut).
    """
    parts = [p.strip() for p in (address or "").split(",")]
    first = 1 if len(parts) > 1 else 0
    order = range(len(parts) - 1, first - 1, -1)
    city = ""
    state = ""
    for i in order:
        codes = [t.upper() for t in _STATE_TOKEN.findall(parts[i]) if t.upper() in _STATE_CODES]
        if codes:
            state = codes[-1]
            if i > 0:
                city = parts[i - 1]
            break
    if not state:
        for i in order:
            part = parts[i]
            code = STATE_NAME_TO_CODE.get(part.lower())
            if code:
                state = code
                if i > 0:
                    city = parts[i - 1]
                break
    return city.strip(), canon_state(state)


def title_case(s: str) -> str:
    if not (s or "").strip():
        return s
    words = s.lower().split()
    capped = [w[:1].upper() + w[1:] for w in words]
    for i in range(1, len(capped) - 1):
        if capped[i].lower() in _SMALL_WORDS:
            capped[i] = capped[i].lower()
    return " ".join(capped)


def cluster_key(lat: float, lon: float, decimals: int = 3) -> str:
    return f"{float(lat):.{decimals}f},{float(lon):.{decimals}f}"
