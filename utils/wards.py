"""Municipal ward gazetteer: ids, canonical names, zones and area lookups."""
from __future__ import annotations

import re
from typing import Dict, List, NamedTuple, Optional

MIN_WARD_ID = 1
MAX_WARD_ID = 250


class Ward(NamedTuple):
    id: int
    name: str
    zone: str


# Inclusive id ranges per administrative zone.
ZONE_RANGES: tuple[tuple[int, int, str], ...] = (
    (1, 20, "Narela"),
    (21, 40, "Civil Lines"),
    (41, 60, "Rohini"),
    (61, 80, "Keshav Puram"),
    (81, 100, "City SP"),
    (101, 120, "Karol Bagh"),
    (121, 145, "West"),
    (146, 165, "Najafgarh"),
    (166, 190, "Central"),
    (191, 215, "South"),
    (216, 233, "Shahdara South"),
    (234, 250, "Shahdara North"),
)

_NAMED_WARDS: Dict[int, str] = {
    1: "Narela",
    4: "Alipur",
    6: "Burari",
    15: "Bawana",
    22: "Timarpur",
    27: "Model Town",
    31: "Azadpur",
    35: "Jahangir Puri",
    38: "Adarsh Nagar",
    45: "Rohini",
    49: "Rithala",
    53: "Pitampura",
    57: "Shalimar Bagh",
    62: "Ashok Vihar",
    66: "Wazirpur",
    71: "Shakur Pur",
    76: "Tri Nagar",
    82: "Chandni Chowk",
    86: "Daryaganj",
    90: "Sadar Bazar",
    95: "Paharganj",
    103: "Karol Bagh",
    108: "Patel Nagar",
    113: "Rajinder Nagar",
    118: "Connaught Place",
    124: "Punjabi Bagh",
    128: "Paschim Vihar",
    133: "Rajouri Garden",
    138: "Janakpuri",
    143: "Uttam Nagar",
    148: "Dwarka",
    155: "Najafgarh",
    161: "Palam",
    168: "Lajpat Nagar",
    173: "Defence Colony",
    178: "Okhla",
    183: "Jangpura",
    193: "Hauz Khas",
    197: "Malviya Nagar",
    201: "Saket",
    205: "Mehrauli",
    209: "Vasant Kunj",
    211: "Kalkaji",
    213: "Greater Kailash",
    218: "Laxmi Nagar",
    223: "Mayur Vihar",
    227: "Preet Vihar",
    231: "Vishwas Nagar",
    236: "Shahdara",
    240: "Seelampur",
    244: "Yamuna Vihar",
    248: "Karawal Nagar",
}

# Common local names that do not match a ward name verbatim.
_AREA_ALIASES: Dict[str, int] = {
    "CP": 118,
    "Old Delhi": 82,
    "Jama Masjid": 82,
    "Red Fort": 82,
    "Sarita Vihar": 178,
    "Jamia Nagar": 178,
    "Green Park": 193,
    "GK": 213,
    "Nehru Place": 211,
    "Vasant Vihar": 209,
    "Dilshad Garden": 236,
    "Welcome": 240,
    "Janakpuri West": 138,
    "Dwarka Sector": 148,
    "Rohini Sector": 45,
    "Mukherjee Nagar": 22,
    "Karkardooma": 231,
}


def zone_for(ward_id: int) -> Optional[str]:
    for start, end, zone in ZONE_RANGES:
        if start <= ward_id <= end:
            return zone
    return None


WARDS: Dict[int, Ward] = {
    ward_id: Ward(ward_id, name, zone_for(ward_id) or "")
    for ward_id, name in _NAMED_WARDS.items()
}

AREA_WARD_MAP: Dict[str, int] = {
    **{ward.name: ward.id for ward in WARDS.values()},
    **_AREA_ALIASES,
}


def is_valid_ward_id(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and MIN_WARD_ID <= value <= MAX_WARD_ID


def clamp_ward_id(value: int) -> int:
    return min(MAX_WARD_ID, max(MIN_WARD_ID, value))


def get_ward(ward_id: int) -> Optional[Ward]:
    return WARDS.get(ward_id)


def ward_label(ward_id: int) -> str:
    """Canonical ward name, or a synthesized ``Ward {id}`` label for unnamed wards."""
    ward = WARDS.get(ward_id)
    return ward.name if ward else f"Ward {ward_id}"


def lookup_area(location_text: str | None) -> Optional[int]:
    """Best-effort local match of free text against the curated area table.

    Longer area names win so "Rohini Sector 5" does not match a shorter alias first.
    """
    text = (location_text or "").strip().lower()
    if not text:
        return None
    for area in sorted(AREA_WARD_MAP, key=len, reverse=True):
        if re.search(rf"\b{re.escape(area.lower())}\b", text):
            return AREA_WARD_MAP[area]
    return None


def area_table_lines() -> List[str]:
    return [f"{area}: {ward_id}" for area, ward_id in sorted(AREA_WARD_MAP.items(), key=lambda item: item[1])]


def gazetteer() -> List[Dict]:
    return [
        {"id": ward_id, "name": ward_label(ward_id), "zone": zone_for(ward_id), "named": ward_id in WARDS}
        for ward_id in range(MIN_WARD_ID, MAX_WARD_ID + 1)
    ]


AQI_BANDS: tuple[tuple[int, str], ...] = (
    (50, "Good"),
    (100, "Moderate"),
    (150, "Unhealthy for Sensitive"),
    (200, "Unhealthy"),
    (300, "Very Unhealthy"),
)


def aqi_category(aqi: int | float | None) -> Optional[str]:
    if aqi is None:
        return None
    for upper, label in AQI_BANDS:
        if aqi <= upper:
            return label
    return "Hazardous"


def status_from_score(score: int | float | None) -> Optional[str]:
    """Bucket a 0-100 pollution score; higher means more polluted."""
    if score is None:
        return None
    if score <= 40:
        return "good"
    if score <= 70:
        return "moderate"
    return "poor"


def status_label(status: str | None) -> Optional[str]:
    labels = {"good": "Good", "moderate": "Moderate", "poor": "Poor"}
    return labels.get(status or "")
