"""Prompt construction for Gemini complaint classification and ward resolution."""
from __future__ import annotations

from typing import List, Optional, Tuple

from google.genai import types

from models import COMPLAINT_CATEGORIES
from utils.wards import MAX_WARD_ID, MIN_WARD_ID, area_table_lines

IMAGE_ONLY_DESCRIPTION = "See attached image for the environmental issue."

CATEGORY_RULES: dict[str, str] = {
    "air": "pollution, smoke, dust, fumes, burning",
    "water": "drainage, sewage, waterlogging, contaminated supply",
    "noise": "loud sounds, loudspeakers, construction noise",
    "transport": "traffic, roads, potholes, parking",
    "soil": "garbage and waste dumping, debris, landfill",
    "land": "encroachment, illegal construction, anything else",
}


def _location_hint(location_text: Optional[str], fallback_ward_id: Optional[int]) -> str:
    location = (location_text or "").strip()
    if location:
        return (
            f'Location entered by user: "{location}". Use it to pick the ward '
            f"({MIN_WARD_ID}-{MAX_WARD_ID}) where the complaint is. Match landmarks, areas and sectors "
            "against the AREA LOOKUP table below; if nothing matches, choose the closest area you know."
        )
    if fallback_ward_id:
        return f"No specific location given. Use ward {fallback_ward_id} (the citizen's own ward) as the complaint location."
    return "No location given. Pick the most likely ward from context, or default to ward 1 if unclear."


def build_analysis_prompt(
    description: str,
    location_text: Optional[str] = None,
    fallback_ward_id: Optional[int] = None,
) -> str:
    categories = ", ".join(COMPLAINT_CATEGORIES)
    rules = "\n".join(f"- {name}: {CATEGORY_RULES[name]}" for name in COMPLAINT_CATEGORIES)
    areas = "\n".join(area_table_lines())
    return (
        "You are an environmental complaint analyzer for Delhi municipal wards "
        f"(ids {MIN_WARD_ID}-{MAX_WARD_ID}). Analyze the complaint and its location, then respond with ONLY "
        "one minified JSON object on a single line. Do not wrap it in markdown or code fences, add no text "
        "before or after it, and never use double quotes inside string values.\n\n"
        '{"category":"<one of: ' + categories + '>",'
        '"suggestion":"<what the citizen should do next and who to contact, 1-3 sentences>",'
        f'"ward_id":<integer {MIN_WARD_ID}-{MAX_WARD_ID}>,'
        '"ward_name":"<area name from the lookup table>"}\n\n'
        f"CATEGORIES (category must be exactly one of {categories}):\n{rules}\n\n"
        f"AREA LOOKUP (area: ward_id):\n{areas}\n\n"
        f"{_location_hint(location_text, fallback_ward_id)}\n\n"
        f"Complaint from citizen:\n{description.strip() or IMAGE_ONLY_DESCRIPTION}"
    )


def build_prompt_parts(
    description: str,
    image: Optional[Tuple[bytes, str]] = None,
    location_text: Optional[str] = None,
    fallback_ward_id: Optional[int] = None,
) -> List[types.Part]:
    """Ordered message parts: the inline image (when supplied) followed by the instruction text."""
    parts: List[types.Part] = []
    if image:
        image_bytes, mime_type = image
        parts.append(types.Part.from_bytes(data=image_bytes, mime_type=mime_type))
    parts.append(types.Part.from_text(text=build_analysis_prompt(description, location_text, fallback_ward_id)))
    return parts
