from __future__ import annotations

import re
from collections.abc import Sequence

from prompt_composer.framework.components import ConceptBundle

IDENTITY_ANCHOR = (
    "Woman maintaining exactly the characteristics of the person in the attachment "
    "(face, visual identity), without copying the photo."
)
DEFAULT_STYLING = "Hair loose with volume and waves. Natural glam makeup."
FALLBACK_TITLE = "Lifestyle Shot"

_CATEGORY_AESTHETICS: tuple[tuple[str, tuple[str, str]], ...] = (
    ("luxury", ("luxury", "sophisticated")),
    ("workout", ("active", "wellness")),
    ("editorial", ("editorial", "fashion")),
)
_TITLE_STOPWORDS = frozenset({"woman", "photo", "image"})
_POSE_ACTION_RE = re.compile(
    r"(walks|standing|sitting|kneeling|holding|adjusting|wearing)[\s\w]+",
    re.IGNORECASE,
)


def derive_aesthetic(bundle: ConceptBundle, category: str) -> str:
    """Closing mood phrase from the category name and the lighting/location text."""

    keywords: list[str] = []
    category_text = category.lower()
    for needle, words in _CATEGORY_AESTHETICS:
        if needle in category_text:
            keywords.extend(words)

    lighting_text = bundle.lighting.text.lower()
    if "golden hour" in lighting_text:
        keywords.extend(("warm", "cinematic"))
    if "studio" in lighting_text:
        keywords.extend(("professional", "clean"))
    if "minimal" in bundle.location.text.lower():
        keywords.extend(("minimalist", "clean"))

    if len(keywords) >= 2:
        return f"{keywords[0]} and {keywords[1]} aesthetic"
    if keywords:
        return f"{keywords[0]} aesthetic"
    return ""


def join_sections(sections: Sequence[str]) -> str:
    text = ". ".join(section.strip() for section in sections if section and section.strip())
    return text.replace("..", ".").replace(". ,", ",").strip()


def assemble_prompt_text(bundle: ConceptBundle, category: str) -> str:
    """
    Concatenate the fixed-order prompt sections for ``bundle``.

    Order: identity anchor, outfit fused with pose, styling (or the default
    hair/makeup line), location, lighting, brand elements, camera, aesthetic.
    """

    sections = [
        IDENTITY_ANCHOR,
        f"{bundle.outfit.text}, {bundle.pose.text}",
        bundle.styling.text if bundle.styling is not None else DEFAULT_STYLING,
        bundle.location.text,
        bundle.lighting.text,
    ]
    if bundle.brand_elements:
        sections.append(". ".join(element.text for element in bundle.brand_elements))
    sections.append(bundle.camera.text)
    sections.append(derive_aesthetic(bundle, category))
    return join_sections(sections)


def word_count(text: str) -> int:
    return len(text.split())


def extract_keyword(text: str) -> str:
    for word in text.lower().split(" "):
        if len(word) > 4 and word not in _TITLE_STOPWORDS:
            return word
    return ""


def generate_title(bundle: ConceptBundle) -> str:
    pose_keyword = extract_keyword(bundle.pose.description).capitalize()
    location_keyword = extract_keyword(bundle.location.description).capitalize()

    if location_keyword and pose_keyword:
        return f"{location_keyword} {pose_keyword}"
    if pose_keyword:
        return pose_keyword
    if location_keyword:
        return f"{location_keyword} Scene"
    return FALLBACK_TITLE


def extract_action(text: str) -> str:
    match = _POSE_ACTION_RE.search(text)
    return match.group(0).strip() if match else ""


def simplify_location(text: str) -> str:
    lowered = text.lower()
    if "terrace" in lowered:
        return "modern terrace"
    if "cafe" in lowered or "café" in lowered:
        return "cozy café"
    for place in ("beach", "studio", "airport"):
        if place in lowered:
            return place
    return "location"


def lighting_mood(text: str) -> str:
    lowered = text.lower()
    if "golden hour" in lowered:
        return "in golden hour light"
    if "soft" in lowered:
        return "with soft, natural lighting"
    return ""


def generate_description(bundle: ConceptBundle) -> str:
    parts = [
        extract_action(bundle.pose.text),
        f"at {simplify_location(bundle.location.text)}",
        lighting_mood(bundle.lighting.text),
    ]
    description = " ".join(part for part in parts if part)
    return description[:1].upper() + description[1:]
