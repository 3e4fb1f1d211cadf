"""
Keyword classification of components into small closed category sets.

Each classifier is a pure ``Component -> str`` function so it can be replaced
(e.g. by a learned model) without touching selection or diversity logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from prompt_composer.framework.components import Component, ConceptBundle

SIMILARITY_WEIGHTS: Mapping[str, float] = {
    "pose": 0.30,
    "location": 0.25,
    "lighting": 0.20,
    "outfit": 0.15,
    "framing": 0.10,
}

POSE_CATEGORIES = ("standing", "sitting", "kneeling", "movement", "lying", "yoga", "other")
LOCATION_CATEGORIES = ("outdoor", "indoor", "dining", "travel", "fitness", "other")
LIGHTING_CATEGORIES = ("golden-hour", "studio", "natural-soft", "natural-direct", "window", "warm", "other")
OUTFIT_STYLES = ("athletic", "luxury", "casual", "minimal", "other")
FRAMING_TYPES = ("close-up", "full-body", "three-quarter", "medium", "other")

# First match wins, so order matters (e.g. "studio" resolves to indoor before fitness).
_POSE_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("standing", ("standing", "stands")),
    ("sitting", ("sitting", "seated")),
    ("kneeling", ("kneeling", "kneels")),
    ("movement", ("walking", "moving")),
    ("lying", ("lying", "laying")),
    ("yoga", ("yoga", "asana")),
)

_LOCATION_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("outdoor", ("outdoor", "beach", "terrace")),
    ("indoor", ("indoor", "room", "studio")),
    ("dining", ("cafe", "restaurant")),
    ("travel", ("airport", "terminal")),
    ("fitness", ("gym", "studio", "pilates")),
)

_FRAMING_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("close-up", ("close-up", "bust")),
    ("full-body", ("full body", "feet to head")),
    ("three-quarter", ("three-quarter",)),
    ("medium", ("medium", "waist")),
)


def _first_match(text: str, rules: tuple[tuple[str, tuple[str, ...]], ...]) -> str:
    for category, keywords in rules:
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def pose_category(component: Component) -> str:
    return _first_match(component.text.lower(), _POSE_RULES)


def location_category(component: Component) -> str:
    return _first_match(component.text.lower(), _LOCATION_RULES)


def lighting_category(component: Component) -> str:
    text = component.text.lower()
    if "golden hour" in text or "sunset" in text:
        return "golden-hour"
    if "studio" in text or "flash" in text:
        return "studio"
    if "natural" in text and "soft" in text:
        return "natural-soft"
    if "natural" in text and "direct" in text:
        return "natural-direct"
    if "window" in text:
        return "window"
    if "firelight" in text or "warm" in text:
        return "warm"
    return "other"


def outfit_style(component: Component) -> str:
    text = component.text.lower()
    tags = component.tags

    def hit(*words: str) -> bool:
        return any(word in tags or word in text for word in words)

    if "athleisure" in tags or hit("athletic", "sport"):
        return "athletic"
    if hit("luxury", "editorial"):
        return "luxury"
    if hit("casual"):
        return "casual"
    if hit("minimal"):
        return "minimal"
    return "other"


def framing_type(component: Component) -> str:
    return _first_match(component.text.lower(), _FRAMING_RULES)


@dataclass(frozen=True)
class BundleClassifier:
    """The five per-dimension classifiers used to compare bundles."""

    pose: Callable[[Component], str] = pose_category
    location: Callable[[Component], str] = location_category
    lighting: Callable[[Component], str] = lighting_category
    outfit: Callable[[Component], str] = outfit_style
    framing: Callable[[Component], str] = framing_type

    def categorize(self, bundle: ConceptBundle) -> dict[str, str]:
        return {
            "pose": self.pose(bundle.pose),
            "location": self.location(bundle.location),
            "lighting": self.lighting(bundle.lighting),
            "outfit": self.outfit(bundle.outfit),
            "framing": self.framing(bundle.camera),
        }


DEFAULT_CLASSIFIER = BundleClassifier()


def bundle_similarity(
    a: ConceptBundle,
    b: ConceptBundle,
    *,
    classifier: BundleClassifier = DEFAULT_CLASSIFIER,
) -> float:
    """Weighted share of dimensions whose category matches, in [0, 1]."""

    left = classifier.categorize(a)
    right = classifier.categorize(b)
    score = sum(weight for dimension, weight in SIMILARITY_WEIGHTS.items() if left[dimension] == right[dimension])
    # Rounded so fixed weight sums compare exactly against thresholds.
    return round(score, 4)
