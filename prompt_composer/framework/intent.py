"""
Keyword-based analysis of a free-text request.

This is heuristic string matching: a missed keyword only means the matching
bias is not applied, and selection falls back to unbiased least-used picks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_FLAG_PATTERNS: dict[str, re.Pattern[str]] = {
    "wants_movement": re.compile(r"movement|walking|dynamic|action", re.IGNORECASE),
    "wants_close_up": re.compile(r"close.*up|face|portrait|detail", re.IGNORECASE),
    "wants_full_body": re.compile(r"full.*body|head.*toe|entire", re.IGNORECASE),
    "wants_outdoor": re.compile(r"outdoor|outside|beach|park|terrace", re.IGNORECASE),
    "wants_indoor": re.compile(r"indoor|inside|room|studio", re.IGNORECASE),
    "wants_golden_hour": re.compile(r"golden.*hour|sunset|sunrise|warm.*light", re.IGNORECASE),
    "wants_editorial": re.compile(r"editorial|vogue|fashion|sophisticated", re.IGNORECASE),
    "wants_casual": re.compile(r"casual|relaxed|comfortable|everyday", re.IGNORECASE),
}

BRAND_KEYWORDS: tuple[str, ...] = ("alo", "chanel", "dior", "glossier", "lululemon", "lulu")
POSE_KEYWORDS: tuple[str, ...] = ("walking", "sitting", "standing", "kneeling", "yoga", "stretching")
LOCATION_KEYWORDS: tuple[str, ...] = ("cafe", "beach", "studio", "terrace", "airport", "home")


@dataclass(frozen=True)
class IntentAnalysis:
    wants_movement: bool = False
    wants_close_up: bool = False
    wants_full_body: bool = False
    wants_outdoor: bool = False
    wants_indoor: bool = False
    wants_golden_hour: bool = False
    wants_editorial: bool = False
    wants_casual: bool = False
    brand: str | None = None
    pose: str | None = None
    location: str | None = None


def _first_mention(text: str, keywords: tuple[str, ...]) -> str | None:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def analyze_intent(user_intent: str | None) -> IntentAnalysis:
    text = (user_intent or "").lower()
    flags = {name: bool(pattern.search(text)) for name, pattern in _FLAG_PATTERNS.items()}
    return IntentAnalysis(
        **flags,
        brand=_first_mention(text, BRAND_KEYWORDS),
        pose=_first_mention(text, POSE_KEYWORDS),
        location=_first_mention(text, LOCATION_KEYWORDS),
    )
