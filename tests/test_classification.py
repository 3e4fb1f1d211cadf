import pytest

from prompt_composer.framework.classification import (
    SIMILARITY_WEIGHTS,
    BundleClassifier,
    bundle_similarity,
    framing_type,
    lighting_category,
    location_category,
    outfit_style,
    pose_category,
)
from prompt_composer.framework.components import Component, ConceptBundle


def _component(component_id: str, slot_type: str, text: str, **kwargs) -> Component:
    return Component(
        id=component_id,
        category="test",
        slot_type=slot_type,
        description=component_id,
        text=text,
        **kwargs,
    )


def _bundle(
    prefix: str,
    *,
    pose: str = "Woman standing tall",
    location: str = "on a sunny beach",
    lighting: str = "golden hour glow",
    outfit: str = "athletic set",
    camera: str = "full body shot",
) -> ConceptBundle:
    return ConceptBundle(
        pose=_component(f"{prefix}-pose", "pose", pose),
        outfit=_component(f"{prefix}-outfit", "outfit", outfit),
        location=_component(f"{prefix}-location", "location", location),
        lighting=_component(f"{prefix}-lighting", "lighting", lighting),
        camera=_component(f"{prefix}-camera", "camera", camera),
    )


def test_similarity_weights_sum_to_one():
    assert sum(SIMILARITY_WEIGHTS.values()) == pytest.approx(1.0)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Woman standing by the window", "standing"),
        ("She stands on the terrace", "standing"),
        ("Seated on a bench", "sitting"),
        ("Kneels on the mat", "kneeling"),
        ("Walking slowly through the garden", "movement"),
        ("Lying on the sand", "lying"),
        ("Tree pose, a classic asana", "yoga"),
        ("Arms raised overhead", "other"),
    ],
)
def test_pose_category(text, expected):
    assert pose_category(_component("p", "pose", text)) == expected


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Modern terrace overlooking the city", "outdoor"),
        ("Bright Pilates studio", "indoor"),
        ("Minimal living room", "indoor"),
        ("Corner cafe with marble tables", "dining"),
        ("Airport terminal lounge", "travel"),
        ("Boutique gym", "fitness"),
        ("Somewhere", "other"),
    ],
)
def test_location_category(text, expected):
    assert location_category(_component("l", "location", text)) == expected


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Warm golden hour light", "golden-hour"),
        ("Sunset backlight", "golden-hour"),
        ("Soft studio flash", "studio"),
        ("Natural daylight, soft and diffused", "natural-soft"),
        ("Natural direct sun", "natural-direct"),
        ("Light through a large window", "window"),
        ("Firelight", "warm"),
        ("Neon", "other"),
    ],
)
def test_lighting_category(text, expected):
    assert lighting_category(_component("li", "lighting", text)) == expected


def test_outfit_style_uses_tags_and_text():
    assert outfit_style(_component("o1", "outfit", "Matching set", tags={"athleisure"})) == "athletic"
    assert outfit_style(_component("o2", "outfit", "Sport bra and leggings")) == "athletic"
    assert outfit_style(_component("o3", "outfit", "Silk gown", tags={"editorial"})) == "luxury"
    assert outfit_style(_component("o4", "outfit", "Casual denim")) == "casual"
    assert outfit_style(_component("o5", "outfit", "Minimal linen dress")) == "minimal"
    assert outfit_style(_component("o6", "outfit", "Red dress")) == "other"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("85mm close-up portrait", "close-up"),
        ("Full body shot, 35mm", "full-body"),
        ("Three-quarter framing", "three-quarter"),
        ("Medium shot from the waist", "medium"),
        ("Wide lens", "other"),
    ],
)
def test_framing_type(text, expected):
    assert framing_type(_component("c", "camera", text)) == expected


def test_bundles_with_identical_categories_are_fully_similar():
    assert bundle_similarity(_bundle("a"), _bundle("b")) == 1.0


def test_pose_only_difference_is_exactly_point_seven():
    a = _bundle("a")
    b = _bundle("b", pose="Seated on the sand")

    assert bundle_similarity(a, b) == 0.7


def test_completely_different_bundles_have_zero_similarity():
    a = _bundle("a")
    b = _bundle(
        "b",
        pose="Seated on a chair",
        location="Corner cafe",
        lighting="Soft studio flash",
        outfit="Silk gown, editorial",
        camera="85mm close-up",
    )

    assert bundle_similarity(a, b) == 0.0
    assert bundle_similarity(b, a) == 0.0


def test_custom_classifier_replaces_one_dimension():
    classifier = BundleClassifier(pose=lambda component: component.id)
    a = _bundle("a")
    b = _bundle("b")

    assert classifier.categorize(a)["pose"] == "a-pose"
    assert bundle_similarity(a, b, classifier=classifier) == 0.7
