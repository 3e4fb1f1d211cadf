import logging
import random

import pytest

from prompt_composer.framework.components import (
    BatchRequest,
    Component,
    ConceptBundle,
    LightingMetadata,
    LocationMetadata,
)
from prompt_composer.framework.composition import (
    CompositionBuilder,
    CompositionError,
    DiversityExhaustedError,
)
from prompt_composer.framework.database import ComponentDatabase
from prompt_composer.framework.diversity import DiversityEngine
from prompt_composer.framework.ingestion import build_database
from prompt_composer.prompts.assembly import (
    DEFAULT_STYLING,
    FALLBACK_TITLE,
    IDENTITY_ANCHOR,
    assemble_prompt_text,
    derive_aesthetic,
    generate_description,
    generate_title,
)

CATEGORY = "test"


def _component(component_id: str, slot_type: str, text: str | None = None, **kwargs) -> Component:
    return Component(
        id=component_id,
        category=kwargs.pop("category", CATEGORY),
        slot_type=slot_type,
        description=kwargs.pop("description", component_id),
        text=text if text is not None else f"{component_id} text",
        **kwargs,
    )


def _db(components, seed: int = 0) -> ComponentDatabase:
    db = ComponentDatabase(rng=random.Random(seed))
    db.add_many(components)
    return db


def _scarce_corpus() -> list[Component]:
    return [
        _component("p1", "pose", "Woman standing tall"),
        _component("p2", "pose", "Seated on a bench"),
        _component("p3", "pose", "Walking the path"),
        _component("o1", "outfit", "Athletic set"),
        _component("l1", "location", "Sunny beach"),
        _component("li1", "lighting", "Natural soft light"),
        _component("c1", "camera", "Full body shot"),
    ]


def _rich_corpus() -> list[Component]:
    texts = {
        "pose": ("Woman standing", "Seated on a bench", "Kneels on the mat", "Walking the path", "Lying down", "Yoga asana"),
        "outfit": ("Athletic set", "Editorial gown", "Casual denim", "Minimal linen", "Sport tank", "Luxury coat"),
        "location": ("Sunny beach", "Living room", "Corner cafe", "Airport terminal", "Boutique gym", "Terrace"),
        "lighting": ("Golden hour", "Studio flash", "Natural soft light", "Window light", "Warm firelight", "Neon"),
        "camera": ("Close-up portrait", "Full body shot", "Three-quarter frame", "Medium shot", "Wide lens", "Bust crop"),
    }
    return [
        _component(f"{slot}-{idx}", slot, text)
        for slot, options in texts.items()
        for idx, text in enumerate(options)
    ]


def test_scarce_corpus_yields_distinct_poses_and_forces_last_concept():
    builder = CompositionBuilder(_db(_scarce_corpus()))

    prompts = builder.compose_batch(BatchRequest(category=CATEGORY, count=3))

    assert len(prompts) == 3
    assert {prompt.bundle.pose.id for prompt in prompts} == {"p1", "p2", "p3"}
    assert [prompt.metadata.forced for prompt in prompts] == [False, False, True]
    assert prompts[0].metadata.diversity_score == 1.0
    assert prompts[1].metadata.diversity_score == 0.3


def test_forced_acceptance_logs_warning(caplog):
    builder = CompositionBuilder(_db(_scarce_corpus()))

    with caplog.at_level(logging.WARNING, logger="prompt_composer.framework.composition"):
        builder.compose_batch(BatchRequest(category=CATEGORY, count=3))

    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "without passing diversity gate" in warnings[0].getMessage()
    assert "used too many times" in warnings[0].getMessage()


def test_exhaustion_raises_when_forced_acceptance_disabled():
    builder = CompositionBuilder(_db(_scarce_corpus()), accept_on_exhaustion=False)

    with pytest.raises(DiversityExhaustedError) as excinfo:
        builder.compose_batch(BatchRequest(category=CATEGORY, count=3))

    assert excinfo.value.position == 2
    assert builder.diversity.history_count == 2


def test_missing_slot_raises_composition_error_with_slot_and_position():
    corpus = [c for c in _scarce_corpus() if c.slot_type != "camera"]
    builder = CompositionBuilder(_db(corpus))

    with pytest.raises(CompositionError, match=r"No suitable camera component found") as excinfo:
        builder.compose_batch(BatchRequest(category=CATEGORY, count=1))

    assert excinfo.value.slot == "camera"
    assert excinfo.value.position == 0


def test_unknown_category_fails_on_first_slot():
    builder = CompositionBuilder(_db(_scarce_corpus()))

    with pytest.raises(CompositionError) as excinfo:
        builder.compose_prompt("missing-category")

    assert excinfo.value.slot == "pose"


@pytest.mark.parametrize("seed", range(8))
def test_rich_corpus_batch_respects_threshold_and_reuse_cap(seed):
    engine = DiversityEngine()
    builder = CompositionBuilder(_db(_rich_corpus(), seed=seed), engine)

    prompts = builder.compose_batch(BatchRequest(category=CATEGORY, count=5))

    assert not any(prompt.metadata.forced for prompt in prompts)
    bundles = [prompt.bundle for prompt in prompts]
    for i, left in enumerate(bundles):
        for right in bundles[i + 1 :]:
            assert engine.similarity(left, right) <= engine.constraints.similarity_threshold
    for component_id in {cid for bundle in bundles for cid in bundle.required_ids()}:
        assert sum(component_id in bundle.required_ids() for bundle in bundles) <= 2


@pytest.mark.parametrize("seed", range(10))
def test_bundled_corpus_batch_passes_gate_without_forcing(seed):
    engine = DiversityEngine()
    builder = CompositionBuilder(build_database(rng=random.Random(seed)), engine)

    prompts = builder.compose_batch(BatchRequest(category="alo-workout", count=5))

    assert [prompt.metadata.forced for prompt in prompts] == [False] * 5
    bundles = [prompt.bundle for prompt in prompts]
    for i, left in enumerate(bundles):
        for right in bundles[i + 1 :]:
            assert engine.similarity(left, right) <= engine.constraints.similarity_threshold
    for component_id in {cid for bundle in bundles for cid in bundle.required_ids()}:
        assert sum(component_id in bundle.required_ids() for bundle in bundles) <= 2


def test_capped_coupled_lighting_moves_the_location():
    history = {
        "pose": [_component("p-lying", "pose", "Lying down"), _component("p-yoga", "pose", "Yoga asana")],
        "outfit": _component("o-old", "outfit", "Athletic set"),
        "location": _component("l-beach", "location", "Sunny beach", metadata=LocationMetadata("outdoor")),
        "lighting": _component("li-natural", "lighting", "Natural soft light", metadata=LightingMetadata("natural")),
        "camera": _component("c-old", "camera", "Medium shot"),
    }
    fresh = [
        _component("p-standing", "pose", "Woman standing"),
        _component("o-new", "outfit", "Casual denim"),
        _component("l-terrace", "location", "Rocky terrace", metadata=LocationMetadata("outdoor")),
        _component("l-room", "location", "Living room", metadata=LocationMetadata("indoor")),
        _component("li-studio", "lighting", "Studio flash", metadata=LightingMetadata("studio")),
        _component("c-new", "camera", "Close-up portrait"),
    ]
    db = _db([*history["pose"], *(history[slot] for slot in ("outfit", "location", "lighting", "camera")), *fresh])
    engine = DiversityEngine()
    for pose in history["pose"]:
        engine.record_concept(
            ConceptBundle(
                pose=pose,
                outfit=history["outfit"],
                location=history["location"],
                lighting=history["lighting"],
                camera=history["camera"],
            )
        )
    builder = CompositionBuilder(db, engine)

    # Outdoor intent lands on the fresh terrace, whose only compatible lighting is already capped.
    prompt = builder.compose_prompt(CATEGORY, "outdoor shoot", position=2)

    assert not prompt.metadata.forced
    assert prompt.bundle.location.id == "l-room"
    assert prompt.bundle.lighting.id == "li-studio"
    assert engine.reuse_count("li-natural") == 2


def test_usage_is_incremented_for_every_component_in_the_bundle():
    db = build_database(rng=random.Random(5))
    builder = CompositionBuilder(db)

    prompt = builder.compose_prompt("alo-workout", brand="ALO", position=0)

    for component in prompt.bundle.components():
        assert db.get(component.id).usage_count == 1
    assert prompt.bundle.styling is not None


def test_brand_request_attaches_brand_elements():
    db = build_database(rng=random.Random(1))
    builder = CompositionBuilder(db)

    prompt = builder.compose_prompt("alo-workout", "ALO workout on the terrace", brand="ALO")

    assert len(prompt.bundle.brand_elements) == 2
    assert set(prompt.metadata.brand_element_ids) == {"alo-brand-001", "alo-brand-002"}
    assert prompt.bundle.outfit.brand_key == "alo"
    for element in prompt.bundle.brand_elements:
        assert element.text.rstrip(".") in prompt.prompt


def test_brand_elements_respect_limit_and_absent_brand():
    db = build_database(rng=random.Random(1))

    limited = CompositionBuilder(db, max_brand_elements=1).compose_prompt("alo-workout", brand="alo")
    unbranded = CompositionBuilder(db).compose_prompt("alo-workout")

    assert len(limited.bundle.brand_elements) == 1
    assert unbranded.bundle.brand_elements == ()


def test_brand_without_outfits_fails_on_outfit_slot():
    builder = CompositionBuilder(build_database(rng=random.Random(0)))

    with pytest.raises(CompositionError) as excinfo:
        builder.compose_prompt("alo-workout", brand="Dior", position=0)

    assert excinfo.value.slot == "outfit"


def _coupling_corpus(location_type: str) -> list[Component]:
    return [
        _component("p1", "pose", "Woman standing"),
        _component("o1", "outfit", "Athletic set"),
        _component("l1", "location", "Somewhere", metadata=LocationMetadata(location_type)),
        _component("li-natural", "lighting", "Daylight", metadata=LightingMetadata("natural")),
        _component("li-studio", "lighting", "Flash", metadata=LightingMetadata("studio")),
        _component("li-gold", "lighting", "Golden hour", metadata=LightingMetadata("golden-hour")),
        _component("c1", "camera", "Medium shot"),
    ]


@pytest.mark.parametrize(("location_type", "lighting_id"), [("studio", "li-studio"), ("outdoor", "li-natural")])
def test_location_restricts_lighting(location_type, lighting_id):
    for seed in range(10):
        builder = CompositionBuilder(_db(_coupling_corpus(location_type), seed=seed))
        prompt = builder.compose_prompt(CATEGORY)
        assert prompt.bundle.lighting.id == lighting_id


def test_golden_hour_intent_lifts_lighting_coupling():
    builder = CompositionBuilder(_db(_coupling_corpus("outdoor")))

    prompt = builder.compose_prompt(CATEGORY, "sunset shoot")

    assert prompt.bundle.lighting.id == "li-gold"


def test_previous_bundles_are_excluded_when_alternatives_exist():
    db = _db(_rich_corpus())
    first = CompositionBuilder(db).compose_prompt(CATEGORY)

    second = CompositionBuilder(db).compose_prompt(CATEGORY, previous_bundles=[first.bundle])

    assert not set(first.bundle.required_ids()) & set(second.bundle.required_ids())


def test_builder_rejects_negative_limits():
    with pytest.raises(ValueError, match=r"max_diversity_retries"):
        CompositionBuilder(_db([]), max_diversity_retries=-1)


def _editorial_bundle() -> ConceptBundle:
    return ConceptBundle(
        pose=_component(
            "p",
            "pose",
            "Woman standing by the window, hands relaxed",
            description="Woman standing by the window",
        ),
        outfit=_component("o", "outfit", "Cream silk slip dress"),
        location=_component(
            "l",
            "location",
            "Bright modern terrace with city views",
            description="Bright terrace",
        ),
        lighting=_component("li", "lighting", "Warm golden hour light"),
        camera=_component("c", "camera", "50mm lens, medium shot"),
    )


def test_assembled_prompt_section_order_and_cleanup():
    bundle = _editorial_bundle()

    text = assemble_prompt_text(bundle, "luxury-travel")

    assert text == (
        f"{IDENTITY_ANCHOR} Cream silk slip dress, Woman standing by the window, hands relaxed. "
        f"{DEFAULT_STYLING} Bright modern terrace with city views. Warm golden hour light. "
        "50mm lens, medium shot. luxury and sophisticated aesthetic"
    )
    assert ".." not in text


def test_aesthetic_falls_back_to_lighting_and_location_cues():
    bundle = _editorial_bundle()

    assert derive_aesthetic(bundle, "LUXURY") == "luxury and sophisticated aesthetic"
    assert derive_aesthetic(bundle, "everyday") == "warm and cinematic aesthetic"

    plain = ConceptBundle(
        pose=bundle.pose,
        outfit=bundle.outfit,
        location=_component("l2", "location", "Minimal loft"),
        lighting=_component("li2", "lighting", "Overcast sky"),
        camera=bundle.camera,
    )
    assert derive_aesthetic(plain, "misc") == "minimalist and clean aesthetic"


def test_title_and_description():
    bundle = _editorial_bundle()

    assert generate_title(bundle) == "Bright Standing"
    assert generate_description(bundle) == "Standing by the window at modern terrace in golden hour light"


@pytest.mark.parametrize(
    ("pose_description", "location_description", "expected"),
    [
        ("Sit", "Bar", FALLBACK_TITLE),
        ("Seated", "Bar", "Seated"),
        ("Woman", "Beachfront", "Beachfront Scene"),
    ],
)
def test_title_fallbacks(pose_description, location_description, expected):
    bundle = _editorial_bundle()
    bundle = ConceptBundle(
        pose=_component("p", "pose", "Arms raised", description=pose_description),
        outfit=bundle.outfit,
        location=_component("l", "location", "Rooftop", description=location_description),
        lighting=bundle.lighting,
        camera=bundle.camera,
    )

    assert generate_title(bundle) == expected


def test_batch_keeps_going_after_pose_categories_are_exhausted(caplog):
    corpus = [c for c in _rich_corpus() if c.slot_type != "pose"] + [
        _component("p1", "pose", "Woman standing"),
        _component("p2", "pose", "Seated on a bench"),
        _component("p3", "pose", "She stands by the rail"),
    ]
    builder = CompositionBuilder(_db(corpus, seed=4))

    with caplog.at_level(logging.DEBUG, logger="prompt_composer.framework.composition"):
        prompts = builder.compose_batch(BatchRequest(category=CATEGORY, count=5))

    assert len(prompts) == 5
    assert {prompt.bundle.pose.id for prompt in prompts[:3]} == {"p1", "p2", "p3"}
    assert any("Pose fallback active" in record.getMessage() for record in caplog.records)
