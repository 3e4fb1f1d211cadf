from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass

from prompt_composer.framework.components import (
    REQUIRED_SLOTS,
    BatchRequest,
    Component,
    ComponentFilter,
    ComposedPrompt,
    ConceptBundle,
    LightingMetadata,
    PromptMetadata,
    normalize_brand,
)
from prompt_composer.framework.classification import SIMILARITY_WEIGHTS
from prompt_composer.framework.database import ComponentDatabase
from prompt_composer.framework.diversity import DiversityEngine, DiversityVerdict
from prompt_composer.framework.intent import IntentAnalysis, analyze_intent
from prompt_composer.prompts.assembly import (
    assemble_prompt_text,
    generate_description,
    generate_title,
    word_count,
)

# Retries fall back to walking back from the last slot chosen.
RETRY_SLOT_ORDER: tuple[str, ...] = tuple(reversed(REQUIRED_SLOTS))

# Reselecting a slot invalidates the slots whose filters depend on it.
DEPENDENT_SLOTS: dict[str, tuple[str, ...]] = {
    "location": ("lighting",),
    "pose": ("camera",),
}
UPSTREAM_SLOTS: dict[str, str] = {
    dependent: slot for slot, dependents in DEPENDENT_SLOTS.items() for dependent in dependents
}

# Similarity dimension -> slot holding the component it classifies.
DIMENSION_SLOTS: dict[str, str] = {
    "pose": "pose",
    "location": "location",
    "lighting": "lighting",
    "outfit": "outfit",
    "framing": "camera",
}

COMPLEX_POSE_TYPES = frozenset({"yoga", "complex"})
MOVEMENT_POSE_TYPES = frozenset({"walking", "dynamic"})
POSE_FALLBACK_MIN_CATEGORIES = 4

# location_type -> lighting_type the lighting slot is restricted to.
LIGHTING_FOR_LOCATION: dict[str, str] = {
    "outdoor": "natural",
    "studio": "studio",
}

Preference = tuple[str, Callable[[Component], bool]]


class CompositionError(RuntimeError):
    """A concept could not be composed (e.g. a required slot has no candidates)."""

    def __init__(self, message: str, *, slot: str | None = None, position: int | None = None) -> None:
        super().__init__(message)
        self.slot = slot
        self.position = position


class DiversityExhaustedError(CompositionError):
    """Every retry produced a bundle the diversity gate rejected."""


@dataclass
class _ConceptContext:
    category: str
    intent: IntentAnalysis
    brand: str | None
    exclude_ids: frozenset[str]
    position: int | None


def _classification(component: Component) -> str | None:
    return component.classification


def _has_any_tag(component: Component, tags: Iterable[str]) -> bool:
    return any(tag in component.tags for tag in tags)


def _mentions(component: Component, keyword: str) -> bool:
    return keyword in component.tags or keyword in component.text.lower() or _classification(component) == keyword


class CompositionBuilder:
    """
    Compose concept bundles slot by slot and assemble them into prompts.

    Slot filters are split into hard constraints (category, slot type, brand,
    location -> lighting compatibility) and soft preferences (intent biases,
    pose -> framing, variation). Soft preferences that would empty the pool
    are skipped. Batch exclusions are relaxed only when nothing else matches.
    """

    def __init__(
        self,
        database: ComponentDatabase,
        diversity_engine: DiversityEngine | None = None,
        *,
        logger: logging.Logger | None = None,
        max_diversity_retries: int = 3,
        accept_on_exhaustion: bool = True,
        max_brand_elements: int = 2,
    ) -> None:
        if isinstance(max_diversity_retries, bool) or int(max_diversity_retries) < 0:
            raise ValueError("max_diversity_retries must be an int >= 0")
        if isinstance(max_brand_elements, bool) or int(max_brand_elements) < 0:
            raise ValueError("max_brand_elements must be an int >= 0")
        self.database = database
        self.diversity = diversity_engine or DiversityEngine()
        self.logger = logger or logging.getLogger(__name__)
        self.max_diversity_retries = int(max_diversity_retries)
        self.accept_on_exhaustion = bool(accept_on_exhaustion)
        self.max_brand_elements = int(max_brand_elements)

    def compose_batch(self, request: BatchRequest) -> list[ComposedPrompt]:
        """Compose ``request.count`` concepts; raises on the first failing position."""

        self.logger.info(
            "Composing batch: category=%s count=%d brand=%s",
            request.category,
            request.count,
            request.brand or "-",
        )
        produced: list[ComposedPrompt] = []
        for position in range(request.count):
            previous = tuple(request.previous_bundles) + tuple(item.bundle for item in produced)
            produced.append(
                self.compose_prompt(
                    request.category,
                    request.user_intent,
                    brand=request.brand,
                    previous_bundles=previous,
                    position=position,
                )
            )
        return produced

    def compose_prompt(
        self,
        category: str,
        user_intent: str = "",
        *,
        brand: str | None = None,
        previous_bundles: Sequence[ConceptBundle] = (),
        position: int | None = None,
    ) -> ComposedPrompt:
        exclude_ids: set[str] = set(self.diversity.used_component_ids())
        for bundle in previous_bundles:
            exclude_ids.update(bundle.component_ids())

        ctx = _ConceptContext(
            category=category,
            intent=analyze_intent(user_intent),
            brand=(brand or "").strip() or None,
            exclude_ids=frozenset(exclude_ids),
            position=position,
        )

        chosen: dict[str, Component] = {}
        for slot in REQUIRED_SLOTS:
            component = self._select_slot(slot, ctx, chosen)
            if component is None:
                raise CompositionError(
                    f"No suitable {slot} component found (category={category}, position={position})",
                    slot=slot,
                    position=position,
                )
            chosen[slot] = component

        styling = self._select_slot("styling", ctx, chosen)
        brand_elements = self._select_brand_elements(ctx)

        def build(selection: dict[str, Component]) -> ConceptBundle:
            return ConceptBundle(
                pose=selection["pose"],
                outfit=selection["outfit"],
                location=selection["location"],
                lighting=selection["lighting"],
                camera=selection["camera"],
                styling=styling,
                brand_elements=brand_elements,
            )

        bundle = build(chosen)
        verdict = self.diversity.is_diverse_enough(bundle)
        attempt = 0
        while not verdict.diverse and attempt < self.max_diversity_retries:
            changed = self._reselect(ctx, chosen, verdict, build)
            if changed is None:
                self.logger.debug("No reselection improves concept %s: %s", position, verdict.reason)
                break
            attempt += 1
            self.logger.debug(
                "Concept %s rejected (attempt %d/%d): %s; reselected %s",
                position,
                attempt,
                self.max_diversity_retries,
                verdict.reason,
                changed,
            )
            bundle = build(chosen)
            verdict = self.diversity.is_diverse_enough(bundle)

        forced = False
        if not verdict.diverse:
            if not self.accept_on_exhaustion:
                raise DiversityExhaustedError(
                    f"Diversity retries exhausted for concept {position}: {verdict.reason}",
                    position=position,
                )
            forced = True
            self.logger.warning(
                "Accepting concept %s after %d retries without passing diversity gate: %s",
                position,
                attempt,
                verdict.reason,
            )

        score = self.diversity.diversity_score(bundle)
        for component in bundle.components():
            self.database.increment_usage(component.id)
        self.diversity.record_concept(bundle)

        prompt = assemble_prompt_text(bundle, category)
        composed = ComposedPrompt(
            prompt=prompt,
            bundle=bundle,
            title=generate_title(bundle),
            description=generate_description(bundle),
            category=category,
            metadata=PromptMetadata(
                word_count=word_count(prompt),
                diversity_score=score,
                brand_element_ids=tuple(element.id for element in bundle.brand_elements),
                forced=forced,
            ),
        )
        self.logger.info(
            "Composed concept %s: title=%r diversity=%.2f words=%d%s",
            position,
            composed.title,
            score,
            composed.metadata.word_count,
            " (forced)" if forced else "",
        )
        return composed

    def _reselect(
        self,
        ctx: _ConceptContext,
        chosen: dict[str, Component],
        verdict: DiversityVerdict,
        build: Callable[[dict[str, Component]], ConceptBundle],
    ) -> str | None:
        """
        Replace one slot (plus its dependents) so the bundle gets closer to passing.

        Target slots are tried in order of blame; each candidate replacement is
        checked against the gate before committing. The first target with a
        passing option wins. Otherwise the option with the lowest rejection
        cost is committed if it beats the current bundle. Returns the changed
        slot, or ``None`` when no option improves anything.
        """

        current_cost = self.diversity.rejection_cost(build(chosen))
        best: tuple[tuple[int, float], str, dict[str, Component]] | None = None
        for slot in self._retry_targets(chosen, verdict, build):
            passing: list[dict[str, Component]] = []
            for selection in self._slot_options(slot, ctx, chosen):
                cost = self.diversity.rejection_cost(build(selection))
                if cost[0] == 0:
                    passing.append(selection)
                elif cost < current_cost and (best is None or cost < best[0]):
                    best = (cost, slot, selection)
            if passing:
                chosen.update(self._pick_option(slot, ctx, chosen, passing))
                return slot

        if best is None:
            return None
        cost, slot, selection = best
        self.logger.debug("No passing %s option; committing partial fix (violations=%d)", slot, cost[0])
        chosen.update(selection)
        return slot

    def _retry_targets(
        self,
        chosen: dict[str, Component],
        verdict: DiversityVerdict,
        build: Callable[[dict[str, Component]], ConceptBundle],
    ) -> list[str]:
        targets: list[str] = []
        if verdict.offending_ids:
            for component_id in verdict.offending_ids:
                targets.extend(slot for slot in REQUIRED_SLOTS if chosen[slot].id == component_id)
        else:
            bundle = build(chosen)
            closest, _ = self.diversity.closest_concept(bundle)
            if closest is not None:
                mine = self.diversity.classifier.categorize(bundle)
                theirs = self.diversity.classifier.categorize(closest)
                for dimension in sorted(SIMILARITY_WEIGHTS, key=SIMILARITY_WEIGHTS.__getitem__, reverse=True):
                    if mine[dimension] == theirs[dimension]:
                        targets.append(DIMENSION_SLOTS[dimension])

        # A dependent with no alternative can still change through its upstream slot.
        targets.extend([UPSTREAM_SLOTS[slot] for slot in targets if slot in UPSTREAM_SLOTS])
        targets.extend(RETRY_SLOT_ORDER)
        return list(dict.fromkeys(targets))

    def _slot_options(
        self, slot: str, ctx: _ConceptContext, chosen: dict[str, Component]
    ) -> Iterator[dict[str, Component]]:
        """Every selection that swaps ``slot`` for another hard-filter match and re-derives its dependents."""

        current = chosen[slot].id
        dependents = DEPENDENT_SLOTS.get(slot, ())
        for candidate in self.database.query(self._hard_filter(slot, ctx, chosen)):
            if candidate.id == current:
                continue
            trial = dict(chosen)
            trial[slot] = candidate
            pools = [self.database.query(self._hard_filter(dependent, ctx, trial)) for dependent in dependents]
            for combo in itertools.product(*pools):
                selection = dict(trial)
                selection.update(zip(dependents, combo))
                yield selection

    def _pick_option(
        self,
        slot: str,
        ctx: _ConceptContext,
        chosen: dict[str, Component],
        options: list[dict[str, Component]],
    ) -> dict[str, Component]:
        """Pick a passing option: ids unused in the batch first, then soft preferences, then least used."""

        by_id: dict[str, list[dict[str, Component]]] = {}
        for option in options:
            by_id.setdefault(option[slot].id, []).append(option)

        candidates = self._prefer_unused(ctx, [group[0][slot] for group in by_id.values()])
        candidates = self._apply_preferences(slot, ctx, chosen, candidates)
        picked = self.database.pick_least_used(candidates)
        group = by_id[picked.id]

        for dependent in DEPENDENT_SLOTS.get(slot, ()):
            pool = list({option[dependent].id: option[dependent] for option in group}.values())
            dependent_pick = self.database.pick_least_used(self._prefer_unused(ctx, pool))
            group = [option for option in group if option[dependent].id == dependent_pick.id]
        return group[0]

    @staticmethod
    def _prefer_unused(ctx: _ConceptContext, candidates: list[Component]) -> list[Component]:
        unused = [component for component in candidates if component.id not in ctx.exclude_ids]
        return unused or candidates

    def _hard_filter(self, slot: str, ctx: _ConceptContext, chosen: dict[str, Component]) -> ComponentFilter:
        flt = ComponentFilter(category=ctx.category, slot_type=slot)
        if slot == "outfit" and ctx.brand:
            flt = flt.narrowed(brand=ctx.brand)
        if slot == "lighting" and not ctx.intent.wants_golden_hour:
            coupled = self._coupled_lighting(chosen)
            if coupled is not None:
                flt = flt.narrowed(metadata=LightingMetadata(coupled))
        return flt

    @staticmethod
    def _coupled_lighting(chosen: dict[str, Component]) -> str | None:
        location = chosen.get("location")
        if location is None:
            return None
        return LIGHTING_FOR_LOCATION.get(location.classification or "")

    def _candidates(self, slot: str, ctx: _ConceptContext, chosen: dict[str, Component]) -> list[Component]:
        flt = self._hard_filter(slot, ctx, chosen)
        candidates = self.database.query(flt.narrowed(exclude_ids=ctx.exclude_ids))
        if candidates:
            return candidates
        candidates = self.database.query(flt)
        if candidates:
            self.logger.debug(
                "Relaxed batch exclusions for %s slot (concept %s): candidates=%d",
                slot,
                ctx.position,
                len(candidates),
            )
        return candidates

    def _select_slot(self, slot: str, ctx: _ConceptContext, chosen: dict[str, Component]) -> Component | None:
        candidates = self._candidates(slot, ctx, chosen)
        if not candidates:
            return None

        candidates = self._apply_preferences(slot, ctx, chosen, candidates)
        if slot == "pose":
            candidates = self._pose_fallback(ctx, candidates)
        return self.database.pick_least_used(candidates)

    def _apply_preferences(
        self,
        slot: str,
        ctx: _ConceptContext,
        chosen: dict[str, Component],
        candidates: list[Component],
    ) -> list[Component]:
        for name, predicate in self._preferences(slot, ctx, chosen):
            preferred = [component for component in candidates if predicate(component)]
            if preferred:
                candidates = preferred
            else:
                self.logger.debug("Dropped %s preference %r: no candidates", slot, name)
        return candidates

    def _pose_fallback(self, ctx: _ConceptContext, candidates: list[Component]) -> list[Component]:
        """
        Prefer the least-used pose category once the batch has covered enough.

        Triggers when the history holds ``min(4, available)`` distinct pose
        categories, so small corpora keep producing poses instead of failing.
        """

        used = self.diversity.categories_used("pose")
        if not used:
            return candidates
        classify = self.diversity.classifier.pose
        pool = self.database.query(ComponentFilter(category=ctx.category, slot_type="pose"))
        available = {classify(component) for component in pool}
        if len(used) < min(POSE_FALLBACK_MIN_CATEGORIES, len(available)):
            return candidates

        lowest = min(used.get(classify(component), 0) for component in candidates)
        preferred = [component for component in candidates if used.get(classify(component), 0) == lowest]
        self.logger.debug(
            "Pose fallback active (categories used=%d): preferring usage=%d candidates=%d",
            len(used),
            lowest,
            len(preferred),
        )
        return preferred

    def _preferences(
        self, slot: str, ctx: _ConceptContext, chosen: dict[str, Component]
    ) -> list[Preference]:
        intent = ctx.intent
        constraints = self.diversity.constraints
        classifier = self.diversity.classifier
        prefs: list[Preference] = []

        if slot == "pose":
            if intent.wants_movement:
                prefs.append(
                    (
                        "movement",
                        lambda c: _classification(c) in MOVEMENT_POSE_TYPES
                        or _has_any_tag(c, ("movement", "dynamic")),
                    )
                )
            elif intent.pose:
                keyword = intent.pose
                prefs.append((f"pose:{keyword}", lambda c: _mentions(c, keyword)))

        elif slot == "outfit":
            if not ctx.brand and intent.brand:
                mentioned = normalize_brand(intent.brand)
                prefs.append((f"brand:{mentioned}", lambda c: c.brand_key == mentioned))
            if intent.wants_editorial:
                prefs.append(
                    (
                        "editorial",
                        lambda c: _has_any_tag(c, ("editorial", "sophisticated"))
                        or _classification(c) in ("editorial", "luxury"),
                    )
                )
            elif intent.wants_casual:
                prefs.append(
                    ("casual", lambda c: _has_any_tag(c, ("casual", "relaxed")) or _classification(c) == "casual")
                )
            if constraints.enforce_outfit_variation:
                used_styles = set(self.diversity.categories_used("outfit"))
                prefs.append(("outfit-variation", lambda c: classifier.outfit(c) not in used_styles))

        elif slot == "location":
            if intent.wants_outdoor:
                prefs.append(("outdoor", lambda c: _classification(c) == "outdoor"))
            elif intent.wants_indoor:
                prefs.append(("indoor", lambda c: _classification(c) in ("indoor", "studio")))
            elif intent.location:
                keyword = intent.location
                prefs.append((f"location:{keyword}", lambda c: _mentions(c, keyword)))
            used_locations = set(self.diversity.categories_used("location"))
            if used_locations:
                prefs.append(("location-variation", lambda c: classifier.location(c) not in used_locations))

        elif slot == "lighting":
            if intent.wants_golden_hour:
                prefs.append(
                    ("golden-hour", lambda c: _classification(c) == "golden-hour" or "golden hour" in c.text.lower())
                )
                coupled = self._coupled_lighting(chosen)
                if coupled is not None:
                    prefs.append((f"lighting:{coupled}", lambda c: _classification(c) == coupled))

        elif slot == "camera":
            pose = chosen.get("pose")
            if pose is not None and pose.classification in COMPLEX_POSE_TYPES:
                prefs.append(("complex-pose-full-body", lambda c: _classification(c) == "full-body"))
            if intent.wants_full_body:
                prefs.append(("full-body", lambda c: _classification(c) == "full-body"))
            elif intent.wants_close_up:
                prefs.append(("close-up", lambda c: _classification(c) == "close-up"))
            if constraints.enforce_framing_variation:
                used_framing = set(self.diversity.categories_used("framing"))
                prefs.append(("framing-variation", lambda c: classifier.framing(c) not in used_framing))

        return prefs

    def _select_brand_elements(self, ctx: _ConceptContext) -> tuple[Component, ...]:
        if not ctx.brand or self.max_brand_elements == 0:
            return ()
        pool = self.database.brand_elements(ctx.brand)
        candidates = [component for component in pool if component.id not in ctx.exclude_ids]
        if not candidates:
            candidates = list(pool)

        picked: list[Component] = []
        while candidates and len(picked) < self.max_brand_elements:
            component = self.database.pick_least_used(candidates)
            if component is None:
                break
            picked.append(component)
            candidates = [candidate for candidate in candidates if candidate.id != component.id]
        return tuple(picked)
