from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping

from prompt_composer.framework.classification import (
    DEFAULT_CLASSIFIER,
    BundleClassifier,
    bundle_similarity,
)
from prompt_composer.framework.components import ConceptBundle

logger = logging.getLogger(__name__)

# Dimensions with a minimum-diversity threshold on DiversityConstraints.
THRESHOLD_DIMENSIONS: tuple[str, ...] = ("pose", "location", "lighting")


@dataclass(frozen=True)
class DiversityConstraints:
    min_pose_diversity: float = 0.6
    min_location_diversity: float = 0.5
    min_lighting_diversity: float = 0.4
    max_component_reuse: int = 2
    enforce_outfit_variation: bool = True
    enforce_framing_variation: bool = True
    similarity_threshold: float = 0.7

    def __post_init__(self) -> None:
        for name in ("min_pose_diversity", "min_location_diversity", "min_lighting_diversity", "similarity_threshold"):
            value = getattr(self, name)
            if not (0.0 <= float(value) <= 1.0):
                raise ValueError(f"DiversityConstraints.{name} must be in [0, 1] (got {value!r})")
        if isinstance(self.max_component_reuse, bool) or int(self.max_component_reuse) < 1:
            raise ValueError(
                f"DiversityConstraints.max_component_reuse must be >= 1 (got {self.max_component_reuse!r})"
            )

    def min_diversity(self, dimension: str) -> float:
        return float(getattr(self, f"min_{dimension}_diversity"))


@dataclass(frozen=True)
class DiversityVerdict:
    diverse: bool
    reason: str | None = None
    similarity: float = 0.0
    offending_ids: tuple[str, ...] = ()

    @property
    def reuse_rejection(self) -> bool:
        return not self.diverse and bool(self.offending_ids)


class DiversityEngine:
    """
    Batch-scoped acceptance history for concept bundles.

    One instance belongs to exactly one batch/session; call ``reset()`` before
    reusing it. Instances are not safe to share between concurrent batches.
    """

    def __init__(
        self,
        constraints: DiversityConstraints | None = None,
        *,
        classifier: BundleClassifier = DEFAULT_CLASSIFIER,
    ) -> None:
        self.constraints = constraints or DiversityConstraints()
        self.classifier = classifier
        self._history: list[ConceptBundle] = []
        self._used_ids: set[str] = set()
        self._reuse_counts: Counter[str] = Counter()

    def reset(self) -> None:
        self._history.clear()
        self._used_ids.clear()
        self._reuse_counts.clear()

    def similarity(self, a: ConceptBundle, b: ConceptBundle) -> float:
        return bundle_similarity(a, b, classifier=self.classifier)

    def is_diverse_enough(self, proposed: ConceptBundle) -> DiversityVerdict:
        """
        Accept or reject ``proposed`` against the accepted history.

        Rejected when its similarity to any accepted bundle exceeds the
        threshold, or when one of its required component ids already appears
        in ``max_component_reuse`` accepted bundles.
        """

        threshold = float(self.constraints.similarity_threshold)
        for existing in self._history:
            similarity = self.similarity(proposed, existing)
            if similarity > threshold:
                return DiversityVerdict(
                    diverse=False,
                    reason=f"Too similar to existing concept (similarity: {similarity:.2f})",
                    similarity=similarity,
                )

        cap = int(self.constraints.max_component_reuse)
        offending = tuple(
            component_id
            for component_id in dict.fromkeys(proposed.required_ids())
            if self._reuse_counts[component_id] >= cap
        )
        if offending:
            first = offending[0]
            return DiversityVerdict(
                diverse=False,
                reason=f"Component {first} used too many times ({self._reuse_counts[first]}/{cap})",
                offending_ids=offending,
            )

        return DiversityVerdict(diverse=True)

    def closest_concept(self, proposed: ConceptBundle) -> tuple[ConceptBundle | None, float]:
        """The accepted bundle most similar to ``proposed`` (earliest on ties) and its similarity."""

        closest: ConceptBundle | None = None
        best = 0.0
        for existing in self._history:
            similarity = self.similarity(proposed, existing)
            if closest is None or similarity > best:
                closest, best = existing, similarity
        return closest, best

    def rejection_cost(self, proposed: ConceptBundle) -> tuple[int, float]:
        """
        How far ``proposed`` is from passing the gate, for ranking retry options.

        Returns ``(violations, closest_similarity)``: one violation per required
        id at the reuse cap, plus one when the closest accepted bundle is over
        the similarity threshold. ``violations == 0`` exactly when
        ``is_diverse_enough`` accepts the bundle.
        """

        _, closest = self.closest_concept(proposed)
        cap = int(self.constraints.max_component_reuse)
        violations = sum(
            1 for component_id in dict.fromkeys(proposed.required_ids()) if self._reuse_counts[component_id] >= cap
        )
        if closest > float(self.constraints.similarity_threshold):
            violations += 1
        return violations, closest

    def diversity_score(self, bundle: ConceptBundle) -> float:
        """1.0 for an empty history, else the distance to the closest accepted bundle."""

        if not self._history:
            return 1.0
        closest = max(self.similarity(bundle, existing) for existing in self._history)
        return round(1.0 - closest, 4)

    def record_concept(self, bundle: ConceptBundle) -> None:
        self._history.append(bundle)
        self._used_ids.update(bundle.component_ids())
        self._reuse_counts.update(set(bundle.required_ids()))
        logger.debug("Recorded concept %d: %s", len(self._history), ",".join(bundle.required_ids()))

    def used_component_ids(self) -> frozenset[str]:
        return frozenset(self._used_ids)

    def is_component_used(self, component_id: str) -> bool:
        return component_id in self._used_ids

    def reuse_count(self, component_id: str) -> int:
        return int(self._reuse_counts[component_id])

    @property
    def history(self) -> tuple[ConceptBundle, ...]:
        return tuple(self._history)

    @property
    def history_count(self) -> int:
        return len(self._history)

    def categories_used(self, dimension: str) -> Counter[str]:
        """How often each category of ``dimension`` occurs in the accepted history."""

        return Counter(self.classifier.categorize(bundle)[dimension] for bundle in self._history)

    def dimension_diversity(self) -> dict[str, float]:
        """Distinct categories per accepted bundle for pose, location and lighting."""

        total = len(self._history)
        if total == 0:
            return {dimension: 1.0 for dimension in THRESHOLD_DIMENSIONS}
        return {
            dimension: round(len(self.categories_used(dimension)) / total, 4)
            for dimension in THRESHOLD_DIMENSIONS
        }

    def meets_dimension_thresholds(self) -> dict[str, bool]:
        ratios = self.dimension_diversity()
        return {dimension: ratios[dimension] >= self.constraints.min_diversity(dimension) for dimension in ratios}

    def summary(self) -> Mapping[str, Any]:
        return {
            "history_count": self.history_count,
            "used_component_ids": sorted(self._used_ids),
            "dimension_diversity": self.dimension_diversity(),
        }
