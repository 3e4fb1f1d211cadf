from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from itertools import combinations
from typing import Any, Literal, Mapping, Sequence

import pandas as pd

from prompt_composer.framework.classification import DEFAULT_CLASSIFIER, BundleClassifier, bundle_similarity
from prompt_composer.framework.components import ComposedPrompt, ConceptBundle
from prompt_composer.framework.database import ComponentDatabase

logger = logging.getLogger(__name__)

DetailLevel = Literal["generic", "moderate", "specific"]
DETAIL_LEVELS: tuple[str, ...] = ("generic", "moderate", "specific")

TECHNICAL_SPECS_RE = re.compile(r"(?:lens|aperture|f/|mm|distance|framing|shot on)", re.IGNORECASE)
LIGHTING_DETAILS_RE = re.compile(
    r"(?:lighting|light|illumination|golden hour|natural light|studio flash)", re.IGNORECASE
)

# Rough corpus-size estimate per concept when the caller does not supply one.
COMPONENTS_PER_CONCEPT_ESTIMATE = 6


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DiversityMetrics:
    similarity_score: float = 0.0
    pose_repetition_rate: float = 0.0
    location_repetition_rate: float = 0.0
    unique_components_used: int = 0
    total_components_available: int = 0
    component_reuse_rate: float = 0.0


@dataclass(frozen=True)
class QualityMetrics:
    average_prompt_length: float = 0.0
    has_technical_specs: bool = False
    has_lighting_details: bool = False
    has_brand_integration: bool = False
    detail_level: DetailLevel = "generic"


@dataclass(frozen=True)
class ConceptSummary:
    pose_id: str
    title: str
    prompt_length: int
    diversity_score: float


@dataclass(frozen=True)
class BatchMetrics:
    batch_id: str
    timestamp: str
    category: str
    concept_count: int
    diversity: DiversityMetrics
    quality: QualityMetrics
    concepts: tuple[ConceptSummary, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["concepts"] = [asdict(concept) for concept in self.concepts]
        return payload


@dataclass(frozen=True)
class UserExperienceMetrics:
    concept_approval_rate: float = 0.0
    regeneration_requests: int = 0
    time_to_first_generation: float = 0.0
    user_satisfaction_score: float | None = None


_UX_FIELDS = frozenset(item.name for item in fields(UserExperienceMetrics))


def _repetition_rate(values: Sequence[str]) -> float:
    if not values:
        return 0.0
    most_common = Counter(values).most_common(1)[0][1]
    return most_common / len(values) * 100


def compute_diversity_metrics(
    bundles: Sequence[ConceptBundle],
    *,
    total_components_available: int | None = None,
    classifier: BundleClassifier = DEFAULT_CLASSIFIER,
) -> DiversityMetrics:
    if not bundles:
        return DiversityMetrics()

    similarities = [bundle_similarity(a, b, classifier=classifier) for a, b in combinations(bundles, 2)]
    average_similarity = sum(similarities) / len(similarities) if similarities else 0.0

    poses = [bundle.pose.classification or "unknown" for bundle in bundles]
    locations = [bundle.location.classification or "unknown" for bundle in bundles]

    unique_ids = {component_id for bundle in bundles for component_id in bundle.component_ids()}
    total = total_components_available
    if total is None:
        total = len(bundles) * COMPONENTS_PER_CONCEPT_ESTIMATE

    return DiversityMetrics(
        similarity_score=round(average_similarity, 4),
        pose_repetition_rate=_repetition_rate(poses),
        location_repetition_rate=_repetition_rate(locations),
        unique_components_used=len(unique_ids),
        total_components_available=int(total),
        component_reuse_rate=len(unique_ids) / total if total else 0.0,
    )


def classify_detail_level(average_length: float, has_technical_specs: bool, has_lighting_details: bool) -> DetailLevel:
    if average_length >= 150 and has_technical_specs and has_lighting_details:
        return "specific"
    if average_length >= 100 and (has_technical_specs or has_lighting_details):
        return "moderate"
    return "generic"


def compute_quality_metrics(prompts: Sequence[ComposedPrompt]) -> QualityMetrics:
    if not prompts:
        return QualityMetrics()

    lengths = [len(prompt.prompt.split()) for prompt in prompts]
    average_length = sum(lengths) / len(lengths)
    has_technical_specs = any(TECHNICAL_SPECS_RE.search(prompt.prompt) for prompt in prompts)
    has_lighting_details = any(LIGHTING_DETAILS_RE.search(prompt.prompt) for prompt in prompts)
    has_brand_integration = any(prompt.bundle.brand_elements for prompt in prompts)

    return QualityMetrics(
        average_prompt_length=average_length,
        has_technical_specs=has_technical_specs,
        has_lighting_details=has_lighting_details,
        has_brand_integration=has_brand_integration,
        detail_level=classify_detail_level(average_length, has_technical_specs, has_lighting_details),
    )


class MetricsTracker:
    """
    In-memory diversity/quality snapshots per batch plus user-experience signals.

    Observability only: nothing here feeds back into composition.
    """

    def __init__(self, *, classifier: BundleClassifier = DEFAULT_CLASSIFIER) -> None:
        self.classifier = classifier
        self._batches: dict[str, BatchMetrics] = {}
        self._user_experience: dict[str, UserExperienceMetrics] = {}
        self._lock = threading.Lock()

    def track_batch(
        self,
        batch_id: str,
        category: str,
        prompts: Sequence[ComposedPrompt],
        bundles: Sequence[ConceptBundle] | None = None,
        *,
        total_components_available: int | None = None,
    ) -> BatchMetrics:
        if bundles is None:
            bundles = [prompt.bundle for prompt in prompts]

        metrics = BatchMetrics(
            batch_id=batch_id,
            timestamp=utc_now_iso8601(),
            category=category,
            concept_count=len(prompts),
            diversity=compute_diversity_metrics(
                bundles,
                total_components_available=total_components_available,
                classifier=self.classifier,
            ),
            quality=compute_quality_metrics(prompts),
            concepts=tuple(
                ConceptSummary(
                    pose_id=prompt.bundle.pose.id,
                    title=prompt.title,
                    prompt_length=len(prompt.prompt.split()),
                    diversity_score=float(prompt.metadata.diversity_score),
                )
                for prompt in prompts
            ),
        )
        with self._lock:
            self._batches[batch_id] = metrics
        logger.info(
            "Tracked batch %s: concepts=%d similarity=%.2f detail=%s",
            batch_id,
            metrics.concept_count,
            metrics.diversity.similarity_score,
            metrics.quality.detail_level,
        )
        return metrics

    def track_user_experience(self, batch_id: str, metrics: Mapping[str, Any]) -> UserExperienceMetrics:
        """Merge caller-reported signals into the batch's record (later values overwrite, unknown keys are ignored)."""

        known = {key: value for key, value in metrics.items() if key in _UX_FIELDS}
        ignored = sorted(set(metrics) - _UX_FIELDS)
        if ignored:
            logger.debug("Ignoring unknown user experience metrics for %s: %s", batch_id, ignored)
        with self._lock:
            existing = self._user_experience.get(batch_id, UserExperienceMetrics())
            merged = replace(existing, **known)
            self._user_experience[batch_id] = merged
        return merged

    def get_batch_metrics(self, batch_id: str) -> BatchMetrics | None:
        return self._batches.get(batch_id)

    def get_user_experience(self, batch_id: str) -> UserExperienceMetrics | None:
        return self._user_experience.get(batch_id)

    def all_batch_metrics(self) -> list[BatchMetrics]:
        return list(self._batches.values())

    def recent_batches(self, limit: int = 10) -> list[BatchMetrics]:
        if limit <= 0:
            return []
        return list(reversed(self.all_batch_metrics()))[:limit]

    def clear(self) -> None:
        with self._lock:
            self._batches.clear()
            self._user_experience.clear()

    def to_frame(self) -> pd.DataFrame:
        """One row per tracked batch with flattened diversity and quality columns."""

        rows: list[dict[str, Any]] = []
        for batch in self._batches.values():
            row: dict[str, Any] = {
                "batch_id": batch.batch_id,
                "timestamp": batch.timestamp,
                "category": batch.category,
                "concept_count": batch.concept_count,
            }
            row.update(asdict(batch.diversity))
            row.update(asdict(batch.quality))
            rows.append(row)
        return pd.DataFrame(rows)

    def get_aggregated_metrics(self) -> dict[str, dict[str, Any]]:
        frame = self.to_frame()
        if frame.empty:
            return {
                "diversity": {
                    "avg_similarity_score": 0.0,
                    "avg_pose_repetition_rate": 0.0,
                    "avg_location_repetition_rate": 0.0,
                    "avg_component_reuse_rate": 0.0,
                },
                "quality": {
                    "avg_prompt_length": 0.0,
                    "technical_specs_rate": 0.0,
                    "lighting_details_rate": 0.0,
                    "brand_integration_rate": 0.0,
                    "detail_level_distribution": {},
                },
                "user_experience": self._aggregate_user_experience(),
            }

        return {
            "diversity": {
                "avg_similarity_score": float(frame["similarity_score"].mean()),
                "avg_pose_repetition_rate": float(frame["pose_repetition_rate"].mean()),
                "avg_location_repetition_rate": float(frame["location_repetition_rate"].mean()),
                "avg_component_reuse_rate": float(frame["component_reuse_rate"].mean()),
            },
            "quality": {
                "avg_prompt_length": float(frame["average_prompt_length"].mean()),
                "technical_specs_rate": float(frame["has_technical_specs"].mean() * 100),
                "lighting_details_rate": float(frame["has_lighting_details"].mean() * 100),
                "brand_integration_rate": float(frame["has_brand_integration"].mean() * 100),
                "detail_level_distribution": {
                    str(level): int(count) for level, count in frame["detail_level"].value_counts().items()
                },
            },
            "user_experience": self._aggregate_user_experience(),
        }

    def _aggregate_user_experience(self) -> dict[str, Any]:
        if not self._user_experience:
            return {
                "avg_approval_rate": 0.0,
                "total_regeneration_requests": 0,
                "avg_time_to_first_generation": 0.0,
                "avg_satisfaction_score": None,
            }
        frame = pd.DataFrame([asdict(item) for item in self._user_experience.values()])
        satisfaction = frame["user_satisfaction_score"].dropna()
        return {
            "avg_approval_rate": float(frame["concept_approval_rate"].mean()),
            "total_regeneration_requests": int(frame["regeneration_requests"].sum()),
            "avg_time_to_first_generation": float(frame["time_to_first_generation"].mean()),
            "avg_satisfaction_score": float(satisfaction.mean()) if not satisfaction.empty else None,
        }


def component_usage_report(database: ComponentDatabase) -> pd.DataFrame:
    """Per-component usage, most used first (ties keep corpus order)."""

    columns = ["id", "slot_type", "category", "usage_count"]
    rows = [
        {
            "id": component.id,
            "slot_type": component.slot_type,
            "category": component.category,
            "usage_count": int(component.usage_count),
        }
        for component in database.all_components()
    ]
    frame = pd.DataFrame(rows, columns=columns)
    if frame.empty:
        return frame
    return frame.sort_values("usage_count", ascending=False, kind="stable").reset_index(drop=True)


def diversity_distribution(database: ComponentDatabase) -> dict[str, dict[str, int]]:
    """Usage summed per pose/location/lighting classification."""

    distribution: dict[str, dict[str, int]] = {}
    for slot in ("pose", "location", "lighting"):
        counts: Counter[str] = Counter()
        for component in database.all_components():
            if component.slot_type != slot:
                continue
            counts[component.classification or "unknown"] += int(component.usage_count)
        distribution[slot] = dict(counts)
    return distribution
