from __future__ import annotations

import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from prompt_composer.foundation.config_io import ConfigSource
from prompt_composer.foundation.logging_utils import close_logger, setup_operational_logger
from prompt_composer.framework.components import BatchRequest, ComponentFilter, ComposedPrompt
from prompt_composer.framework.composition import CompositionBuilder, CompositionError
from prompt_composer.framework.config import ComposerConfig
from prompt_composer.framework.database import ComponentDatabase
from prompt_composer.framework.diversity import DiversityEngine
from prompt_composer.framework.ingestion import build_database
from prompt_composer.framework.metrics import BatchMetrics, MetricsTracker, component_usage_report


def generate_batch_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class BatchResult:
    batch_id: str
    seed: int
    prompts: tuple[ComposedPrompt, ...]
    metrics: BatchMetrics
    failures: tuple[tuple[int, str], ...] = ()
    log_file: str | None = None
    dimension_diversity: dict[str, float] = field(default_factory=dict)
    component_usage: tuple[dict[str, Any], ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "batch_id": self.batch_id,
            "seed": self.seed,
            "prompts": [prompt.to_dict() for prompt in self.prompts],
            "metrics": self.metrics.to_dict(),
            "dimension_diversity": dict(self.dimension_diversity),
            "failures": [{"position": position, "error": message} for position, message in self.failures],
        }
        if self.component_usage is not None:
            payload["component_usage"] = [dict(row) for row in self.component_usage]
        return payload


def run_batch(
    config: ComposerConfig | Mapping[str, Any],
    request: BatchRequest,
    *,
    batch_id: str | None = None,
    seed: int | None = None,
    database: ComponentDatabase | None = None,
    tracker: MetricsTracker | None = None,
    config_source: ConfigSource | None = None,
    config_warnings: Sequence[str] = (),
    include_usage_report: bool = False,
) -> BatchResult:
    """
    Compose one batch end to end: config, logging, corpus, composition, metrics.

    A fresh DiversityEngine is created per call. ``database`` may be a shared,
    already-initialized instance; otherwise one is built from the configured corpus.
    With ``include_usage_report`` the result carries per-component usage after
    the batch, counted on the database the batch drew from.
    """

    if isinstance(config, ComposerConfig):
        cfg, cfg_warnings = config, list(config_warnings)
    else:
        cfg, cfg_warnings = ComposerConfig.from_dict(config)

    batch_id = batch_id or generate_batch_id()
    logger, log_file = setup_operational_logger(batch_id, log_dir=cfg.log_path, level=cfg.log_level)
    try:
        if config_source is not None:
            logger.info("Loaded config from %s", config_source.describe())
        for warning in cfg_warnings:
            logger.warning("%s", warning)

        if seed is None:
            seed = cfg.random_seed
        if seed is None:
            seed = int(time.time())
            logger.info("No composer.random_seed configured; generated seed=%d", seed)
        else:
            logger.info("Using seed=%d", seed)
        rng = random.Random(seed)

        if database is None:
            database = build_database(
                cfg.corpus_paths,
                include_bundled=cfg.include_bundled,
                rng=rng,
                selection_pool_fraction=cfg.selection_pool_fraction,
            )

        engine = DiversityEngine(cfg.diversity)
        builder = CompositionBuilder(
            database,
            engine,
            logger=logger,
            max_diversity_retries=cfg.max_diversity_retries,
            accept_on_exhaustion=cfg.accept_on_exhaustion,
            max_brand_elements=cfg.max_brand_elements,
        )

        logger.info(
            "Batch %s started: category=%s count=%d intent=%r",
            batch_id,
            request.category,
            request.count,
            request.user_intent,
        )

        failures: list[tuple[int, str]] = []
        if cfg.skip_failed_concepts:
            prompts: list[ComposedPrompt] = []
            for position in range(request.count):
                previous = request.previous_bundles + tuple(item.bundle for item in prompts)
                try:
                    prompts.append(
                        builder.compose_prompt(
                            request.category,
                            request.user_intent,
                            brand=request.brand,
                            previous_bundles=previous,
                            position=position,
                        )
                    )
                except CompositionError as exc:
                    logger.error("Concept %d failed: %s", position, exc)
                    failures.append((position, str(exc)))
        else:
            try:
                prompts = builder.compose_batch(request)
            except CompositionError as exc:
                logger.error("Batch %s failed at concept %s: %s", batch_id, exc.position, exc)
                raise

        available = len(database.query(ComponentFilter(category=request.category)))
        tracker = tracker or MetricsTracker()
        metrics = tracker.track_batch(
            batch_id,
            request.category,
            prompts,
            total_components_available=available or None,
        )

        ratios = engine.dimension_diversity()
        for dimension, met in engine.meets_dimension_thresholds().items():
            if not met:
                logger.warning(
                    "%s diversity %.2f below minimum %.2f",
                    dimension,
                    ratios[dimension],
                    cfg.diversity.min_diversity(dimension),
                )

        usage = None
        if include_usage_report:
            usage = tuple(component_usage_report(database).to_dict(orient="records"))

        logger.info(
            "Batch %s completed: concepts=%d failures=%d",
            batch_id,
            len(prompts),
            len(failures),
        )
        return BatchResult(
            batch_id=batch_id,
            seed=seed,
            prompts=tuple(prompts),
            metrics=metrics,
            failures=tuple(failures),
            log_file=log_file,
            dimension_diversity=ratios,
            component_usage=usage,
        )
    finally:
        close_logger(logger)
