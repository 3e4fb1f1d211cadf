"""Composition engine core.

This package holds the component data model, the indexed component database,
the per-batch diversity engine, the composition builder, and metrics. Prompt
text templates live under `prompt_composer.prompts`.

Common entrypoints:

- `prompt_composer.framework.ingestion.get_component_database`: process-wide corpus
- `prompt_composer.framework.composition.CompositionBuilder`: batch composition
- `prompt_composer.framework.metrics.MetricsTracker`: batch diversity/quality summaries
"""
