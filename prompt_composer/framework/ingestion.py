from __future__ import annotations

import json
import logging
import math
import os
import random
import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import pandas as pd

from prompt_composer.foundation.config_io import load_yaml_document
from prompt_composer.framework.components import (
    METADATA_BY_SLOT,
    SLOT_TYPES,
    Component,
    metadata_for_slot,
)
from prompt_composer.framework.database import ComponentDatabase

logger = logging.getLogger(__name__)

BUNDLED_CORPUS_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")

_TAG_SPLIT_RE = re.compile(r"[;,|]")

_FIELD_ALIASES: Mapping[str, tuple[str, ...]] = {
    "slot_type": ("slot_type", "slotType", "type"),
    "text": ("text", "promptText", "prompt_text"),
    "usage_count": ("usage_count", "usageCount"),
}


def bundled_corpus_paths() -> list[str]:
    """Corpus files shipped inside the package, sorted by name."""

    if not os.path.isdir(BUNDLED_CORPUS_DIR):
        return []
    return [
        os.path.join(BUNDLED_CORPUS_DIR, name)
        for name in sorted(os.listdir(BUNDLED_CORPUS_DIR))
        if name.endswith((".yaml", ".yml", ".json", ".csv"))
    ]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _pick(record: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in record and not _is_missing(record[key]):
            return record[key]
    return None


def _require_str(record: Mapping[str, Any], name: str, *, where: str) -> str:
    value = _pick(record, name)
    if value is None:
        raise ValueError(f"{where}: missing required field {name!r}")
    if not isinstance(value, str):
        raise ValueError(f"{where}: field {name!r} must be a string")
    return value.strip()


def _parse_tags(value: Any, *, where: str) -> frozenset[str]:
    if _is_missing(value):
        return frozenset()
    if isinstance(value, str):
        items = _TAG_SPLIT_RE.split(value)
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        raise ValueError(f"{where}: tags must be a list or a delimited string")
    return frozenset(str(item).strip().lower() for item in items if str(item).strip())


def _parse_metadata(record: Mapping[str, Any], slot_type: str, *, where: str):
    raw = record.get("metadata")
    if _is_missing(raw):
        raw = None
    if raw is None:
        # Flat (CSV) layout: the variant field as its own column, or a generic column.
        cls = METADATA_BY_SLOT.get(slot_type)
        if cls is not None:
            flat = record.get(cls.field_name)
            if _is_missing(flat):
                flat = record.get("metadata_value")
            raw = None if _is_missing(flat) else str(flat)
    try:
        return metadata_for_slot(slot_type, raw)
    except ValueError as exc:
        raise ValueError(f"{where}: {exc}") from exc


def component_from_record(record: Mapping[str, Any], *, index: int | None = None) -> Component:
    """Build a Component from one raw corpus record (camelCase or snake_case keys)."""

    if not isinstance(record, Mapping):
        raise ValueError(f"record[{index}]: expected a mapping, got {type(record).__name__}")
    where = f"record[{index}]" if index is not None else "record"

    component_id = _require_str(record, "id", where=where)
    where = f"{where} ({component_id})"
    slot_type = _require_str(record, "slot_type", where=where)
    if slot_type not in SLOT_TYPES:
        raise ValueError(f"{where}: unknown slot type {slot_type!r}")

    text = _require_str(record, "text", where=where)
    description_raw = _pick(record, "description")
    description = str(description_raw).strip() if description_raw is not None else text

    brand_raw = _pick(record, "brand")
    usage_raw = _pick(record, "usage_count")
    usage_count = 0
    if usage_raw is not None:
        if isinstance(usage_raw, bool):
            raise ValueError(f"{where}: usage_count must be an int")
        try:
            usage_count = int(usage_raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{where}: usage_count must be an int") from exc

    return Component(
        id=component_id,
        category=_require_str(record, "category", where=where),
        slot_type=slot_type,
        description=description,
        text=text,
        tags=_parse_tags(record.get("tags"), where=where),
        brand=str(brand_raw).strip() if brand_raw is not None else None,
        metadata=_parse_metadata(record, slot_type, where=where),
        usage_count=usage_count,
    )


def _records_from_payload(payload: Any, *, path: str) -> list[Mapping[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, Mapping):
        if "components" not in payload:
            raise ValueError(f"Corpus file must be a list or contain key 'components': {path}")
        payload = payload.get("components") or []
    if not isinstance(payload, list):
        raise ValueError(f"Corpus components must be a list: {path}")
    return payload


def load_corpus_records(path: str) -> list[Mapping[str, Any]]:
    """Read raw component records from a YAML, JSON or CSV corpus file."""

    lowered = path.lower()
    if lowered.endswith((".yaml", ".yml")):
        return _records_from_payload(load_yaml_document(path), path=path)
    if lowered.endswith(".json"):
        with open(path, "r", encoding="utf-8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
        return _records_from_payload(payload, path=path)
    if lowered.endswith(".csv"):
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        frame = frame.replace({"": None})
        return frame.to_dict(orient="records")
    raise ValueError(f"Unsupported corpus file type: {path}")


def load_corpus(paths: Sequence[str]) -> list[Component]:
    components: list[Component] = []
    for path in paths:
        records = load_corpus_records(path)
        before = len(components)
        for idx, record in enumerate(records):
            try:
                components.append(component_from_record(record, index=idx))
            except ValueError as exc:
                raise ValueError(f"{path}: {exc}") from exc
        logger.info("Loaded corpus %s: components=%d", path, len(components) - before)
    return components


def resolve_corpus_paths(paths: Iterable[str] = (), *, include_bundled: bool = True) -> list[str]:
    resolved = list(bundled_corpus_paths()) if include_bundled else []
    for path in paths:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(str(path))))
        if not os.path.exists(expanded):
            raise FileNotFoundError(f"Corpus file not found: {expanded}")
        if expanded not in resolved:
            resolved.append(expanded)
    return resolved


def build_database(
    paths: Iterable[str] = (),
    *,
    include_bundled: bool = True,
    rng: random.Random | None = None,
    selection_pool_fraction: float = 0.3,
) -> ComponentDatabase:
    """Create and initialize a fresh database from corpus files."""

    corpus_paths = resolve_corpus_paths(paths, include_bundled=include_bundled)
    database = ComponentDatabase(rng=rng, selection_pool_fraction=selection_pool_fraction)
    database.initialize(lambda: load_corpus(corpus_paths))
    return database


_GLOBAL_DATABASE: ComponentDatabase | None = None
_GLOBAL_LOCK = threading.Lock()


def get_component_database(
    corpus_paths: Iterable[str] | None = None,
    *,
    include_bundled: bool = True,
) -> ComponentDatabase:
    """Process-wide database, created and ingested on first use."""

    global _GLOBAL_DATABASE
    with _GLOBAL_LOCK:
        if _GLOBAL_DATABASE is None:
            _GLOBAL_DATABASE = ComponentDatabase()
        database = _GLOBAL_DATABASE
    paths = resolve_corpus_paths(corpus_paths or (), include_bundled=include_bundled)
    database.initialize(lambda: load_corpus(paths))
    return database


def reset_component_database() -> None:
    global _GLOBAL_DATABASE
    with _GLOBAL_LOCK:
        _GLOBAL_DATABASE = None
