from __future__ import annotations

import logging
import math
import random
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from prompt_composer.framework.components import Component, ComponentFilter, normalize_brand

logger = logging.getLogger(__name__)

DEFAULT_SELECTION_POOL_FRACTION = 0.3


class ComponentDatabase:
    """
    Indexed in-memory store of prompt components.

    Components live in a primary id mapping plus four secondary indexes
    (category, slot type, brand, tag) of id sets, so queries intersect index
    sets instead of scanning the corpus.
    """

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        selection_pool_fraction: float = DEFAULT_SELECTION_POOL_FRACTION,
    ) -> None:
        if not (0.0 < float(selection_pool_fraction) <= 1.0):
            raise ValueError("selection_pool_fraction must be in (0, 1]")
        self.rng = rng or random.Random()
        self.selection_pool_fraction = float(selection_pool_fraction)

        self._components: dict[str, Component] = {}
        self._order: dict[str, int] = {}
        self._by_category: dict[str, set[str]] = {}
        self._by_slot: dict[str, set[str]] = {}
        self._by_brand: dict[str, set[str]] = {}
        self._by_tag: dict[str, set[str]] = {}

        self._usage_lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._initialized = False

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._components

    def add(self, component: Component) -> None:
        """Insert (or overwrite by id) a component and index it."""

        previous = self._components.get(component.id)
        if previous is not None:
            self._unindex(previous)
        else:
            self._order[component.id] = len(self._order)

        self._components[component.id] = component
        self._by_category.setdefault(component.category, set()).add(component.id)
        self._by_slot.setdefault(component.slot_type, set()).add(component.id)
        brand_key = component.brand_key
        if brand_key:
            self._by_brand.setdefault(brand_key, set()).add(component.id)
        for tag in component.tags:
            self._by_tag.setdefault(tag, set()).add(component.id)

    def add_many(self, components: Iterable[Component]) -> int:
        count = 0
        for component in components:
            self.add(component)
            count += 1
        return count

    def _unindex(self, component: Component) -> None:
        indexes: list[tuple[dict[str, set[str]], str | None]] = [
            (self._by_category, component.category),
            (self._by_slot, component.slot_type),
            (self._by_brand, component.brand_key),
        ]
        indexes.extend((self._by_tag, tag) for tag in component.tags)
        for index, key in indexes:
            if key is None:
                continue
            ids = index.get(key)
            if ids is None:
                continue
            ids.discard(component.id)
            if not ids:
                del index[key]

    def get(self, component_id: str) -> Component | None:
        return self._components.get(component_id)

    def all_components(self) -> list[Component]:
        return list(self._components.values())

    def categories(self) -> list[str]:
        return sorted(self._by_category)

    def query(self, flt: ComponentFilter | None = None) -> list[Component]:
        """
        Return components matching every populated field of ``flt``.

        Results follow insertion order; filtering has no randomness.
        """

        flt = flt or ComponentFilter()
        candidate_ids: set[str] | None = None

        def narrow(ids: set[str]) -> None:
            nonlocal candidate_ids
            candidate_ids = set(ids) if candidate_ids is None else candidate_ids & ids

        if flt.category:
            narrow(self._by_category.get(flt.category, set()))
        if flt.slot_type:
            narrow(self._by_slot.get(flt.slot_type, set()))
        brand_key = normalize_brand(flt.brand)
        if brand_key:
            narrow(self._by_brand.get(brand_key, set()))
        for tag in flt.tags:
            narrow(self._by_tag.get(tag, set()))

        if candidate_ids is None:
            candidate_ids = set(self._components)
        if flt.exclude_ids:
            candidate_ids -= flt.exclude_ids

        ordered = sorted(candidate_ids, key=self._order.__getitem__)
        results = [self._components[component_id] for component_id in ordered]
        if flt.metadata is not None:
            results = [component for component in results if component.metadata == flt.metadata]
        return results

    def pick_least_used(self, candidates: Sequence[Component]) -> Component | None:
        """
        Pick uniformly among the least-used share of ``candidates``.

        Candidates are ranked by ascending usage count and the lowest
        ``selection_pool_fraction`` (at least one) forms the pool.
        """

        if not candidates:
            return None
        ranked = sorted(candidates, key=lambda component: component.usage_count)
        pool_size = max(1, int(math.floor(len(ranked) * self.selection_pool_fraction)))
        return self.rng.choice(ranked[:pool_size])

    def get_random(self, flt: ComponentFilter | None = None) -> Component | None:
        return self.pick_least_used(self.query(flt))

    def increment_usage(self, component_id: str) -> None:
        component = self._components.get(component_id)
        if component is None:
            logger.debug("increment_usage ignored unknown component id %s", component_id)
            return
        with self._usage_lock:
            component.usage_count += 1

    def brand_elements(self, brand: str) -> list[Component]:
        return self.query(ComponentFilter(slot_type="brand_element", brand=brand))

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, loader: Callable[[], Iterable[Component]]) -> int:
        """
        Populate the database once from ``loader``.

        Later calls are no-ops; returns the number of components added by this call.
        """

        with self._init_lock:
            if self._initialized:
                logger.debug("Component database already initialized; skipping")
                return 0
            added = self.add_many(loader())
            self._initialized = True
        logger.info(
            "Component database initialized: components=%d categories=%d",
            len(self._components),
            len(self._by_category),
        )
        return added

    def clear(self) -> None:
        with self._init_lock:
            self._components.clear()
            self._order.clear()
            self._by_category.clear()
            self._by_slot.clear()
            self._by_brand.clear()
            self._by_tag.clear()
            self._initialized = False

    def stats(self) -> dict[str, Any]:
        by_slot: Mapping[str, set[str]] = self._by_slot
        return {
            "components": len(self._components),
            "categories": self.categories(),
            "by_slot": {slot: len(ids) for slot, ids in sorted(by_slot.items())},
            "brands": sorted(self._by_brand),
        }
