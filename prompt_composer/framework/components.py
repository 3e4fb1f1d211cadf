from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Mapping, Union, get_args

SlotType = Literal[
    "pose",
    "outfit",
    "location",
    "lighting",
    "camera",
    "styling",
    "brand_element",
    "hair",
    "makeup",
    "aesthetic",
]
SLOT_TYPES: tuple[str, ...] = get_args(SlotType)

# Selection order of the slots every bundle must fill.
REQUIRED_SLOTS: tuple[str, ...] = ("pose", "outfit", "location", "lighting", "camera")

PoseType = Literal["standing", "sitting", "kneeling", "walking", "yoga", "editorial", "casual", "dynamic"]
LocationType = Literal["indoor", "outdoor", "studio", "transitional"]
LightingType = Literal["natural", "studio", "golden-hour", "ambient", "firelight", "window-light"]
OutfitStyle = Literal["casual", "athletic", "luxury", "editorial", "minimal"]
Framing = Literal["close-up", "medium", "full-body", "three-quarter"]


@dataclass(frozen=True)
class PoseMetadata:
    slot_type: ClassVar[str] = "pose"
    field_name: ClassVar[str] = "pose_type"

    pose_type: str

    @property
    def value(self) -> str:
        return self.pose_type


@dataclass(frozen=True)
class LocationMetadata:
    slot_type: ClassVar[str] = "location"
    field_name: ClassVar[str] = "location_type"

    location_type: str

    @property
    def value(self) -> str:
        return self.location_type


@dataclass(frozen=True)
class LightingMetadata:
    slot_type: ClassVar[str] = "lighting"
    field_name: ClassVar[str] = "lighting_type"

    lighting_type: str

    @property
    def value(self) -> str:
        return self.lighting_type


@dataclass(frozen=True)
class OutfitMetadata:
    slot_type: ClassVar[str] = "outfit"
    field_name: ClassVar[str] = "outfit_style"

    outfit_style: str

    @property
    def value(self) -> str:
        return self.outfit_style


@dataclass(frozen=True)
class CameraMetadata:
    slot_type: ClassVar[str] = "camera"
    field_name: ClassVar[str] = "framing"

    framing: str

    @property
    def value(self) -> str:
        return self.framing


ComponentMetadata = Union[PoseMetadata, LocationMetadata, LightingMetadata, OutfitMetadata, CameraMetadata]

METADATA_BY_SLOT: dict[str, type] = {
    cls.slot_type: cls
    for cls in (PoseMetadata, LocationMetadata, LightingMetadata, OutfitMetadata, CameraMetadata)
}

# camelCase spellings emitted by the ingestion collaborator.
_METADATA_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "pose": ("pose_type", "poseType"),
    "location": ("location_type", "locationType"),
    "lighting": ("lighting_type", "lightingType"),
    "outfit": ("outfit_style", "outfitStyle"),
    "camera": ("framing", "framingType", "framing_type"),
}


def metadata_for_slot(slot_type: str, raw: Mapping[str, Any] | str | None) -> ComponentMetadata | None:
    """
    Build the metadata variant for ``slot_type`` from a raw mapping or a bare value.

    Slots without a classification return None. A mapping that names another
    slot's field (e.g. ``lightingType`` on a pose) raises ValueError.
    """

    if slot_type not in SLOT_TYPES:
        raise ValueError(f"Unknown slot type: {slot_type!r}")
    if raw is None:
        return None

    cls = METADATA_BY_SLOT.get(slot_type)
    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            return None
        if cls is None:
            raise ValueError(f"Slot type {slot_type!r} does not carry classification metadata")
        return cls(value)

    if not isinstance(raw, Mapping):
        raise ValueError(f"metadata for slot {slot_type!r} must be a mapping or string")

    present = {str(key) for key, value in raw.items() if value not in (None, "")}
    if not present:
        return None

    allowed = set(_METADATA_KEY_ALIASES.get(slot_type, ()))
    foreign = sorted(present - allowed)
    if foreign:
        raise ValueError(f"metadata keys {foreign} do not apply to slot {slot_type!r}")

    assert cls is not None
    for key in _METADATA_KEY_ALIASES[slot_type]:
        value = raw.get(key)
        if value not in (None, ""):
            return cls(str(value).strip())
    return None


def normalize_brand(brand: str | None) -> str | None:
    if brand is None:
        return None
    text = str(brand).strip()
    return text.casefold() if text else None


@dataclass(eq=False)
class Component:
    """An atomic, reusable prompt fragment."""

    id: str
    category: str
    slot_type: str
    description: str
    text: str
    tags: frozenset[str] = field(default_factory=frozenset)
    brand: str | None = None
    metadata: ComponentMetadata | None = None
    usage_count: int = 0

    _WRITE_ONCE: ClassVar[frozenset[str]] = frozenset({"id", "slot_type"})

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("Component id must be a non-empty string")
        if self.slot_type not in SLOT_TYPES:
            raise ValueError(f"Unknown slot type for component {self.id}: {self.slot_type!r}")
        if self.metadata is not None:
            expected = METADATA_BY_SLOT.get(self.slot_type)
            if expected is None or not isinstance(self.metadata, expected):
                raise ValueError(
                    f"Component {self.id}: {type(self.metadata).__name__} does not apply to slot {self.slot_type!r}"
                )
        object.__setattr__(self, "tags", frozenset(str(tag).strip().lower() for tag in self.tags if str(tag).strip()))
        if self.brand is not None and not str(self.brand).strip():
            object.__setattr__(self, "brand", None)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._WRITE_ONCE and name in self.__dict__:
            raise AttributeError(f"Component.{name} cannot change after creation")
        object.__setattr__(self, name, value)

    @property
    def classification(self) -> str | None:
        return self.metadata.value if self.metadata is not None else None

    @property
    def brand_key(self) -> str | None:
        return normalize_brand(self.brand)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "slot_type": self.slot_type,
            "description": self.description,
            "text": self.text,
            "tags": sorted(self.tags),
            "brand": self.brand,
            "usage_count": int(self.usage_count),
        }
        if self.metadata is not None:
            payload["metadata"] = {self.metadata.field_name: self.metadata.value}
        return payload


@dataclass(frozen=True)
class ComponentFilter:
    """
    Multi-dimensional component query.

    Every populated field narrows the candidates; tags must all match.
    ``metadata`` is exact-matched against the component's metadata variant.
    """

    category: str | None = None
    slot_type: str | None = None
    tags: tuple[str, ...] = ()
    brand: str | None = None
    exclude_ids: frozenset[str] = frozenset()
    metadata: ComponentMetadata | None = None

    def __post_init__(self) -> None:
        if self.slot_type is not None and self.slot_type not in SLOT_TYPES:
            raise ValueError(f"Unknown slot type in filter: {self.slot_type!r}")
        if self.metadata is not None and self.slot_type is not None:
            if self.metadata.slot_type != self.slot_type:
                raise ValueError(
                    f"{type(self.metadata).__name__} cannot filter slot {self.slot_type!r}"
                )
        object.__setattr__(self, "tags", tuple(str(tag).strip().lower() for tag in self.tags if str(tag).strip()))
        object.__setattr__(self, "exclude_ids", frozenset(self.exclude_ids))

    def narrowed(self, **changes: Any) -> "ComponentFilter":
        values = {
            "category": self.category,
            "slot_type": self.slot_type,
            "tags": self.tags,
            "brand": self.brand,
            "exclude_ids": self.exclude_ids,
            "metadata": self.metadata,
        }
        values.update(changes)
        return ComponentFilter(**values)


@dataclass(frozen=True)
class ConceptBundle:
    """One complete selection of components for a single candidate prompt."""

    pose: Component
    outfit: Component
    location: Component
    lighting: Component
    camera: Component
    styling: Component | None = None
    brand_elements: tuple[Component, ...] = ()

    def slot(self, slot_type: str) -> Component | None:
        if slot_type in REQUIRED_SLOTS or slot_type == "styling":
            return getattr(self, slot_type)
        raise ValueError(f"Bundles have no single {slot_type!r} slot")

    def required_ids(self) -> tuple[str, ...]:
        return tuple(getattr(self, slot).id for slot in REQUIRED_SLOTS)

    def component_ids(self) -> tuple[str, ...]:
        ids = list(self.required_ids())
        if self.styling is not None:
            ids.append(self.styling.id)
        ids.extend(element.id for element in self.brand_elements)
        return tuple(ids)

    def components(self) -> tuple[Component, ...]:
        items: list[Component] = [getattr(self, slot) for slot in REQUIRED_SLOTS]
        if self.styling is not None:
            items.append(self.styling)
        items.extend(self.brand_elements)
        return tuple(items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pose": self.pose.id,
            "outfit": self.outfit.id,
            "location": self.location.id,
            "lighting": self.lighting.id,
            "camera": self.camera.id,
            "styling": self.styling.id if self.styling is not None else None,
            "brand_elements": [element.id for element in self.brand_elements],
        }


@dataclass(frozen=True)
class PromptMetadata:
    word_count: int
    diversity_score: float
    brand_element_ids: tuple[str, ...] = ()
    forced: bool = False


@dataclass(frozen=True)
class ComposedPrompt:
    prompt: str
    bundle: ConceptBundle
    title: str
    description: str
    category: str
    metadata: PromptMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "bundle": self.bundle.to_dict(),
            "metadata": {
                "word_count": int(self.metadata.word_count),
                "diversity_score": float(self.metadata.diversity_score),
                "brand_element_ids": list(self.metadata.brand_element_ids),
                "forced": bool(self.metadata.forced),
            },
        }


@dataclass(frozen=True)
class BatchRequest:
    category: str
    user_intent: str = ""
    brand: str | None = None
    count: int = 1
    previous_bundles: tuple[ConceptBundle, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.category, str) or not self.category.strip():
            raise ValueError("BatchRequest.category must be a non-empty string")
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count < 1:
            raise ValueError(f"BatchRequest.count must be an int >= 1 (got {self.count!r})")
        object.__setattr__(self, "previous_bundles", tuple(self.previous_bundles))
