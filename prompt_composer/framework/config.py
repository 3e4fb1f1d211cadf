from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from prompt_composer.foundation.config_io import CONFIG_ENV_VAR, ConfigSource, find_repo_root, load_config
from prompt_composer.framework.diversity import DiversityConstraints

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 ints, and the strings true/false/1/0/yes/no
    (case-insensitive). Raises ValueError naming ``path`` for anything else.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be a float")
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config type for {path}: expected float")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


@dataclass(frozen=True)
class ComposerConfig:
    corpus_paths: tuple[str, ...] = ()
    include_bundled: bool = True
    random_seed: int | None = None
    max_diversity_retries: int = 3
    accept_on_exhaustion: bool = True
    selection_pool_fraction: float = 0.3
    max_brand_elements: int = 2
    skip_failed_concepts: bool = False
    diversity: DiversityConstraints = DiversityConstraints()
    log_path: str | None = None
    log_level: str = "INFO"

    @staticmethod
    def from_dict(cfg: Mapping[str, Any]) -> tuple["ComposerConfig", list[str]]:
        """
        Parse and validate configuration, returning (ComposerConfig, warnings).

        Raises:
            ValueError: if a value is invalid, or on unknown keys when ``strict`` is set.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        repo_root: str | None = None

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        def collect_unknown_keys(mapping: Any, schema: Mapping[str, Any], *, prefix: str) -> list[str]:
            if not isinstance(mapping, Mapping):
                return []
            unknown: list[str] = []
            for key, value in mapping.items():
                if not isinstance(key, str):
                    continue
                if key not in schema:
                    unknown.append(f"{prefix}.{key}" if prefix else key)
                    continue
                subschema = schema.get(key)
                if isinstance(subschema, Mapping):
                    unknown.extend(
                        collect_unknown_keys(value, subschema, prefix=f"{prefix}.{key}" if prefix else key)
                    )
            return unknown

        schema: Mapping[str, Any] = {
            "strict": None,
            "corpus": {"paths": None, "include_bundled": None},
            "composer": {
                "random_seed": None,
                "max_diversity_retries": None,
                "accept_on_exhaustion": None,
                "selection_pool_fraction": None,
                "max_brand_elements": None,
                "skip_failed_concepts": None,
            },
            "diversity": {
                "similarity_threshold": None,
                "max_component_reuse": None,
                "min_pose_diversity": None,
                "min_location_diversity": None,
                "min_lighting_diversity": None,
                "enforce_outfit_variation": None,
                "enforce_framing_variation": None,
            },
            "logging": {"log_path": None, "level": None},
        }

        unknown_keys = sorted(set(collect_unknown_keys(cfg, schema, prefix="")))
        if unknown_keys:
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        def normalize_path(value: str) -> str:
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                nonlocal repo_root
                if repo_root is None:
                    repo_root = find_repo_root()
                expanded = os.path.join(repo_root, expanded)
            return os.path.abspath(expanded)

        def lookup(path: str) -> tuple[bool, Any]:
            cur: Any = cfg
            for part in path.split("."):
                if not isinstance(cur, Mapping):
                    raise ValueError(f"Invalid config type for {path}: expected mapping above {part!r}")
                if part not in cur:
                    return False, None
                cur = cur[part]
            return True, cur

        def optional_bool(path: str, default: bool) -> bool:
            present, value = lookup(path)
            if not present or value is None:
                return default
            return parse_bool(value, path)

        def optional_int(path: str, default: int | None, *, minimum: int | None = None) -> int | None:
            present, value = lookup(path)
            if not present or value is None:
                return default
            parsed = parse_int(value, path)
            if minimum is not None and parsed < minimum:
                raise ValueError(f"Invalid config value for {path}: must be >= {minimum}")
            return parsed

        def optional_unit_float(path: str, default: float, *, allow_zero: bool = True) -> float:
            present, value = lookup(path)
            if not present or value is None:
                return default
            parsed = parse_float(value, path)
            lower_ok = parsed >= 0.0 if allow_zero else parsed > 0.0
            if not lower_ok or parsed > 1.0:
                bounds = "[0, 1]" if allow_zero else "(0, 1]"
                raise ValueError(f"Invalid config value for {path}: must be in {bounds}")
            return parsed

        _, raw_paths = lookup("corpus.paths")
        if raw_paths is None:
            raw_paths = []
        if isinstance(raw_paths, str):
            raw_paths = [raw_paths]
        if not isinstance(raw_paths, list):
            raise ValueError("Invalid config type for corpus.paths: expected list of strings")
        corpus_paths: list[str] = []
        for idx, item in enumerate(raw_paths):
            if not isinstance(item, str) or not item.strip():
                raise ValueError(f"Invalid config value for corpus.paths[{idx}]: expected non-empty string")
            corpus_paths.append(normalize_path(item))

        include_bundled = optional_bool("corpus.include_bundled", True)
        if not include_bundled and not corpus_paths:
            raise ValueError("corpus.include_bundled=false requires at least one corpus.paths entry")

        _, raw_log_path = lookup("logging.log_path")
        log_path: str | None = None
        if raw_log_path is not None:
            if not isinstance(raw_log_path, str):
                raise ValueError("Invalid config type for logging.log_path: expected string")
            if raw_log_path.strip():
                log_path = normalize_path(raw_log_path)

        _, raw_level = lookup("logging.level")
        log_level = "INFO"
        if raw_level is not None:
            if not isinstance(raw_level, str) or raw_level.strip().upper() not in LOG_LEVELS:
                raise ValueError(
                    f"Invalid config value for logging.level: {raw_level!r} (expected: {'|'.join(LOG_LEVELS)})"
                )
            log_level = raw_level.strip().upper()

        diversity = DiversityConstraints(
            similarity_threshold=optional_unit_float("diversity.similarity_threshold", 0.7),
            max_component_reuse=int(optional_int("diversity.max_component_reuse", 2, minimum=1) or 2),
            min_pose_diversity=optional_unit_float("diversity.min_pose_diversity", 0.6),
            min_location_diversity=optional_unit_float("diversity.min_location_diversity", 0.5),
            min_lighting_diversity=optional_unit_float("diversity.min_lighting_diversity", 0.4),
            enforce_outfit_variation=optional_bool("diversity.enforce_outfit_variation", True),
            enforce_framing_variation=optional_bool("diversity.enforce_framing_variation", True),
        )

        max_retries = optional_int("composer.max_diversity_retries", 3, minimum=0)
        max_brand_elements = optional_int("composer.max_brand_elements", 2, minimum=0)
        assert max_retries is not None and max_brand_elements is not None

        config = ComposerConfig(
            corpus_paths=tuple(corpus_paths),
            include_bundled=include_bundled,
            random_seed=optional_int("composer.random_seed", None),
            max_diversity_retries=max_retries,
            accept_on_exhaustion=optional_bool("composer.accept_on_exhaustion", True),
            selection_pool_fraction=optional_unit_float(
                "composer.selection_pool_fraction", 0.3, allow_zero=False
            ),
            max_brand_elements=max_brand_elements,
            skip_failed_concepts=optional_bool("composer.skip_failed_concepts", False),
            diversity=diversity,
            log_path=log_path,
            log_level=log_level,
        )

        if not config.accept_on_exhaustion and config.max_diversity_retries == 0:
            warnings.append(
                "composer.accept_on_exhaustion=false with max_diversity_retries=0: "
                "any rejected concept fails immediately"
            )

        return config, warnings


def load_composer_config(
    config_path: str | os.PathLike[str] | None = None,
    *,
    extra_corpus_paths: Iterable[str] = (),
    env_var: str | None = CONFIG_ENV_VAR,
    config_dir: str | os.PathLike[str] | None = None,
) -> tuple[ComposerConfig, list[str], ConfigSource]:
    """
    Resolve, read and validate the configuration in one step.

    Without ``config_path`` a missing config file falls back to built-in
    defaults. ``extra_corpus_paths`` are appended to ``corpus.paths`` and are
    resolved against the current directory rather than the repo root.
    """

    raw, source = load_config(config_path, env_var=env_var, config_dir=config_dir, allow_missing=config_path is None)

    extra = [os.path.abspath(os.path.expanduser(path)) for path in extra_corpus_paths]
    if extra:
        corpus = raw.get("corpus")
        if corpus is None:
            corpus = {}
        if not isinstance(corpus, Mapping):
            raise ValueError("Invalid config type for corpus: expected mapping")
        existing = corpus.get("paths") or []
        if isinstance(existing, str):
            existing = [existing]
        if not isinstance(existing, list):
            raise ValueError("Invalid config type for corpus.paths: expected list of strings")
        raw = {**raw, "corpus": {**corpus, "paths": [*existing, *extra]}}

    cfg, warnings = ComposerConfig.from_dict(raw)
    return cfg, warnings, source
