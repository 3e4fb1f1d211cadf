from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "PROMPT_COMPOSER_CONFIG"
CONFIG_DIR = "config"
BASE_CONFIG_NAME = "config.yaml"
LOCAL_CONFIG_NAME = "config.local.yaml"

# Checked in order at each directory level while walking up.
REPO_MARKERS: tuple[str, ...] = ("pyproject.toml", ".git")


@dataclass(frozen=True)
class ConfigSource:
    """Where a loaded configuration came from.

    ``mode`` is one of ``explicit``, ``env``, ``base``, ``base+local`` or
    ``defaults`` (no file found and missing files were allowed).
    """

    mode: str
    paths: tuple[str, ...] = ()
    env_var: str | None = CONFIG_ENV_VAR

    def describe(self) -> str:
        if self.mode == "defaults":
            return "built-in defaults (no config file found)"
        if self.mode == "env":
            return f"env {self.env_var}={self.paths[0]}"
        if self.mode == "explicit":
            return f"explicit path={self.paths[0]}"
        labels = ("base", "local")
        return " ".join(f"{label}={path}" for label, path in zip(labels, self.paths))


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    """Nearest directory at or above ``start`` (default: cwd) holding a repo marker."""

    here = Path(start) if start is not None else Path.cwd()
    here = here.resolve()
    if here.is_file():
        here = here.parent

    for directory in (here, *here.parents):
        if any((directory / marker).exists() for marker in REPO_MARKERS):
            return str(directory)
    raise FileNotFoundError(f"Cannot locate repo root above {here}: none of {', '.join(REPO_MARKERS)} found")


def load_yaml_document(path: str) -> Any:
    """Parse a YAML file, wrapping syntax errors in ValueError with the path."""

    try:
        with open(path, "r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc


def _read_mapping(path: str) -> dict[str, Any]:
    payload = load_yaml_document(path)
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def _shape(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def merge_overlay(base: Mapping[str, Any], overlay: Mapping[str, Any], *, path: str = "") -> dict[str, Any]:
    """
    Layer ``overlay`` on top of ``base``.

    Mappings merge key by key; lists and scalars are replaced wholesale. A
    null on either side always merges. Replacing a mapping, list or scalar
    with a value of a different shape raises ValueError naming the dotted key.
    """

    merged = dict(base)
    for key, value in overlay.items():
        where = f"{path}.{key}" if path else str(key)
        current = merged.get(key)
        if current is None or value is None:
            merged[key] = value
        elif _shape(current) != _shape(value):
            raise ValueError(
                f"Invalid config overlay merge at {where}: base is {_shape(current)} but overlay is {_shape(value)}"
            )
        elif isinstance(current, Mapping):
            merged[key] = merge_overlay(current, value, path=where)
        else:
            merged[key] = list(value) if isinstance(value, tuple) else value
    return merged


def _single_file(config_path: str | os.PathLike[str] | None, env_var: str | None) -> tuple[str, str] | None:
    if config_path is not None and str(config_path).strip():
        return "explicit", str(config_path).strip()
    if config_path is None and env_var:
        from_env = os.environ.get(env_var, "").strip()
        if from_env:
            return "env", from_env
    return None


def load_config(
    config_path: str | os.PathLike[str] | None = None,
    *,
    env_var: str | None = CONFIG_ENV_VAR,
    config_dir: str | os.PathLike[str] | None = None,
    start_dir: str | None = None,
    allow_missing: bool = False,
) -> tuple[dict[str, Any], ConfigSource]:
    """
    Read the composer configuration as a raw mapping.

    Resolution order:
      1. explicit ``config_path`` (single file, no overlay)
      2. the file named by ``env_var`` (single file, no overlay)
      3. ``config.yaml`` in ``config_dir`` (default: ``<repo root>/config``),
         with ``config.local.yaml`` from the same directory merged on top.

    With ``allow_missing`` a missing base file (or repo root) yields an empty
    mapping in ``defaults`` mode. Explicit and env paths must always exist.
    """

    single = _single_file(config_path, env_var)
    if single is not None:
        mode, raw_path = single
        resolved = os.path.abspath(os.path.expandvars(os.path.expanduser(raw_path)))
        return _read_mapping(resolved), ConfigSource(mode, (resolved,), env_var)

    try:
        directory = Path(config_dir) if config_dir is not None else Path(find_repo_root(start_dir)) / CONFIG_DIR
    except FileNotFoundError:
        if allow_missing:
            return {}, ConfigSource("defaults", (), env_var)
        raise

    base_path = (directory / BASE_CONFIG_NAME).resolve()
    if not base_path.is_file():
        if allow_missing:
            return {}, ConfigSource("defaults", (), env_var)
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    cfg = _read_mapping(str(base_path))
    local_path = (directory / LOCAL_CONFIG_NAME).resolve()
    if not local_path.is_file():
        return cfg, ConfigSource("base", (str(base_path),), env_var)

    cfg = merge_overlay(cfg, _read_mapping(str(local_path)))
    return cfg, ConfigSource("base+local", (str(base_path), str(local_path)), env_var)
