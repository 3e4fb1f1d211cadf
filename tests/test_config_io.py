import os

import pytest

from prompt_composer.foundation.config_io import ConfigSource, find_repo_root, load_config, merge_overlay

ENV_VAR = "TEST_PROMPT_COMPOSER_CONFIG"


def test_load_config_base_only(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "config.yaml").write_text("a: 1\nb:\n  c: 2\n", encoding="utf-8")

    cfg, source = load_config(config_dir=tmp_path, env_var=ENV_VAR)

    assert cfg == {"a": 1, "b": {"c": 2}}
    assert source.mode == "base"
    assert os.path.basename(source.paths[0]) == "config.yaml"


def test_load_config_base_plus_local_overlay(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "config.yaml").write_text(
        "diversity:\n  max_component_reuse: 2\ncorpus:\n  paths: [a.yaml, b.yaml]\n", encoding="utf-8"
    )
    (tmp_path / "config.local.yaml").write_text(
        "diversity:\n  similarity_threshold: 0.6\ncorpus:\n  paths: [c.yaml]\n", encoding="utf-8"
    )

    cfg, source = load_config(config_dir=tmp_path, env_var=ENV_VAR)

    assert cfg == {
        "diversity": {"max_component_reuse": 2, "similarity_threshold": 0.6},
        "corpus": {"paths": ["c.yaml"]},
    }
    assert source.mode == "base+local"
    assert len(source.paths) == 2


def test_load_config_overlay_type_mismatch_raises(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "config.yaml").write_text("a:\n  b: 1\n", encoding="utf-8")
    (tmp_path / "config.local.yaml").write_text("a: [1, 2]\n", encoding="utf-8")

    with pytest.raises(ValueError, match=r"Invalid config overlay merge at a"):
        load_config(config_dir=tmp_path, env_var=ENV_VAR)


def test_load_config_invalid_overlay_yaml_raises(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "config.yaml").write_text("a: 1\n", encoding="utf-8")
    (tmp_path / "config.local.yaml").write_text("a: [1, 2\n", encoding="utf-8")

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir=tmp_path, env_var=ENV_VAR)

    assert "config.local.yaml" in str(excinfo.value)


def test_load_config_env_override_loads_single_file(tmp_path, monkeypatch):
    base_dir = tmp_path / "base"
    base_dir.mkdir()
    env_dir = tmp_path / "env"
    env_dir.mkdir()

    (base_dir / "config.yaml").write_text("a: 1\n", encoding="utf-8")
    (base_dir / "config.local.yaml").write_text("a: 2\n", encoding="utf-8")
    env_path = env_dir / "my_config.yaml"
    env_path.write_text("a: 999\n", encoding="utf-8")

    monkeypatch.setenv(ENV_VAR, str(env_path))
    cfg, source = load_config(config_dir=base_dir, env_var=ENV_VAR)

    assert cfg == {"a": 999}
    assert source.mode == "env"
    assert source.paths == (os.path.abspath(str(env_path)),)
    assert source.describe() == f"env {ENV_VAR}={env_path}"


def test_explicit_path_wins_over_env(tmp_path, monkeypatch):
    env_path = tmp_path / "env.yaml"
    env_path.write_text("a: 1\n", encoding="utf-8")
    explicit = tmp_path / "explicit.yaml"
    explicit.write_text("a: 2\n", encoding="utf-8")
    monkeypatch.setenv(ENV_VAR, str(env_path))

    cfg, source = load_config(str(explicit), env_var=ENV_VAR)

    assert cfg == {"a": 2}
    assert source.mode == "explicit"


def test_non_mapping_config_is_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match=r"must contain a YAML mapping"):
        load_config(str(path))


def test_missing_base_config_raises(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)

    with pytest.raises(FileNotFoundError, match=r"Missing base config file"):
        load_config(config_dir=tmp_path, env_var=ENV_VAR)


def test_find_repo_root_walks_up(tmp_path):
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_repo_root(str(nested)) == str(tmp_path.resolve())


def test_missing_base_config_falls_back_to_defaults_when_allowed(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)

    cfg, source = load_config(config_dir=tmp_path, env_var=ENV_VAR, allow_missing=True)

    assert cfg == {}
    assert source == ConfigSource("defaults", (), ENV_VAR)
    assert source.describe() == "built-in defaults (no config file found)"


def test_explicit_missing_file_raises_even_when_missing_allowed(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"), allow_missing=True)


def test_base_plus_local_source_describes_both_files(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "config.yaml").write_text("a: 1\n", encoding="utf-8")
    (tmp_path / "config.local.yaml").write_text("a: 2\n", encoding="utf-8")

    _cfg, source = load_config(config_dir=tmp_path, env_var=ENV_VAR)

    base, local = source.paths
    assert source.describe() == f"base={base} local={local}"


def test_merge_overlay_allows_nulls_and_replaces_lists():
    merged = merge_overlay(
        {"corpus": {"paths": ["a.yaml"], "include_bundled": True}, "logging": None},
        {"corpus": {"paths": ["b.yaml"], "include_bundled": None}, "logging": {"level": "DEBUG"}},
    )

    assert merged == {
        "corpus": {"paths": ["b.yaml"], "include_bundled": None},
        "logging": {"level": "DEBUG"},
    }


def test_merge_overlay_names_the_nested_key_on_shape_mismatch():
    with pytest.raises(ValueError, match=r"at diversity\.max_component_reuse: base is scalar but overlay is mapping"):
        merge_overlay({"diversity": {"max_component_reuse": 2}}, {"diversity": {"max_component_reuse": {"x": 1}}})
