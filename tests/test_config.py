"""Tests for configuration loading and override behavior.

Environment variables override YAML values, YAML overrides model defaults.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from conceptkb.utils.config import Config, load_config


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a local .env and relative data dirs out of the tests."""
    monkeypatch.chdir(tmp_path)


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


def test_yaml_loads_values(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            "similarity": {"batch_size": 5, "pacing_delay_seconds": 0.5},
            "cleanup": {"stale_after_days": 3},
            "storage": {"backend": "memory"},
        },
    )

    cfg = load_config(cfg_path)

    assert cfg.similarity.batch_size == 5
    assert cfg.similarity.pacing_delay_seconds == 0.5
    assert cfg.similarity.min_similarity == 0.3
    assert cfg.cleanup.stale_after_days == 3
    assert cfg.cleanup.archived_retention_days == 30


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            "similarity": {"batch_size": 5, "max_matches": 4},
            "storage": {"backend": "memory"},
        },
    )

    monkeypatch.setenv("SIMILARITY__BATCH_SIZE", "7")

    cfg = load_config(cfg_path)

    assert cfg.similarity.batch_size == 7
    assert cfg.similarity.max_matches == 4


def test_repository_config_file_loads() -> None:
    repo_config = Path(__file__).resolve().parents[1] / "config" / "config.yaml"

    cfg = Config.from_yaml(repo_config)

    assert cfg.llm.provider == "openai"
    assert cfg.orchestrator.chunk_delay_seconds == 1.5
    assert cfg.prompts_path == Path("config/concept_prompts.yaml")


def test_invalid_yaml_root_type_raises(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(yaml.safe_dump(["not", "a", "mapping"]), encoding="utf-8")

    with pytest.raises(ValueError, match="YAML config root must be a mapping"):
        load_config(cfg_path)


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_batch_size_out_of_range_is_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, {"similarity": {"batch_size": 11}})

    with pytest.raises(ValueError):
        load_config(cfg_path)


def test_validate_config_checks_chunk_sizes(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            "chunking": {"max_chunk_size": 400, "min_chunk_size": 500},
            "storage": {"backend": "memory"},
        },
    )

    with pytest.raises(ValueError, match="max_chunk_size"):
        load_config(cfg_path)


def test_anthropic_provider_requires_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, {"llm": {"provider": "anthropic"}, "storage": {"backend": "memory"}})

    with pytest.raises(ValueError, match="Anthropic API key"):
        load_config(cfg_path)

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    assert load_config(cfg_path).anthropic_api_key == "sk-ant-test"


def test_json_backend_creates_data_dir(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    data_dir = tmp_path / "store"
    _write_yaml(cfg_path, {"storage": {"backend": "json", "data_dir": str(data_dir)}})

    load_config(cfg_path)

    assert data_dir.is_dir()
