# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import json

from repolens.config import DEFAULT_EXCLUDE_PATTERNS, Config


def test_file_config_defaults(tmp_path):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({}))

    cfg = Config(cfg_path)

    assert cfg.embeddings_dimension == 384
    assert cfg.embeddings_batch_size == 32
    assert cfg.file_batch_size == 50
    assert cfg.vcs_max_commits == 1000
    assert cfg.metrics_enabled is True
    assert cfg.metrics_retention_days == 90
    assert cfg.metrics_read_batch_size == 50
    assert cfg.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
    assert cfg.languages == []


def test_dot_notation_and_properties(tmp_path):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(
        json.dumps(
            {
                "storage": {"root": str(tmp_path / "store")},
                "index": {"languages": ["Python", "Go"], "extra_exclude_patterns": ["gen/"]},
            }
        )
    )

    cfg = Config(cfg_path)

    assert cfg.get("index.languages") == ["Python", "Go"]
    assert cfg.get("index.missing.deep", "fallback") == "fallback"
    assert cfg.languages == ["python", "go"]
    assert cfg.storage_root == (tmp_path / "store").resolve()
    assert cfg.exclude_patterns[-1] == "gen/"


def test_missing_path_falls_back_to_env(tmp_path, monkeypatch):
    monkeypatch.setenv("REPOLENS_STORAGE_ROOT", str(tmp_path / "env-root"))
    monkeypatch.setenv("REPOLENS_EMBEDDING_MODEL", "env-model")
    monkeypatch.setenv("REPOLENS_LANGUAGES", "python, rust")

    cfg = Config(tmp_path / "does-not-exist.json")

    assert cfg.storage_root == (tmp_path / "env-root").resolve()
    assert cfg.embeddings_model == "env-model"
    assert cfg.languages == ["python", "rust"]
    assert cfg.embeddings_dimension == 384


def test_invalid_dimension_defaults(tmp_path):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({"embeddings": {"dimension": "wide"}}))

    cfg = Config(cfg_path)

    assert cfg.embeddings_dimension == 384


def test_malformed_file_falls_back_to_env(tmp_path, monkeypatch):
    monkeypatch.setenv("REPOLENS_EMBEDDING_PROVIDER", "openai")
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text("{not json")

    cfg = Config(cfg_path)

    assert cfg.embeddings_provider == "openai"
