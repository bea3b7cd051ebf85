# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for repolens tests.
"""

import hashlib
import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

import numpy as np
import pytest

import repolens.config as repolens_config
from repolens.indexer import RepositoryIndexer

TEST_DIMENSION = 384
TOPICS = ("alpha", "beta", "gamma", "delta")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def test_repo_path(temp_dir):
    """Create a temporary repository with sample files."""
    repo_path = temp_dir / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    (repo_path / "main.py").write_text("""
import os
from utils import process_data

def hello_world():
    '''Say hello to the world.'''
    print("Hello, World!")

class Calculator:
    '''Simple calculator class.'''

    def add(self, a, b):
        '''Add two numbers.'''
        return a + b

    def subtract(self, a, b):
        '''Subtract b from a.'''
        return a - b
""")

    (repo_path / "utils.py").write_text("""
def process_data(data):
    '''Process input data.'''
    result = []
    for item in data:
        result.append(item.strip())
    return result

def validate_input(value):
    '''Validate user input.'''
    if not value:
        raise ValueError("Value cannot be empty")
    return True
""")

    subdir = repo_path / "lib"
    subdir.mkdir()
    (subdir / "helper.ts").write_text("""import { format } from "./format";

export function formatOutput(text: string): string {
  return text.toUpperCase();
}

export class Logger {
  constructor(private name: string) {}

  log(message: string): void {
    console.log(`[${this.name}] ${message}`);
  }
}
""")

    (repo_path / "README.md").write_text("""# Test Repo

Intro paragraph.

## Usage

Run the thing.
""")

    ignored = repo_path / "node_modules" / "pkg"
    ignored.mkdir(parents=True)
    (ignored / "index.js").write_text("function ignored() { return 1; }\n")

    yield repo_path


def _hash_vector(text: str, dim: int = TEST_DIMENSION) -> np.ndarray:
    from numpy.random import default_rng

    digest = hashlib.sha256(text.encode("utf-8")).digest()
    seed_int = int.from_bytes(digest[:8], "big", signed=False)
    return default_rng(seed_int).standard_normal(dim).astype("float32")


@pytest.fixture
def dummy_embed_fn():
    """Create a deterministic embedding function for testing."""

    def embed_fn(texts):
        embeddings = np.empty((len(texts), TEST_DIMENSION), dtype="float32")
        for i, text in enumerate(texts):
            embeddings[i] = _hash_vector(text)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / (norms + 1e-8)

    return embed_fn


@pytest.fixture
def topic_embed_fn():
    """Embedding where texts sharing a topic word point the same way.

    Each topic word owns one axis; a small hash-seeded component keeps
    distinct texts from being identical.
    """

    def embed_fn(texts):
        embeddings = np.zeros((len(texts), TEST_DIMENSION), dtype="float32")
        for i, text in enumerate(texts):
            lowered = text.lower()
            for axis, topic in enumerate(TOPICS):
                if topic in lowered:
                    embeddings[i, axis] = 1.0
            noise = _hash_vector(text)
            embeddings[i] += 0.01 * noise / np.linalg.norm(noise)
        return embeddings

    return embed_fn


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """A Config rooted in the temp directory and installed as the global config."""
    config_path = temp_dir / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "storage": {"root": str(temp_dir / "indexes")},
                "embeddings": {
                    "provider": "sentence-transformers",
                    "model": "test-model",
                    "dimension": TEST_DIMENSION,
                    "batch_size": 4,
                    "timeout_seconds": 30,
                },
                "index": {"file_batch_size": 2, "concurrency": 2},
                "vcs": {"timeout_seconds": 10},
                "metrics": {"enabled": True, "retention_days": 90},
            }
        )
    )
    cfg = repolens_config.Config(config_path)
    monkeypatch.setattr(repolens_config, "_config", cfg)
    return cfg


@pytest.fixture
def indexer(test_repo_path, test_config, dummy_embed_fn):
    """An initialized RepositoryIndexer over the sample repository."""
    idx = RepositoryIndexer(
        test_repo_path, config=test_config, embed_fn=dummy_embed_fn, embed_model="test-model"
    )
    idx.initialize()
    yield idx
    idx.close()


def _git(repo: Path, *args: str, env: dict | None = None) -> None:
    subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, env=env
    )


@pytest.fixture
def git_repo(temp_dir):
    """A git repository with a small, known history."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    repo = temp_dir / "git_repo"
    repo.mkdir()
    _git(repo, "init", "-q")

    def commit(author: str, files: dict[str, str], when: int) -> None:
        for name, content in files.items():
            path = repo / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        _git(repo, "add", "-A")
        env = dict(os.environ)
        env.update(
            {
                "GIT_AUTHOR_NAME": author,
                "GIT_AUTHOR_EMAIL": f"{author}@example.com",
                "GIT_COMMITTER_NAME": author,
                "GIT_COMMITTER_EMAIL": f"{author}@example.com",
                "GIT_AUTHOR_DATE": f"{when} +0000",
                "GIT_COMMITTER_DATE": f"{when} +0000",
            }
        )
        _git(repo, "commit", "-q", "-m", f"change by {author}", env=env)

    commit("alice", {"app.py": "def run():\n    return 1\n", "README.md": "# App\n"}, 1_700_000_000)
    commit("alice", {"app.py": "def run():\n    return 2\n"}, 1_700_000_100)
    commit("bob", {"app.py": "def run():\n    return 3\n", "lib/util.py": "X = 1\n"}, 1_700_000_200)
    return repo
