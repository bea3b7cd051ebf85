# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for repolens.

Loads configuration from a config.json file with fallback to environment variables.
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSION = 384
DEFAULT_EXCLUDE_PATTERNS = [
    # Version control
    ".git/",
    # Dependencies
    "node_modules/",
    "vendor/",
    "bower_components/",
    # Build output
    "dist/",
    "build/",
    "target/",
    "out/",
    ".next/",
    # Python
    "__pycache__/",
    ".venv/",
    "venv/",
    ".tox/",
    ".mypy_cache/",
    ".pytest_cache/",
    "*.egg-info/",
    # Coverage/testing
    "coverage/",
    "htmlcov/",
    ".coverage",
    # Lock files
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "Cargo.lock",
    "poetry.lock",
    "*.min.js",
    # Runtime
    ".repolens/",
]


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return None


class Config:
    """Configuration manager for repolens."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./repolens.json (current directory)
                2. ~/.repolens/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)
        self._validate_embeddings_dimension()

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                "Config path %s does not exist, using environment variables", config_path
            )
            self._load_from_env()
            return

        local_config = Path("repolens.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".repolens" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config file found, using environment variables")
        self._load_from_env()

    def _validate_embeddings_dimension(self) -> None:
        """Validate the configured embeddings dimension and warn on mismatch."""
        dimension_value = self.get("embeddings.dimension")
        if dimension_value is None:
            self.config_data.setdefault("embeddings", {}).setdefault(
                "dimension", DEFAULT_EMBEDDING_DIMENSION
            )
            return

        try:
            dimension = int(dimension_value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to %s",
                dimension_value,
                DEFAULT_EMBEDDING_DIMENSION,
            )
            self.config_data.setdefault("embeddings", {})[
                "dimension"
            ] = DEFAULT_EMBEDDING_DIMENSION
            return

        if dimension != DEFAULT_EMBEDDING_DIMENSION:
            logger.warning(
                "Configured embeddings.dimension %s differs from default %s. "
                "Ensure the selected embedding model matches this dimension.",
                dimension,
                DEFAULT_EMBEDDING_DIMENSION,
            )

        self.config_data.setdefault("embeddings", {})["dimension"] = dimension

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r") as f:
                self.config_data = json.load(f)
            logger.info("Loaded configuration from %s", path)
        except (OSError, ValueError) as e:
            logger.error("Error loading config from %s: %s", path, e)
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        self.config_data = {
            "storage": {
                "root": os.getenv("REPOLENS_STORAGE_ROOT", "~/.repolens/indexes"),
            },
            "logging": {
                "level": os.getenv("REPOLENS_LOG_LEVEL", "INFO"),
                "file": os.getenv("REPOLENS_LOG_FILE") or None,
            },
            "embeddings": {
                "provider": os.getenv("REPOLENS_EMBEDDING_PROVIDER", "sentence-transformers"),
                "model": os.getenv("REPOLENS_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
                "dimension": _env_int("REPOLENS_EMBEDDING_DIMENSION"),
                "batch_size": _env_int("REPOLENS_EMBED_BATCH_SIZE"),
            },
            "index": {
                "include_patterns": _parse_csv_list(os.getenv("REPOLENS_INCLUDE")),
                "languages": _parse_csv_list(os.getenv("REPOLENS_LANGUAGES")),
            },
        }

    # Getters for easy access
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    @property
    def storage_root(self) -> Path:
        path_str = self.get("storage.root", "~/.repolens/indexes")
        return Path(path_str).expanduser().resolve()

    @property
    def log_level(self) -> str:
        return self.get("logging.level", "INFO")

    @property
    def log_file(self) -> Optional[str]:
        """Get log file path from config or environment."""
        env_log_file = os.getenv("REPOLENS_LOG_FILE")
        if env_log_file:
            return env_log_file
        return self.get("logging.file") or None

    @property
    def embeddings_provider(self) -> str:
        """Get embedding provider name."""
        return self.get("embeddings.provider", "sentence-transformers")

    @property
    def embeddings_model(self) -> str:
        """Get embedding model name or path."""
        return self.get("embeddings.model", "all-MiniLM-L6-v2")

    @property
    def embeddings_dimension(self) -> int:
        """Get embedding dimension."""
        value = self.get("embeddings.dimension", DEFAULT_EMBEDDING_DIMENSION)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to %s",
                value,
                DEFAULT_EMBEDDING_DIMENSION,
            )
            return DEFAULT_EMBEDDING_DIMENSION

    @property
    def embeddings_batch_size(self) -> int:
        return max(1, int(self.get("embeddings.batch_size", 32)))

    @property
    def embeddings_timeout_seconds(self) -> Optional[float]:
        value = self.get("embeddings.timeout_seconds", 120.0)
        return float(value) if value else None

    @property
    def embeddings_max_chars(self) -> int:
        """Maximum characters of document text sent to the embedder."""
        return int(self.get("embeddings.max_chars", 4000))

    @property
    def embeddings_api_key(self) -> Optional[str]:
        """Get embeddings API key (for OpenAI)."""
        api_key = self.get("embeddings.api_key")
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        return api_key

    @property
    def embeddings_kwargs(self) -> dict:
        """Get additional embeddings provider kwargs."""
        embeddings_config = self.get("embeddings", {})
        known_keys = {
            "provider",
            "model",
            "dimension",
            "batch_size",
            "timeout_seconds",
            "max_chars",
            "api_key",
        }
        return {k: v for k, v in embeddings_config.items() if k not in known_keys}

    @property
    def include_patterns(self) -> list[str]:
        return list(self.get("index.include_patterns", []))

    @property
    def exclude_patterns(self) -> list[str]:
        """Gitignore-style patterns skipped during scanning."""
        extra = self.get("index.extra_exclude_patterns", [])
        return list(self.get("index.exclude_patterns", DEFAULT_EXCLUDE_PATTERNS)) + list(extra)

    @property
    def languages(self) -> list[str]:
        return [lang.lower() for lang in self.get("index.languages", [])]

    @property
    def max_file_bytes(self) -> int:
        return int(self.get("index.max_file_bytes", 1_000_000))

    @property
    def file_batch_size(self) -> int:
        """Number of files committed to the vector store per batch."""
        return max(1, int(self.get("index.file_batch_size", 50)))

    @property
    def index_concurrency(self) -> Optional[int]:
        value = self.get("index.concurrency")
        return int(value) if value else None

    @property
    def vcs_max_commits(self) -> int:
        return int(self.get("vcs.max_commits", 1000))

    @property
    def vcs_timeout_seconds(self) -> float:
        return float(self.get("vcs.timeout_seconds", 30.0))

    @property
    def metrics_enabled(self) -> bool:
        return bool(self.get("metrics.enabled", True))

    @property
    def metrics_retention_days(self) -> int:
        return int(self.get("metrics.retention_days", 90))

    @property
    def metrics_read_batch_size(self) -> int:
        """Files read concurrently per batch when counting lines."""
        return max(1, int(self.get("metrics.read_concurrency", 50)))

    @property
    def vectors_cleanup_older_than_seconds(self) -> Optional[float]:
        value = self.get("vectors.cleanup_older_than_seconds")
        return float(value) if value is not None else None


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path)
    return _config
