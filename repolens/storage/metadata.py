"""Repository-level ``metadata.json`` written after each successful run."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..analysis.git import get_current_branch, get_head_commit
from .paths import normalize_git_remote

logger = logging.getLogger(__name__)

METADATA_VERSION = "1.0"


@dataclass
class RepositoryInfo:
    path: str
    remote: str | None = None
    branch: str | None = None
    last_commit: str | None = None


@dataclass
class IndexedInfo:
    timestamp: str
    files: int = 0
    components: int = 0
    size: int = 0


@dataclass
class RepositoryMetadata:
    repository: RepositoryInfo
    indexed: IndexedInfo | None = None
    version: str = METADATA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryMetadata":
        if not isinstance(data, dict):
            raise ValueError(f"metadata must be a JSON object, got {type(data).__name__}")
        indexed = data.get("indexed")
        return cls(
            version=data.get("version", METADATA_VERSION),
            repository=RepositoryInfo(**data["repository"]),
            indexed=IndexedInfo(**indexed) if indexed else None,
            extra=dict(data.get("extra") or {}),
        )


def load_repository_metadata(path: Path) -> RepositoryMetadata | None:
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return RepositoryMetadata.from_dict(json.load(f))
    except (OSError, ValueError, KeyError, TypeError):
        logger.warning("Ignoring unreadable repository metadata at %s", path, exc_info=True)
        return None


def save_repository_metadata(path: Path, metadata: RepositoryMetadata) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".metadata.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(metadata.to_dict(), f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            logger.debug("Failed to remove temporary metadata file %s", tmp_name, exc_info=True)
        raise


def update_repository_metadata(
    path: Path,
    repository_path: Path,
    *,
    remote: str | None,
    files: int,
    components: int,
    size: int,
) -> RepositoryMetadata:
    """Refresh ``metadata.json`` with the current git position and index counts."""
    existing = load_repository_metadata(path)
    metadata = RepositoryMetadata(
        repository=RepositoryInfo(
            path=str(repository_path),
            remote=normalize_git_remote(remote) if remote else None,
            branch=get_current_branch(repository_path),
            last_commit=get_head_commit(repository_path),
        ),
        indexed=IndexedInfo(
            timestamp=datetime.now(timezone.utc).isoformat(),
            files=files,
            components=components,
            size=size,
        ),
        extra=existing.extra if existing else {},
    )
    save_repository_metadata(path, metadata)
    return metadata
