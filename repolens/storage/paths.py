"""Per-repository storage layout.

Every repository gets its own directory under a configurable storage root::

    <storage_root>/<md5(identity)[:8]>/
        vectors.lance/
        indexer-state.json
        metrics.db
        metadata.json

The identity is the normalized git remote when one is known, so clones of
the same project share a key, and the resolved repository path otherwise.
Resolution is a pure function of its arguments.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

VECTORS_DIRNAME = "vectors.lance"
STATE_FILENAME = "indexer-state.json"
METRICS_FILENAME = "metrics.db"
METADATA_FILENAME = "metadata.json"

_SCP_REMOTE = re.compile(r"^[\w.-]+@[\w.-]+:(?P<path>.+)$")
_URL_REMOTE = re.compile(r"^[a-z][a-z0-9+.-]*://(?:[^@/]+@)?[^/]+/(?P<path>.+)$", re.I)


def normalize_git_remote(remote: str) -> str:
    """Reduce a git remote URL to a lowercase ``owner/repo`` form.

    >>> normalize_git_remote("git@github.com:Owner/Repo.git")
    'owner/repo'
    >>> normalize_git_remote("https://github.com/owner/repo")
    'owner/repo'
    """
    value = remote.strip()
    match = _SCP_REMOTE.match(value) or _URL_REMOTE.match(value)
    if match:
        value = match.group("path")
    value = value.rstrip("/")
    if value.endswith(".git"):
        value = value[: -len(".git")]
    return value.strip("/").lower()


def resolve_repository_root(path: Path) -> Path:
    """Return the nearest ancestor of ``path`` containing ``.git``.

    Falls back to the resolved path itself when no ancestor is a repository,
    so the result never depends on the process working directory.
    """
    resolved = Path(path).expanduser().resolve()
    for candidate in (resolved, *resolved.parents):
        if (candidate / ".git").exists():
            return candidate
    return resolved


def get_storage_path(repository_path: Path, storage_root: Path, remote: str | None = None) -> Path:
    if remote:
        identity = normalize_git_remote(remote)
    else:
        identity = str(Path(repository_path).expanduser().resolve())
    digest = hashlib.md5(identity.encode("utf-8")).hexdigest()[:8]
    return Path(storage_root).expanduser() / digest


@dataclass(frozen=True)
class StoragePaths:
    root: Path

    @classmethod
    def for_repository(
        cls, repository_path: Path, storage_root: Path, remote: str | None = None
    ) -> "StoragePaths":
        return cls(get_storage_path(repository_path, storage_root, remote))

    @property
    def vectors(self) -> Path:
        return self.root / VECTORS_DIRNAME

    @property
    def state(self) -> Path:
        return self.root / STATE_FILENAME

    @property
    def metrics(self) -> Path:
        return self.root / METRICS_FILENAME

    @property
    def metadata(self) -> Path:
        return self.root / METADATA_FILENAME

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
