"""Per-file change frequency from one bounded ``git log`` traversal."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ..errors import VCSUnavailable
from .git import DEFAULT_GIT_TIMEOUT, run_git

logger = logging.getLogger(__name__)

DEFAULT_MAX_COMMITS = 1000

_RECORD_SEP = "\x1e"
_FIELD_SEP = "\x1f"
_LOG_FORMAT = f"--format={_RECORD_SEP}%H{_FIELD_SEP}%ae{_FIELD_SEP}%at"


@dataclass
class FileAuthorContribution:
    author: str
    commit_count: int
    last_commit: datetime


@dataclass
class FileChangeFrequency:
    file_path: str
    commit_count: int
    author_count: int
    last_modified: datetime | None
    contributions: list[FileAuthorContribution] = field(default_factory=list)


@dataclass
class ChangeFrequencySummary:
    total_commits: int
    avg_commits_per_file: float
    last_modified: datetime | None
    files: int


def parse_git_log(output: str) -> dict[str, list[FileAuthorContribution]]:
    """Turn ``git log --name-only`` output into contributions per file.

    Each file's list is sorted by commit count, highest first.
    """
    counts: dict[str, dict[str, list]] = defaultdict(dict)
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        header, _, body = record.partition("\n")
        parts = header.split(_FIELD_SEP)
        if len(parts) != 3:
            continue
        _sha, author, epoch = parts
        try:
            when = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
        except ValueError:
            continue
        author = author.strip().lower() or "unknown"
        for line in body.splitlines():
            path = line.strip()
            if not path:
                continue
            entry = counts[path].get(author)
            if entry is None:
                counts[path][author] = [1, when]
            else:
                entry[0] += 1
                if when > entry[1]:
                    entry[1] = when

    result: dict[str, list[FileAuthorContribution]] = {}
    for path, by_author in counts.items():
        contributions = [
            FileAuthorContribution(author=a, commit_count=c, last_commit=t)
            for a, (c, t) in by_author.items()
        ]
        contributions.sort(key=lambda x: (-x.commit_count, x.author))
        result[path] = contributions
    return result


def collect_contributions(
    repository_root: Path,
    *,
    max_commits: int = DEFAULT_MAX_COMMITS,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> dict[str, list[FileAuthorContribution]]:
    """Read up to ``max_commits`` non-merge commits in a single git call.

    Raises:
        VCSUnavailable: git is missing, timed out, or this is not a repository.
    """
    output = run_git(
        [
            "log",
            f"--max-count={max_commits}",
            "--no-merges",
            "--relative",
            "--name-only",
            _LOG_FORMAT,
        ],
        repository_root,
        timeout=timeout,
    )
    return parse_git_log(output)


def compute_change_frequency(
    contributions: dict[str, list[FileAuthorContribution]],
) -> dict[str, FileChangeFrequency]:
    frequencies = {}
    for path, entries in contributions.items():
        frequencies[path] = FileChangeFrequency(
            file_path=path,
            commit_count=sum(e.commit_count for e in entries),
            author_count=len(entries),
            last_modified=max((e.last_commit for e in entries), default=None),
            contributions=list(entries),
        )
    return frequencies


def aggregate_change_frequency(
    frequencies: dict[str, FileChangeFrequency], path_prefix: str | None = None
) -> ChangeFrequencySummary:
    """Totals across files, optionally restricted to ``path_prefix``."""
    selected = [
        f for path, f in frequencies.items() if not path_prefix or path.startswith(path_prefix)
    ]
    total = sum(f.commit_count for f in selected)
    latest = max((f.last_modified for f in selected if f.last_modified), default=None)
    return ChangeFrequencySummary(
        total_commits=total,
        avg_commits_per_file=(total / len(selected)) if selected else 0.0,
        last_modified=latest,
        files=len(selected),
    )


class ChangeFrequencyAnalyzer:
    """Degrades to an empty result when history is unavailable."""

    def __init__(
        self,
        repository_root: Path,
        *,
        max_commits: int = DEFAULT_MAX_COMMITS,
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ):
        self.repository_root = repository_root
        self.max_commits = max_commits
        self.timeout = timeout

    def analyze(self) -> dict[str, FileChangeFrequency]:
        try:
            contributions = collect_contributions(
                self.repository_root, max_commits=self.max_commits, timeout=self.timeout
            )
        except VCSUnavailable as exc:
            logger.warning(
                "Change frequency unavailable for %s: %s", self.repository_root, exc
            )
            return {}
        return compute_change_frequency(contributions)
