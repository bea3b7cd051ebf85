"""Repository scanner: file discovery, filtering and document extraction."""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

import pathspec

from ..errors import PartialScanFailure, RunError
from .chunking import count_lines, truncate_text
from .extractors import Document, extract_documents
from .languages import language_for_path

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 8192


@dataclass(frozen=True)
class SourceFile:
    """A discovered file with its stat fingerprint."""

    path: str
    absolute_path: Path
    size: int
    mtime_ns: int
    language: str


@dataclass
class ScannedFile:
    source: SourceFile
    hash: str
    language: str
    lines: int
    documents: list[Document]
    imports: list[str]

    @property
    def path(self) -> str:
        return self.source.path


@dataclass
class ScanResult:
    files: list[ScannedFile] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)
    skipped: int = 0

    @property
    def documents(self) -> list[Document]:
        return [doc for f in self.files for doc in f.documents]


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _is_binary(data: bytes) -> bool:
    return b"\x00" in data[:BINARY_SNIFF_BYTES]


class Scanner:
    """Walks a repository and turns supported files into documents.

    Stateless between calls; each :meth:`scan` re-reads the tree.
    """

    def __init__(
        self,
        repository_root: Path,
        *,
        include_patterns: Sequence[str] = (),
        exclude_patterns: Sequence[str] = (),
        languages: Iterable[str] = (),
        max_file_bytes: int = 1_000_000,
        max_document_chars: int = 4000,
    ):
        self.repository_root = Path(repository_root)
        self.include_spec = (
            pathspec.PathSpec.from_lines("gitwildmatch", include_patterns)
            if include_patterns
            else None
        )
        self.exclude_spec = pathspec.PathSpec.from_lines("gitwildmatch", exclude_patterns)
        self.languages = {lang.lower() for lang in languages}
        self.max_file_bytes = max_file_bytes
        self.max_document_chars = max_document_chars

    # -- filtering -----------------------------------------------------

    def _dir_excluded(self, rel_dir: str) -> bool:
        return self.exclude_spec.match_file(rel_dir + "/")

    def language_allowed(self, language: str | None) -> bool:
        if language is None:
            return False
        return not self.languages or language in self.languages

    def accepts(self, rel_path: str) -> bool:
        """Whether ``rel_path`` passes include, exclude and language filters."""
        parts = rel_path.split("/")
        for i in range(1, len(parts)):
            if self._dir_excluded("/".join(parts[:i])):
                return False
        if self.exclude_spec.match_file(rel_path):
            return False
        if self.include_spec is not None and not self.include_spec.match_file(rel_path):
            return False
        return self.language_allowed(language_for_path(rel_path))

    # -- discovery -----------------------------------------------------

    def discover(self) -> tuple[list[SourceFile], list[RunError]]:
        """List candidate files sorted by relative path."""
        root = self.repository_root
        found: list[SourceFile] = []
        errors: list[RunError] = []
        skipped = 0

        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not self._dir_excluded(f"{rel_dir}/{d}" if rel_dir else d)
            )
            for name in filenames:
                rel_path = f"{rel_dir}/{name}" if rel_dir else name
                if self.exclude_spec.match_file(rel_path):
                    skipped += 1
                    continue
                if self.include_spec is not None and not self.include_spec.match_file(rel_path):
                    skipped += 1
                    continue
                language = language_for_path(rel_path)
                if not self.language_allowed(language):
                    skipped += 1
                    continue
                abs_path = Path(dirpath) / name
                try:
                    st = abs_path.stat()
                except OSError as exc:
                    errors.append(RunError(kind="scan", message=str(exc), file=rel_path))
                    continue
                if not abs_path.is_file():
                    continue
                if st.st_size > self.max_file_bytes:
                    logger.debug(
                        "Skipping %s: %s bytes exceeds limit %s",
                        rel_path,
                        st.st_size,
                        self.max_file_bytes,
                    )
                    skipped += 1
                    continue
                found.append(
                    SourceFile(
                        path=rel_path,
                        absolute_path=abs_path,
                        size=st.st_size,
                        mtime_ns=st.st_mtime_ns,
                        language=language or "unknown",
                    )
                )

        found.sort(key=lambda f: f.path)
        logger.info(
            "Scan discovery for %s: included=%s skipped=%s errors=%s",
            root,
            len(found),
            skipped,
            len(errors),
        )
        return found, errors

    # -- extraction ----------------------------------------------------

    def scan_file(self, source: SourceFile) -> ScannedFile:
        """Read and decompose one file.

        Raises:
            PartialScanFailure: the file cannot be read, is binary, or does not parse.
        """
        try:
            data = source.absolute_path.read_bytes()
        except OSError as exc:
            raise PartialScanFailure(source.path, f"unreadable: {exc}") from exc
        if _is_binary(data):
            raise PartialScanFailure(source.path, "binary content")

        text = data.decode("utf-8", errors="replace")
        language = language_for_path(source.path, text[:4096]) or source.language
        try:
            extracted = extract_documents(source.path, text, language)
        except (SyntaxError, ValueError, RecursionError) as exc:
            raise PartialScanFailure(source.path, f"parse error: {exc}") from exc

        documents = [
            dataclasses.replace(doc, text=truncate_text(doc.text, self.max_document_chars))
            for doc in extracted.documents
        ]
        return ScannedFile(
            source=source,
            hash=hash_bytes(data),
            language=language,
            lines=count_lines(text),
            documents=documents,
            imports=extracted.imports,
        )

    def scan_files(self, sources: Iterable[SourceFile]) -> ScanResult:
        """Scan ``sources`` in order; per-file failures are recorded, not raised."""
        result = ScanResult()
        for source in sources:
            try:
                result.files.append(self.scan_file(source))
            except PartialScanFailure as exc:
                logger.warning("Skipping %s", exc)
                result.errors.append(RunError(kind="scan", message=str(exc), file=source.path))
        return result

    def scan(self) -> ScanResult:
        sources, errors = self.discover()
        result = self.scan_files(sources)
        result.errors[:0] = errors
        return result
