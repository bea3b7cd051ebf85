"""Pure analysis helpers: scanning, document extraction, languages and VCS history."""

from .change_frequency import (ChangeFrequencyAnalyzer, ChangeFrequencySummary,
                               FileAuthorContribution, FileChangeFrequency,
                               aggregate_change_frequency,
                               compute_change_frequency)
from .chunking import chunk_text, format_embedding_text, truncate_text
from .extractors import Document, DocumentMetadata, extract_documents
from .languages import language_for_path
from .scanner import ScannedFile, ScanResult, Scanner, SourceFile

__all__ = [
    "ChangeFrequencyAnalyzer",
    "ChangeFrequencySummary",
    "Document",
    "DocumentMetadata",
    "FileAuthorContribution",
    "FileChangeFrequency",
    "ScanResult",
    "ScannedFile",
    "Scanner",
    "SourceFile",
    "aggregate_change_frequency",
    "chunk_text",
    "compute_change_frequency",
    "extract_documents",
    "format_embedding_text",
    "language_for_path",
    "truncate_text",
]
