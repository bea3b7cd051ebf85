"""Code metadata collection and snapshot analytics."""

from .analytics import (FileMetrics, FileTrendPoint, Hotspot, SnapshotSummary,
                        get_concentrated_ownership, get_file_trend,
                        get_hotspots, get_largest_files, get_most_active,
                        get_snapshot_summary)
from .collector import build_code_metadata

__all__ = [
    "FileMetrics",
    "FileTrendPoint",
    "Hotspot",
    "SnapshotSummary",
    "build_code_metadata",
    "get_concentrated_ownership",
    "get_file_trend",
    "get_hotspots",
    "get_largest_files",
    "get_most_active",
    "get_snapshot_summary",
]
