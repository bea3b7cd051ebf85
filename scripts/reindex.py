#!/usr/bin/env python3
#
# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Index, update, compact or prune the index of a single repository.

    python scripts/reindex.py index /path/to/repo [--force]
    python scripts/reindex.py update /path/to/repo
    python scripts/reindex.py optimize /path/to/repo
    python scripts/reindex.py prune /path/to/repo
    python scripts/reindex.py hotspots /path/to/repo
"""

import argparse
import logging
import sys
from pathlib import Path

from repolens.config import load_config
from repolens.errors import RepoLensError
from repolens.indexer import IndexOptions, RepositoryIndexer
from repolens.metrics.analytics import get_hotspots

logger = logging.getLogger("repolens.reindex")


def configure_logging(level: str, log_file: str | None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=handlers,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("command", choices=["index", "update", "optimize", "prune", "hotspots"])
    parser.add_argument("repository", type=Path)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--force", action="store_true", help="re-embed every file")
    parser.add_argument("--limit", type=int, default=10)
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.log_level, config.log_file)

    read_only = args.command in {"optimize", "prune", "hotspots"}
    indexer = RepositoryIndexer(args.repository, config=config)
    try:
        indexer.initialize(skip_embedder=read_only, require_state=args.command != "index")
        if args.command == "index":
            stats = indexer.index(IndexOptions(force=args.force))
            print(
                f"Indexed {stats.files_indexed} files ({stats.documents_indexed} documents), "
                f"{stats.files_unchanged} unchanged, {stats.files_failed} failed"
            )
        elif args.command == "update":
            stats = indexer.update()
            print(
                f"Updated {stats.files_indexed} files, removed {stats.files_deleted}, "
                f"{stats.files_unchanged} unchanged"
            )
        elif args.command == "optimize":
            indexer.optimize()
            print("Vector store optimized")
        elif args.command == "prune":
            if indexer.metrics_store is None:
                print("Metrics are disabled")
                return 0
            removed = indexer.metrics_store.prune_old_snapshots(config.metrics_retention_days)
            print(f"Pruned {removed} snapshots")
        else:
            if indexer.metrics_store is None:
                print("Metrics are disabled")
                return 0
            for hotspot in get_hotspots(
                indexer.metrics_store,
                repository_path=str(indexer.repository_path),
                limit=args.limit,
            ):
                print(f"{hotspot.risk_score:>12.1f}  {hotspot.file_path}  ({hotspot.reason})")
    except RepoLensError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        indexer.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
