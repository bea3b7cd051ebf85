# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from repolens.storage.metadata import (load_repository_metadata,
                                       save_repository_metadata,
                                       update_repository_metadata)


def test_update_writes_counts_and_keeps_extra(tmp_path):
    path = tmp_path / "store" / "metadata.json"
    repo = tmp_path / "repo"
    repo.mkdir()

    first = update_repository_metadata(
        path, repo, remote="git@github.com:Owner/Repo.git", files=3, components=7, size=120
    )
    assert first.repository.remote == "owner/repo"
    assert first.repository.branch is None

    first.extra["note"] = "kept"
    save_repository_metadata(path, first)
    second = update_repository_metadata(path, repo, remote=None, files=4, components=9, size=150)

    loaded = load_repository_metadata(path)
    assert loaded == second
    assert loaded.indexed.files == 4
    assert loaded.extra == {"note": "kept"}


def test_load_missing_or_corrupt(tmp_path):
    path = tmp_path / "metadata.json"
    assert load_repository_metadata(path) is None
    path.write_text("[]")
    assert load_repository_metadata(path) is None


def test_git_position_recorded(git_repo, tmp_path):
    meta = update_repository_metadata(
        tmp_path / "metadata.json", git_repo, remote=None, files=1, components=1, size=1
    )
    assert meta.repository.branch
    assert len(meta.repository.last_commit) == 40
