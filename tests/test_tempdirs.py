"""Tests for temp directory pruning."""

from __future__ import annotations

import os
import time
from pathlib import Path

from ciworkspace.core.tempdirs import SECONDS_PER_DAY, prune_stale_entries


def age(path: Path, days: float) -> None:
    stamp = time.time() - days * SECONDS_PER_DAY
    os.utime(path, (stamp, stamp), follow_symlinks=False)


class TestPruneStaleEntries:
    """Tests for prune_stale_entries."""

    def test_removes_only_old_entries(self, tmp_path: Path):
        tmp_dir = tmp_path / "tmp"
        tmp_dir.mkdir()
        old_file = tmp_dir / "old.log"
        old_file.write_text("x")
        old_dir = tmp_dir / "old-build"
        old_dir.mkdir()
        (old_dir / "nested.txt").write_text("y")
        fresh = tmp_dir / "fresh.log"
        fresh.write_text("z")
        age(old_file, 8)
        age(old_dir, 30)

        removed = prune_stale_entries(tmp_dir, retention_days=7)

        assert sorted(removed) == sorted([old_file, old_dir])
        assert [p.name for p in tmp_dir.iterdir()] == ["fresh.log"]

    def test_symlink_unlinked_not_followed(self, tmp_path: Path):
        tmp_dir = tmp_path / "tmp"
        tmp_dir.mkdir()
        keep = tmp_path / "keep"
        keep.mkdir()
        (keep / "data.txt").write_text("precious")
        link = tmp_dir / "link"
        link.symlink_to(keep)
        age(link, 10)

        assert prune_stale_entries(tmp_dir) == [link]
        assert (keep / "data.txt").read_text() == "precious"

    def test_missing_directory(self, tmp_path: Path):
        assert prune_stale_entries(tmp_path / "absent") == []

    def test_zero_retention_removes_everything_older_than_now(self, tmp_path: Path):
        tmp_dir = tmp_path / "tmp"
        tmp_dir.mkdir()
        entry = tmp_dir / "a"
        entry.write_text("x")
        age(entry, 0.01)

        assert prune_stale_entries(tmp_dir, retention_days=0) == [entry]

    def test_removal_failure_skipped(self, tmp_path: Path, mocker):
        tmp_dir = tmp_path / "tmp"
        tmp_dir.mkdir()
        entry = tmp_dir / "stuck"
        entry.mkdir()
        age(entry, 9)
        mocker.patch(
            "ciworkspace.core.tempdirs.shutil.rmtree", side_effect=OSError("busy")
        )

        assert prune_stale_entries(tmp_dir) == []
        assert entry.exists()
