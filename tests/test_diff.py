"""Tests for datavault.repository.diff."""

from __future__ import annotations

from datavault.repository.diff import compare_metadata, compute_delta, compute_file_diff
from datavault.repository.schemas import FileManifestEntry


def _entry(name: str, size: int, checksum: str) -> FileManifestEntry:
    return FileManifestEntry(
        name=name, size_bytes=size, storage_key=f"public/o/d/text/x/{name}", checksum=checksum
    )


OLD = [_entry("a.csv", 100, "aa"), _entry("keep.csv", 5, "kk"), _entry("gone.csv", 30, "gg")]
NEW = [_entry("a.csv", 140, "a2"), _entry("keep.csv", 5, "kk"), _entry("b.csv", 50, "bb")]


class TestComputeFileDiff:
    def test_classifies_files(self) -> None:
        diff = compute_file_diff(OLD, NEW, from_version="1.0.0", to_version="1.1.0")
        assert [f.name for f in diff.added] == ["b.csv"]
        assert [m.name for m in diff.modified] == ["a.csv"]
        assert [f.name for f in diff.removed] == ["gone.csv"]
        assert diff.unchanged == ["keep.csv"]

    def test_modified_details(self) -> None:
        diff = compute_file_diff(OLD, NEW, from_version="1.0.0", to_version="1.1.0")
        modified = diff.modified[0]
        assert modified.old_size == 100
        assert modified.new_size == 140
        assert modified.size_delta == 40
        assert (modified.old_checksum, modified.new_checksum) == ("aa", "a2")

    def test_statistics(self) -> None:
        diff = compute_file_diff(OLD, NEW, from_version="1.0.0", to_version="1.1.0")
        stats = diff.statistics
        assert (stats.added, stats.modified, stats.removed, stats.unchanged) == (1, 1, 1, 1)
        assert stats.size_impact == 50 - 30 + 40

    def test_size_change_with_same_checksum_is_unchanged(self) -> None:
        diff = compute_file_diff(
            [_entry("a.csv", 1, "same")],
            [_entry("a.csv", 2, "same")],
            from_version="1",
            to_version="2",
        )
        assert diff.unchanged == ["a.csv"]
        assert diff.modified == []

    def test_mirror(self) -> None:
        forward = compute_file_diff(OLD, NEW, from_version="1.0.0", to_version="1.1.0")
        backward = compute_file_diff(NEW, OLD, from_version="1.1.0", to_version="1.0.0")
        assert [f.name for f in forward.added] == [f.name for f in backward.removed]
        assert [f.name for f in forward.removed] == [f.name for f in backward.added]
        assert [m.name for m in forward.modified] == [m.name for m in backward.modified]
        assert backward.statistics.size_impact == -forward.statistics.size_impact

    def test_identical_is_empty(self) -> None:
        diff = compute_file_diff(OLD, OLD, from_version="1.0.0", to_version="1.0.0")
        assert diff.added == diff.modified == diff.removed == []
        assert diff.statistics.size_impact == 0

    def test_metadata_changes(self) -> None:
        diff = compute_file_diff(
            OLD,
            OLD,
            from_version="1",
            to_version="2",
            old_metadata={"rows": 10, "source": "x"},
            new_metadata={"rows": 12, "source": "x", "license": "mit"},
        )
        assert set(diff.metadata_changes) == {"rows", "license"}
        assert diff.metadata_changes["rows"].old == 10
        assert diff.metadata_changes["license"].old is None


class TestCompareMetadata:
    def test_removed_key(self) -> None:
        changes = compare_metadata({"a": 1}, {})
        assert changes["a"].old == 1
        assert changes["a"].new is None


class TestComputeDelta:
    def test_names(self) -> None:
        delta = compute_delta(OLD, NEW)
        assert delta.added == ["b.csv"]
        assert delta.modified == ["a.csv"]
        assert delta.removed == ["gone.csv"]

    def test_root_has_everything_added(self) -> None:
        assert compute_delta([], OLD).added == ["a.csv", "gone.csv", "keep.csv"]
