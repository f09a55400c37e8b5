"""Tests for the debug tree walk and label resolution."""

import os
from pathlib import Path

import pytest

from kvm_debug_stat_exporter import (
    GLOBAL_DOMAIN,
    DebugDirError,
    DepthExceededError,
    InvalidPathError,
    ResolvedLabels,
    UnknownAnchorError,
    WalkError,
    check_kvm_debug_dir,
    resolve_labels,
    walk_tree,
)


def collect_paths(root: Path, max_depth: int) -> list:
    visited = []
    walk_tree(str(root), max_depth, visited.append)
    return [os.path.relpath(p, root) for p in visited]


class TestWalkTree:
    """Tests for walk_tree()."""

    def test_visits_files_up_to_depth_bound(self, debug_root: Path, make_counter) -> None:
        make_counter("exits", "1\n")
        make_counter("1234/exits", "2\n")
        make_counter("1234/cpu0/halt-count", "3\n")
        make_counter("1234/cpu0/deep/ignored", "4\n")

        assert collect_paths(debug_root, 2) == [
            "1234/cpu0/halt-count",
            "1234/exits",
            "exits",
        ]

    @pytest.mark.parametrize("max_depth", [0, 1, 2, 3])
    def test_never_visits_files_below_bound(self, debug_root: Path, make_counter, max_depth: int) -> None:
        make_counter("a/b/c/d/file", "1")
        make_counter("a/b/c/file", "1")
        make_counter("a/b/file", "1")
        make_counter("a/file", "1")
        make_counter("file", "1")

        for relative in collect_paths(debug_root, max_depth):
            parent_depth = relative.count(os.sep)
            assert parent_depth <= max_depth
        assert len(collect_paths(debug_root, max_depth)) == max_depth + 1

    def test_pruned_directories_are_not_listed(self, debug_root: Path, make_counter, monkeypatch) -> None:
        make_counter("1234/cpu0/deep/file", "1")
        listed = []
        real_scandir = os.scandir

        def tracking_scandir(path):
            listed.append(os.path.relpath(path, debug_root))
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", tracking_scandir)
        walk_tree(str(debug_root), 2, lambda path: None)

        assert "1234/cpu0/deep" not in listed
        assert "1234/cpu0" in listed

    def test_symlinks_are_ignored(self, debug_root: Path, make_counter, tmp_path: Path) -> None:
        target = tmp_path / "outside"
        target.write_text("5")
        (debug_root / "link").symlink_to(target)
        make_counter("real", "1")

        assert collect_paths(debug_root, 2) == ["real"]

    def test_missing_root_raises_walk_error(self, tmp_path: Path) -> None:
        with pytest.raises(WalkError) as excinfo:
            walk_tree(str(tmp_path / "missing"), 2, lambda path: None)
        assert isinstance(excinfo.value.cause, FileNotFoundError)

    def test_listing_failure_aborts_walk(self, debug_root: Path, make_counter, monkeypatch) -> None:
        make_counter("1111/a", "1")
        make_counter("2222/b", "1")
        real_scandir = os.scandir

        def failing_scandir(path):
            if os.path.basename(path) == "1111":
                raise PermissionError(13, "Permission denied", path)
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", failing_scandir)
        visited = []
        with pytest.raises(WalkError, match="1111"):
            walk_tree(str(debug_root), 2, visited.append)
        assert visited == []

    def test_negative_depth_rejected(self, debug_root: Path) -> None:
        with pytest.raises(ValueError):
            walk_tree(str(debug_root), -1, lambda path: None)


class TestResolveLabels:
    """Tests for resolve_labels()."""

    ROOT = "/sys/kernel/debug/kvm"

    def test_root_is_global_regardless_of_index(self, make_index) -> None:
        for index in (make_index({}), make_index({"1234": "vm1"})):
            assert resolve_labels(index, self.ROOT, self.ROOT) == ResolvedLabels(GLOBAL_DOMAIN)

    def test_trailing_separator_on_root_is_global(self, make_index) -> None:
        labels = resolve_labels(make_index({}), self.ROOT, self.ROOT + "/")
        assert labels.domain == GLOBAL_DOMAIN

    def test_depth_one_resolves_domain_only(self, make_index) -> None:
        labels = resolve_labels(make_index({"1234": "vmX"}), f"{self.ROOT}/1234", self.ROOT)
        assert labels == ResolvedLabels(domain="vmX")
        assert labels.as_dict() == {"domain": "vmX"}

    def test_depth_two_resolves_domain_and_vcpu(self, make_index) -> None:
        labels = resolve_labels(make_index({"1234": "vmX"}), f"{self.ROOT}/1234/cpu3", self.ROOT)
        assert labels == ResolvedLabels(domain="vmX", vcpu="cpu3")
        assert labels.as_dict() == {"domain": "vmX", "vcpu": "cpu3"}

    def test_deeper_paths_exceed_depth(self, make_index) -> None:
        with pytest.raises(DepthExceededError):
            resolve_labels(make_index({"1234": "vmX"}), f"{self.ROOT}/1234/cpu3/x", self.ROOT)

    def test_unknown_anchor(self, make_index) -> None:
        with pytest.raises(UnknownAnchorError) as excinfo:
            resolve_labels(make_index({"1234": "vmX"}), f"{self.ROOT}/9999", self.ROOT)
        assert excinfo.value.anchor == "9999"

    @pytest.mark.parametrize(
        "parent",
        ["/sys/kernel/debug", "/tmp/1234", "/sys/kernel/debug/kvm2/1234"],
    )
    def test_paths_outside_root_are_invalid(self, make_index, parent: str) -> None:
        with pytest.raises(InvalidPathError):
            resolve_labels(make_index({"1234": "vmX"}), parent, self.ROOT)

    def test_filesystem_root_as_scrape_root(self, make_index) -> None:
        labels = resolve_labels(make_index({"1234": "vmX"}), "/1234/cpu0", "/")
        assert labels == ResolvedLabels(domain="vmX", vcpu="cpu0")


class TestCheckKvmDebugDir:
    """Tests for check_kvm_debug_dir()."""

    def test_existing_directory_passes(self, debug_root: Path) -> None:
        check_kvm_debug_dir(str(debug_root))

    def test_missing_directory_is_not_mounted(self, tmp_path: Path) -> None:
        with pytest.raises(DebugDirError, match="not mounted"):
            check_kvm_debug_dir(str(tmp_path / "kvm"))

    def test_unreadable_directory(self, debug_root: Path, monkeypatch) -> None:
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        with pytest.raises(DebugDirError, match="insufficient privilege"):
            check_kvm_debug_dir(str(debug_root))
