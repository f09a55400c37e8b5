"""Tests for VM map loading, the label index and its published cell."""

from pathlib import Path

import pytest

from kvm_debug_stat_exporter import (
    ConfigParseError,
    ConfigReadError,
    LabelIndex,
    LabelIndexCell,
    VmEntry,
)


class TestVmMapLoader:
    """Tests for VmMapLoader.load() and parse()."""

    def test_load_inverts_vm_map(self, loader, map_path: Path) -> None:
        """Loading maps the kvm debug dir anchor to the VM name."""
        index = loader.load(map_path)
        assert index.lookup("1234") == "vm1"
        assert len(index) == 1
        assert index.source == map_path

    def test_load_keeps_pid_on_entry(self, loader, map_path: Path) -> None:
        index = loader.load(map_path)
        assert index.entries == (VmEntry(name="vm1", anchor_id="1234", pid="1234"),)

    def test_generations_increase_per_load(self, loader, map_path: Path) -> None:
        first = loader.load(map_path)
        second = loader.load(map_path)
        assert (first.generation, second.generation) == (1, 2)

    def test_missing_file_is_read_error(self, loader, tmp_path: Path) -> None:
        with pytest.raises(ConfigReadError):
            loader.load(tmp_path / "missing.yaml")

    def test_directory_is_read_error(self, loader, tmp_path: Path) -> None:
        with pytest.raises(ConfigReadError):
            loader.load(tmp_path)

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "vm_infos: [unclosed",
            "- just\n- a list\n",
            "other_section: {}\n",
            "vm_infos: [vm1, vm2]\n",
            "vm_infos:\n  vm1: 1234\n",
            "vm_infos:\n  vm1:\n    description: no anchor\n",
            "vm_infos:\n  vm1:\n    kvm_debug_dir: a/b\n",
        ],
        ids=[
            "empty",
            "bad-yaml",
            "not-mapping",
            "no-section",
            "section-not-mapping",
            "entry-not-mapping",
            "no-anchor",
            "anchor-with-separator",
        ],
    )
    def test_invalid_content_is_parse_error(self, loader, tmp_path: Path, content: str) -> None:
        path = tmp_path / "vm.yaml"
        path.write_text(content)
        with pytest.raises(ConfigParseError):
            loader.load(path)

    def test_pid_is_anchor_when_debug_dir_absent(self, loader) -> None:
        entries = loader.parse("vm_infos:\n  vm1:\n    pid: 4321\n")
        assert entries == [VmEntry(name="vm1", anchor_id="4321", pid="4321")]

    def test_debug_dir_wins_over_pid(self, loader) -> None:
        entries = loader.parse(
            "vm_infos:\n  vm1:\n    pid: 4321\n    kvm_debug_dir: 4321-17\n"
        )
        assert entries[0].anchor_id == "4321-17"

    def test_empty_section_loads_with_warning(self, loader, tmp_path: Path, caplog) -> None:
        path = tmp_path / "vm.yaml"
        path.write_text("vm_infos: {}\n")
        index = loader.load(path)
        assert len(index) == 0
        assert "defines no VMs" in caplog.text

    def test_shared_anchor_is_rejected(self, loader, tmp_path: Path) -> None:
        """Two VMs on one debug dir is ambiguous and fails the load."""
        path = tmp_path / "vm.yaml"
        path.write_text(
            "vm_infos:\n"
            "  vm1:\n    kvm_debug_dir: '1234'\n"
            "  vm2:\n    kvm_debug_dir: '1234'\n"
        )
        with pytest.raises(ConfigParseError, match="share kvm debug dir '1234'"):
            loader.load(path)


class TestLabelIndex:
    """Tests for LabelIndex."""

    def test_lookup_unknown_anchor_returns_none(self, make_index) -> None:
        index = make_index({"1234": "vm1"})
        assert index.lookup("9999") is None
        assert "1234" in index
        assert "9999" not in index

    def test_mapping_is_read_only(self, make_index) -> None:
        index = make_index({"1234": "vm1"})
        with pytest.raises(TypeError):
            index.mapping["5678"] = "vm2"

    def test_fields_are_frozen(self, make_index) -> None:
        index = make_index({"1234": "vm1"})
        with pytest.raises(AttributeError):
            index.generation = 5

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ConfigParseError):
            LabelIndex(entries=(
                VmEntry(name="vm1", anchor_id="1"),
                VmEntry(name="vm1", anchor_id="2"),
            ))


class TestLabelIndexCell:
    """Tests for the published index cell."""

    def test_publish_replaces_and_returns_previous(self, make_index) -> None:
        old = make_index({"1": "a"}, generation=1)
        new = make_index({"1": "b"}, generation=2)
        cell = LabelIndexCell(old)

        assert cell.publish(new) is old
        assert cell.load() is new

    def test_captured_snapshot_is_unaffected_by_publish(self, make_index) -> None:
        cell = LabelIndexCell(make_index({"1": "a"}, generation=1))
        snapshot = cell.load()

        cell.publish(make_index({"1": "b"}, generation=2))

        assert snapshot.lookup("1") == "a"
        assert cell.load().lookup("1") == "b"
