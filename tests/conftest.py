"""Shared test fixtures for all test modules."""

import logging
from pathlib import Path
from typing import Callable, Dict

import pytest

from kvm_debug_stat_exporter import (
    LabelIndex,
    LabelIndexCell,
    ProgramLogger,
    VmEntry,
    VmMapLoader,
)


@pytest.fixture
def logger() -> logging.Logger:
    """VerboseLogger wired into the root logger so caplog sees its records."""
    test_logger = ProgramLogger.VerboseLogger("kvm_debug_stat_exporter_test")
    test_logger.parent = logging.getLogger()
    test_logger.setLevel(ProgramLogger.VERBOSE_LEVEL)
    return test_logger


@pytest.fixture
def debug_root(tmp_path: Path) -> Path:
    """Empty directory standing in for /sys/kernel/debug/kvm."""
    root = tmp_path / "kvm"
    root.mkdir()
    return root


@pytest.fixture
def make_counter(debug_root: Path) -> Callable[[str, str], Path]:
    """Factory writing a counter file relative to the debug root."""

    def _make(relative: str, content: str) -> Path:
        path = debug_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    return _make


@pytest.fixture
def map_path(tmp_path: Path) -> Path:
    """Path of a VM map with vm1 anchored at 1234."""
    path = tmp_path / "etc" / "vm.yaml"
    path.parent.mkdir()
    path.write_text(
        "vm_infos:\n"
        "  vm1:\n"
        "    pid: 1234\n"
        "    kvm_debug_dir: '1234'\n"
    )
    return path


@pytest.fixture
def loader(logger: logging.Logger) -> VmMapLoader:
    return VmMapLoader(logger)


@pytest.fixture
def make_index() -> Callable[..., LabelIndex]:
    """Factory building a LabelIndex from {anchor: name}."""

    def _make(mapping: Dict[str, str], generation: int = 1) -> LabelIndex:
        entries = tuple(
            VmEntry(name=name, anchor_id=anchor) for anchor, name in mapping.items()
        )
        return LabelIndex(entries=entries, generation=generation)

    return _make


@pytest.fixture
def index_cell(make_index) -> LabelIndexCell:
    return LabelIndexCell(make_index({"1234": "vm1"}))
