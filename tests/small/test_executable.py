from pathlib import Path

import pytest

from stackharness.errors import BinaryNotFoundError
from stackharness.utils.executable import find_binary, find_optional_binary

MISSING = "stackharness-no-such-binary"


def _make_executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


def test_stack_path_wins_over_search_dirs(tmp_path: Path):
    """
    A binary under the bundled stack path is preferred to a system copy
    """
    bundled = _make_executable(tmp_path / "stack" / "bin" / "drive" / MISSING)
    _make_executable(tmp_path / "system" / MISSING)

    found = find_binary(MISSING, tmp_path / "stack", "bin/drive", [tmp_path / "system"])
    assert found == bundled


def test_search_dirs_used_in_order(tmp_path: Path):
    second = _make_executable(tmp_path / "second" / MISSING)

    found = find_binary(MISSING, None, "", [tmp_path / "first", tmp_path / "second"])
    assert found == second


def test_non_executable_file_ignored(tmp_path: Path):
    (tmp_path / MISSING).write_text("not runnable")

    with pytest.raises(BinaryNotFoundError, match="STACKHARNESS_STACK_PATH"):
        find_binary(MISSING, search_dirs=[tmp_path])


def test_find_optional_binary_returns_none(tmp_path: Path):
    assert find_optional_binary(MISSING, search_dirs=[tmp_path]) is None
