import os
import shutil
from collections.abc import Iterable
from pathlib import Path

from stackharness.errors import BinaryNotFoundError
from stackharness.logging_config import get_logger

log = get_logger(__name__)

STACK_HINT = "Install it or set STACKHARNESS_STACK_PATH to a bundled stack"


def is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_binary(
    name: str,
    stack_path: Path | None = None,
    stack_subdir: str = "",
    search_dirs: Iterable[str | Path] = (),
) -> Path:
    """Locate a server or client binary.

    Search order: the bundled stack under ``stack_path``, the given system
    directories, then ``PATH``.
    """
    if stack_path is not None:
        candidate = stack_path / stack_subdir / name
        if is_executable(candidate):
            log.debug("Using binary from stack path", binary=name, path=str(candidate))
            return candidate

    for directory in search_dirs:
        candidate = Path(directory) / name
        if is_executable(candidate):
            log.debug("Using system binary", binary=name, path=str(candidate))
            return candidate

    found = shutil.which(name)
    if found is not None:
        log.debug("Using binary from PATH", binary=name, path=found)
        return Path(found)

    raise BinaryNotFoundError(name, STACK_HINT)


def find_optional_binary(
    name: str,
    stack_path: Path | None = None,
    stack_subdir: str = "",
    search_dirs: Iterable[str | Path] = (),
) -> Path | None:
    try:
        return find_binary(name, stack_path, stack_subdir, search_dirs)
    except BinaryNotFoundError:
        return None
