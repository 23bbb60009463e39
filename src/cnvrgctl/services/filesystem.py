"""Filesystem helpers for cnvrgctl."""

import logging
import os
import sys
from pathlib import Path
from typing import Iterator, Tuple

from rich.console import Console

from cnvrgctl.constants import DIR_MODE
from cnvrgctl.errors import TransferError


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except Exception as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def ensure_directory(self, path: str):
        if os.path.isdir(path):
            return

        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            raise TransferError(f"Failed to create directory {path}: {exc}") from exc

        self.set_permissions(path, DIR_MODE)
        self.logger.info("Created directory %s", path)

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def safe_join(self, root: str, relative_key: str) -> str:
        """Joins an object key under ``root``, refusing keys that escape it."""
        base = Path(root).resolve()
        target = (base / relative_key.lstrip("/")).resolve()
        if not self.is_within_dir(base, target) or target == base:
            raise TransferError(
                f"Unsafe object key `{relative_key}`: it resolves outside of {root}."
            )
        return str(target)

    def iter_regular_files(self, root: str) -> Iterator[Tuple[str, str]]:
        """Yields ``(path, posix_relative_key)`` for every regular file below ``root``.

        Symbolic links are skipped, both for files and directories.
        """
        if not os.path.isdir(root):
            raise TransferError(f"Local directory not found: {root}")

        def _raise(exc: OSError):
            raise TransferError(f"Unable to walk {root}: {exc}") from exc

        for current_root, dirs, files in os.walk(root, onerror=_raise):
            dirs.sort()
            for file_name in sorted(files):
                path = os.path.join(current_root, file_name)
                if os.path.islink(path) or not os.path.isfile(path):
                    self.logger.debug("Skipping non-regular file %s", path)
                    continue
                key = Path(os.path.relpath(path, root)).as_posix()
                yield path, key
