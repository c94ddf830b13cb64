"""File operations utilities for etcdrecover."""

import logging
import os
import shutil
from typing import Dict, List

from .errors import RecoveryIOError

logger = logging.getLogger(__name__)


class FileManager:
    """Manages file operations for etcdrecover."""

    def __init__(self, verbose: bool = False):
        """Initialize file manager."""
        self.verbose = verbose

    @staticmethod
    def file_exists(path: str) -> bool:
        """Return True if path exists and is not a directory."""
        return os.path.exists(path) and not os.path.isdir(path)

    def copy_file(self, src: str, dst: str) -> str:
        """
        Copy a single file, preserving its permission bits.

        Args:
            src: Source file path
            dst: Destination file path

        Returns:
            str: Destination path

        Raises:
            RecoveryIOError: If the copy fails
        """
        try:
            shutil.copyfile(src, dst)
            shutil.copymode(src, dst)
        except OSError as e:
            raise RecoveryIOError(f"Failed to copy {src} to {dst}", details=str(e)) from e

        if self.verbose:
            logger.debug("Copied %s to %s", src, dst)

        return dst

    def copy_tree(self, src: str, dst: str) -> List[Dict[str, str]]:
        """
        Recursively copy a directory, continuing past per-entry failures.

        Args:
            src: Source directory
            dst: Destination directory

        Returns:
            List[Dict[str, str]]: One {"path", "error"} entry per failed source path

        Raises:
            RecoveryIOError: If the source cannot be read or the destination cannot be created
        """
        try:
            src_mode = os.stat(src).st_mode
            os.makedirs(dst, mode=src_mode & 0o777, exist_ok=True)
            entries = list(os.scandir(src))
        except OSError as e:
            raise RecoveryIOError(f"Failed to copy directory {src} to {dst}", details=str(e)) from e

        errors = []
        for entry in entries:
            src_path = os.path.join(src, entry.name)
            dst_path = os.path.join(dst, entry.name)

            try:
                if entry.is_dir(follow_symlinks=False):
                    errors.extend(self.copy_tree(src_path, dst_path))
                else:
                    self.copy_file(src_path, dst_path)
            except RecoveryIOError as e:
                logger.warning("Skipping %s: %s", src_path, e.details or e.message)
                errors.append({"path": src_path, "error": e.details or e.message})

        return errors

    def ensure_directory(self, path: str) -> bool:
        """
        Create directory if missing.

        Args:
            path: Directory path

        Returns:
            bool: True if the directory was created, False if it already existed

        Raises:
            RecoveryIOError: If path exists as a non-directory or cannot be created
        """
        if os.path.isdir(path):
            return False

        if os.path.exists(path):
            raise RecoveryIOError(f"{path} already exists as a file")

        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise RecoveryIOError(f"Failed to create directory {path}", details=str(e)) from e

        return True

    def remove_tree(self, path: str) -> None:
        """Remove a directory tree; a missing path is not an error."""
        if not os.path.lexists(path):
            return

        try:
            shutil.rmtree(path)
        except OSError as e:
            raise RecoveryIOError(f"Failed to remove {path}", details=str(e)) from e

        if self.verbose:
            logger.debug("Removed %s", path)
