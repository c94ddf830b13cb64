"""On-disk staging layout used by every recovery step."""

import logging
import os
from typing import List, Optional

from etcdrecover.utils.errors import RecoveryIOError

logger = logging.getLogger(__name__)

SUBDIRECTORIES = ("bin", "tmp", "shared", "backup", "templates", "restore", "manifests")


class Workspace:
    """Owns the asset directory tree that stages backups and restores.

    Only the root is kept; every path is derived from it on demand, so a
    re-run of the recovery against the same root picks up where the last
    run stopped.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = root or "."

    def path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    @property
    def backup_dir(self) -> str:
        return self.path("backup")

    @property
    def restore_dir(self) -> str:
        return self.path("restore")

    @property
    def manifests_stopped_dir(self) -> str:
        return self.path("manifests-stopped")

    def init(self) -> List[str]:
        """
        Create the fixed subdirectory set under the root.

        Existing directories are left alone, so calling this twice is safe.

        Returns:
            List[str]: Paths of all workspace subdirectories

        Raises:
            RecoveryIOError: If a subdirectory cannot be created
        """
        created = []

        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise RecoveryIOError(f"Cannot create workspace root {self.root}", details=str(e)) from e

        for name in SUBDIRECTORIES:
            dir_path = self.path(name)
            try:
                os.mkdir(dir_path)
                logger.debug("Created %s", dir_path)
            except FileExistsError:
                if not os.path.isdir(dir_path):
                    raise RecoveryIOError(f"Cannot create workspace directory {dir_path}: a file is in the way")
            except OSError as e:
                raise RecoveryIOError(f"Cannot create workspace directory {dir_path}", details=str(e)) from e
            created.append(dir_path)

        return created
