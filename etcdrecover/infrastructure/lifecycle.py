"""Static-pod lifecycle control through manifest relocation."""

import logging
import os
from typing import Any, Dict

from etcdrecover.utils.errors import RecoveryIOError, create_error_suggestions
from etcdrecover.utils.files import FileManager

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST = "etcd-member.yaml"


class LifecycleController:
    """Starts and stops static pods by moving their manifests.

    kubelet runs whatever sits in the active manifest directory. Moving a
    manifest into the stopped directory stops the pod and moving it back
    starts it again; a rename within one volume is atomic, so the pod is
    never seen half-stopped.
    """

    def __init__(self, manifest_dir: str, stopped_dir: str, verbose: bool = False):
        """
        Initialize lifecycle controller.

        Args:
            manifest_dir: Directory kubelet watches for static-pod manifests
            stopped_dir: Staging directory for stopped manifests
            verbose: Enable verbose output
        """
        self.manifest_dir = manifest_dir
        self.stopped_dir = stopped_dir
        self.verbose = verbose
        self.files = FileManager(verbose=verbose)

    def is_running(self, manifest_name: str = DEFAULT_MANIFEST) -> bool:
        return os.path.isfile(os.path.join(self.manifest_dir, manifest_name))

    def state(self, manifest_name: str = DEFAULT_MANIFEST) -> str:
        """Return "running" or "stopped"; a manifest in both or neither location is an error."""
        active = self.is_running(manifest_name)
        stopped = os.path.isfile(os.path.join(self.stopped_dir, manifest_name))

        if active != stopped:
            return "running" if active else "stopped"

        where = "both" if active else "neither"
        raise RecoveryIOError(
            f"{manifest_name} is present in {where} of {self.manifest_dir} and {self.stopped_dir}",
            suggestions=create_error_suggestions("manifest_missing"),
        )

    def stop(self, manifest_name: str = DEFAULT_MANIFEST) -> str:
        """
        Stop a static pod by moving its manifest into the stopped directory.

        Args:
            manifest_name: Manifest file name

        Returns:
            str: New manifest path

        Raises:
            RecoveryIOError: If the manifest cannot be moved (including when it is already stopped)
        """
        self.files.ensure_directory(self.stopped_dir)

        logger.info("Stopping %s", manifest_name)
        return self._move(
            os.path.join(self.manifest_dir, manifest_name),
            os.path.join(self.stopped_dir, manifest_name),
        )

    def start(self, manifest_name: str = DEFAULT_MANIFEST) -> str:
        """
        Start a static pod by moving its manifest back into the active directory.

        Raises:
            RecoveryIOError: If the manifest cannot be moved
        """
        logger.info("Starting %s", manifest_name)
        return self._move(
            os.path.join(self.stopped_dir, manifest_name),
            os.path.join(self.manifest_dir, manifest_name),
        )

    def stop_all(self) -> Dict[str, Any]:
        """Move every manifest from the active directory into the stopped directory."""
        self.files.ensure_directory(self.stopped_dir)
        return self._move_all(self.manifest_dir, self.stopped_dir)

    def start_all(self) -> Dict[str, Any]:
        """Move every manifest from the stopped directory back into the active directory."""
        return self._move_all(self.stopped_dir, self.manifest_dir)

    def _move(self, src: str, dst: str) -> str:
        try:
            os.rename(src, dst)
        except FileNotFoundError as e:
            raise RecoveryIOError(
                f"Cannot move {src} to {dst}: manifest not found",
                details=str(e),
                suggestions=create_error_suggestions("manifest_missing"),
            ) from e
        except OSError as e:
            raise RecoveryIOError(f"Cannot move {src} to {dst}", details=str(e)) from e

        if self.verbose:
            logger.debug("Moved %s to %s", src, dst)

        return dst

    def _move_all(self, src_dir: str, dst_dir: str) -> Dict[str, Any]:
        """
        Move each non-directory entry of src_dir into dst_dir.

        Entries move independently: one failure does not stop the rest.

        Returns:
            Dict[str, Any]: success, moved names and {"name", "error"} failures

        Raises:
            RecoveryIOError: If src_dir cannot be read
        """
        result = {"success": True, "moved": [], "errors": []}

        try:
            entries = os.scandir(src_dir)
        except OSError as e:
            raise RecoveryIOError(f"Cannot read manifest directory {src_dir}", details=str(e)) from e

        with entries:
            for entry in entries:
                try:
                    if entry.is_dir():
                        continue
                    self._move(entry.path, os.path.join(dst_dir, entry.name))
                    result["moved"].append(entry.name)
                except (OSError, RecoveryIOError) as e:
                    message = e.details if isinstance(e, RecoveryIOError) and e.details else str(e)
                    logger.warning("Failed to move %s: %s", entry.name, message)
                    result["errors"].append({"name": entry.name, "error": message})

        result["success"] = len(result["errors"]) == 0
        return result
