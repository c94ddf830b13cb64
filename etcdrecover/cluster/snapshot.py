"""Snapshot save and restore for etcd data directories."""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from etcdrecover.utils.errors import (
    AlreadyExistsError,
    NotFoundError,
    PreconditionError,
    RecoveryIOError,
)

from .client import ClusterConfig, EtcdAdminClient, connect

logger = logging.getLogger(__name__)

PRIVATE_FILE_MODE = 0o600


@dataclass
class MemberConfig:
    """Identity of the member a snapshot is restored into."""

    name: str
    data_dir: str
    initial_cluster: str
    initial_cluster_token: str = "etcd-cluster"


class SnapshotManager:
    """Saves snapshots from a single live member and restores them into fresh data directories."""

    def __init__(
        self,
        connect_func: Optional[Callable[[ClusterConfig], EtcdAdminClient]] = None,
        restore_command: str = "etcdutl",
        verbose: bool = False,
    ):
        """
        Initialize snapshot manager.

        Args:
            connect_func: Opens an admin client for a ClusterConfig
            restore_command: etcd restore tool (etcdutl, or etcdctl on older releases)
            verbose: Enable verbose output
        """
        self.connect = connect_func or connect
        self.restore_command = restore_command
        self.verbose = verbose

    def save_snapshot(self, cluster_config: ClusterConfig, dest_path: str) -> Dict[str, Any]:
        """
        Stream a snapshot from one member into dest_path.

        The data lands in dest_path + ".part" first and is renamed only after
        it is fully written and synced, so dest_path is either absent or
        complete.

        Args:
            cluster_config: Must name exactly one endpoint
            dest_path: Final snapshot file

        Returns:
            Dict[str, Any]: path, endpoint, size and duration in seconds

        Raises:
            PreconditionError: If the config does not name exactly one endpoint
            ProtocolError: If connecting or streaming fails
            RecoveryIOError: If writing, syncing or renaming fails
        """
        if len(cluster_config.endpoints) != 1:
            raise PreconditionError(
                "Snapshot must be requested from one selected member, "
                f"got {len(cluster_config.endpoints)} endpoints",
                details=", ".join(cluster_config.endpoints) or None,
            )

        endpoint = cluster_config.endpoints[0]
        part_path = dest_path + ".part"

        with self.connect(cluster_config) as client:
            try:
                started = time.monotonic()
                self._stream_to_part_file(client, part_path)
                duration = time.monotonic() - started
                logger.info("Fetched snapshot from %s, took %.2fs", endpoint, duration)

                try:
                    os.rename(part_path, dest_path)
                except OSError as e:
                    raise RecoveryIOError(f"Could not rename {part_path} to {dest_path}", details=str(e)) from e
            finally:
                _remove_quietly(part_path)

        size = os.path.getsize(dest_path)
        logger.info("Saved snapshot to %s (%d bytes)", dest_path, size)

        return {"path": dest_path, "endpoint": endpoint, "size": size, "duration": duration}

    def _stream_to_part_file(self, client: EtcdAdminClient, part_path: str) -> None:
        try:
            fd = os.open(part_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
        except OSError as e:
            raise RecoveryIOError(f"Could not open {part_path}", details=str(e)) from e

        with os.fdopen(fd, "wb") as f:
            try:
                client.snapshot(f)
            except OSError as e:
                raise RecoveryIOError(f"Could not write {part_path}", details=str(e)) from e

            try:
                f.flush()
                os.fsync(f.fileno())
            except OSError as e:
                raise RecoveryIOError(f"Could not sync {part_path}", details=str(e)) from e

    def build_restore_command(
        self,
        snapshot_path: str,
        member_config: MemberConfig,
        peer_urls: List[str],
    ) -> List[str]:
        """Assemble the restore tool invocation."""
        return [
            self.restore_command,
            "snapshot",
            "restore",
            snapshot_path,
            "--name",
            member_config.name,
            "--data-dir",
            member_config.data_dir,
            "--initial-cluster",
            member_config.initial_cluster,
            "--initial-cluster-token",
            member_config.initial_cluster_token,
            "--initial-advertise-peer-urls",
            ",".join(peer_urls),
        ]

    def restore_snapshot(
        self,
        snapshot_path: str,
        member_config: MemberConfig,
        peer_urls: List[str],
    ) -> Dict[str, Any]:
        """
        Rebuild a data directory from a snapshot with etcd's own restore tool.

        Args:
            snapshot_path: Snapshot file saved earlier
            member_config: Name, target data directory and initial cluster of the member
            peer_urls: Peer URLs the restored member advertises

        Returns:
            Dict[str, Any]: snapshot, data_dir and the command that ran

        Raises:
            NotFoundError: If the snapshot file does not exist
            AlreadyExistsError: If the target data directory already exists
            PreconditionError: If no peer URLs are given
            RecoveryIOError: If the restore tool fails
        """
        if not os.path.isfile(snapshot_path):
            raise NotFoundError(f"Snapshot file not found: {snapshot_path}")

        if os.path.lexists(member_config.data_dir):
            raise AlreadyExistsError(
                f"Data directory {member_config.data_dir} already exists",
                suggestions=["Back up and remove the old data directory before restoring"],
            )

        if not peer_urls:
            raise PreconditionError("Restoring a snapshot needs at least one peer URL")

        command = self.build_restore_command(snapshot_path, member_config, peer_urls)
        logger.info("Restoring %s into %s", snapshot_path, member_config.data_dir)

        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise RecoveryIOError(f"Failed to run {self.restore_command}", details=str(e)) from e

        if result.returncode != 0:
            raise RecoveryIOError(
                f"Snapshot restore exited with status {result.returncode}",
                details=(result.stderr or result.stdout or "").strip() or None,
            )

        if self.verbose and result.stdout:
            logger.debug(result.stdout.strip())

        return {"snapshot": snapshot_path, "data_dir": member_config.data_dir, "command": command}


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
