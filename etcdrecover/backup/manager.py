"""Write-once backups of etcd configuration, manifests, certificates and data."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

from etcdrecover.certs.manager import CertificateManager
from etcdrecover.utils.errors import (
    AlreadyExistsError,
    PreconditionError,
    RecoveryIOError,
    create_error_suggestions,
)
from etcdrecover.utils.files import FileManager

from .workspace import Workspace

logger = logging.getLogger(__name__)

SNAPSHOT_DB_SUBPATH = os.path.join("member", "snap", "db")

CLIENT_CERT_BACKUPS = {
    "ca_bundle": "etcd-ca-bundle.crt",
    "client_cert": "etcd-client.crt",
    "client_key": "etcd-client.key",
}


class BackupKind(Enum):
    """Kinds of artifacts staged into the workspace backup directory."""

    MANIFEST = "manifest"
    CONFIG = "config"
    CLIENT_CERTS = "client-certs"
    STATIC_CERTS = "static-certs"
    DATA_DIR = "data-dir"


class BackupManager:
    """Copies recovery-critical state into the workspace, never overwriting an existing backup.

    A backup that already exists is the last known-good copy; the current
    state on the host may be what broke, so it is never refreshed.
    """

    def __init__(
        self,
        workspace: Workspace,
        cert_manager: Optional[CertificateManager] = None,
        verbose: bool = False,
    ):
        """
        Initialize backup manager.

        Args:
            workspace: Workspace holding the backup directory
            cert_manager: Certificate discovery used for client cert backups
            verbose: Enable verbose output
        """
        self.workspace = workspace
        self.verbose = verbose
        self.files = FileManager(verbose=verbose)
        self.certs = cert_manager or CertificateManager(verbose=verbose)

    @property
    def backup_dir(self) -> str:
        return self.workspace.backup_dir

    def backup(self, kind: BackupKind, src: str, dst: str) -> Dict[str, Any]:
        """
        Copy src to dst unless dst already exists.

        Args:
            kind: Artifact kind, for reporting
            src: Source file or directory
            dst: Destination path inside the workspace

        Returns:
            Dict[str, Any]: kind, source, destination, skipped and per-entry errors

        Raises:
            RecoveryIOError: If a file copy or the top level of a directory copy fails
        """
        result = {
            "kind": kind.value,
            "source": src,
            "destination": dst,
            "skipped": False,
            "errors": [],
        }

        if os.path.lexists(dst):
            logger.info("%s already backed up at %s", os.path.basename(dst), dst)
            result["skipped"] = True
            return result

        logger.info("Backing up %s to %s", src, dst)

        if os.path.isdir(src):
            result["errors"] = self.files.copy_tree(src, dst)
            if result["errors"]:
                logger.warning("Backup of %s finished with %d failed entries", src, len(result["errors"]))
        else:
            self.files.copy_file(src, dst)

        return result

    def backup_manifest(self, manifest_dir: str, manifest_name: str = "etcd-member.yaml") -> Dict[str, Any]:
        """Back up the etcd static-pod manifest."""
        return self.backup(
            BackupKind.MANIFEST,
            os.path.join(manifest_dir, manifest_name),
            os.path.join(self.backup_dir, manifest_name),
        )

    def backup_etcd_conf(self, etcd_conf: str = "/etc/etcd/etcd.conf") -> Dict[str, Any]:
        """Back up the etcd environment file."""
        return self.backup(
            BackupKind.CONFIG,
            etcd_conf,
            os.path.join(self.backup_dir, os.path.basename(etcd_conf)),
        )

    def backup_client_certs(self, config_file_dir: str) -> Dict[str, Any]:
        """
        Back up the etcd client CA bundle, certificate and key.

        Args:
            config_file_dir: Kubernetes configuration root searched for the bundle

        Returns:
            Dict[str, Any]: Backup result; copied lists the files written by this
            call, files already backed up are left alone

        Raises:
            NotFoundError: If no static-pod revision holds the bundle
        """
        targets = {attr: os.path.join(self.backup_dir, name) for attr, name in CLIENT_CERT_BACKUPS.items()}

        result = {
            "kind": BackupKind.CLIENT_CERTS.value,
            "source": None,
            "destination": self.backup_dir,
            "skipped": False,
            "errors": [],
            "copied": [],
        }

        missing = {attr: path for attr, path in targets.items() if not self.files.file_exists(path)}
        if not missing:
            logger.info("etcd client certs already backed up and available in %s", self.backup_dir)
            result["skipped"] = True
            return result

        bundle = self.certs.find_certificate_bundle(config_file_dir)
        result["source"] = os.path.dirname(os.path.dirname(os.path.dirname(bundle.client_cert)))

        logger.info("Backing up etcd client certs from %s to %s", result["source"], self.backup_dir)
        for attr, dst in missing.items():
            self.files.copy_file(getattr(bundle, attr), dst)
            result["copied"].append(dst)

        return result

    def backup_static_certs(self, static_resource_dir: str) -> Dict[str, Any]:
        """
        Back up the system:etcd-* certificate resources.

        A host without any such resources is reported as skipped.
        """
        result = {
            "kind": BackupKind.STATIC_CERTS.value,
            "source": static_resource_dir,
            "destination": self.backup_dir,
            "skipped": False,
            "errors": [],
            "copied": [],
        }

        if self.certs.list_certificates(self.backup_dir):
            logger.info("etcd TLS certificate backups found in %s", self.backup_dir)
            result["skipped"] = True
            return result

        resources = self.certs.list_certificates(static_resource_dir)
        if not resources:
            logger.warning("etcd TLS certificates not found in %s, backup skipped", static_resource_dir)
            result["skipped"] = True
            return result

        logger.info("Backing up %d etcd certificates", len(resources))
        for path in resources:
            copied = self.backup(BackupKind.STATIC_CERTS, path, os.path.join(self.backup_dir, os.path.basename(path)))
            result["errors"].extend(copied["errors"])
            result["copied"].append(copied["destination"])

        return result

    def backup_data_dir(self, data_dir: str) -> Dict[str, Any]:
        """
        Back up the full etcd data directory. This is one-shot, never incremental.

        The copy is staged in backup/etcd.part and renamed to backup/etcd only
        when every entry made it, so backup/etcd is always a complete copy.

        Args:
            data_dir: etcd data directory, usually /var/lib/etcd

        Returns:
            Dict[str, Any]: Backup result with per-entry copy errors; on errors
            complete is False and destination is the staging directory

        Raises:
            AlreadyExistsError: If a data directory backup is already present
            PreconditionError: If the data directory holds no snapshot db
        """
        dst = os.path.join(self.backup_dir, "etcd")

        if self.files.file_exists(os.path.join(dst, SNAPSHOT_DB_SUBPATH)):
            raise AlreadyExistsError(
                f"etcd data-dir backup is already present in {dst}",
                suggestions=create_error_suggestions("backup_exists"),
            )

        if not self.files.file_exists(os.path.join(data_dir, SNAPSHOT_DB_SUBPATH)):
            raise PreconditionError(
                f"Local etcd snapshot file not found in {data_dir}, backup skipped",
                details=f"Expected {os.path.join(data_dir, SNAPSHOT_DB_SUBPATH)}",
            )

        if os.path.lexists(dst) and not os.path.isdir(dst):
            raise RecoveryIOError(f"{dst} exists and is not a directory")

        staging = dst + ".part"
        self.files.remove_tree(staging)

        logger.info("Backing up %s to %s", data_dir, dst)
        errors = self.files.copy_tree(data_dir, staging)
        if errors:
            logger.warning("Data directory backup finished with %d failed entries, left in %s", len(errors), staging)
        else:
            try:
                os.rename(staging, dst)
            except OSError as e:
                raise RecoveryIOError(f"Could not move {staging} to {dst}", details=str(e)) from e

        return {
            "kind": BackupKind.DATA_DIR.value,
            "source": data_dir,
            "destination": staging if errors else dst,
            "skipped": False,
            "complete": not errors,
            "errors": errors,
        }
