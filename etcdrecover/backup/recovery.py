"""Recovery procedures for a broken etcd member."""

import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from etcdrecover.certs.manager import CertificateManager
from etcdrecover.cluster.client import ClusterConfig, EtcdAdminClient
from etcdrecover.cluster.membership import MembershipManager
from etcdrecover.cluster.snapshot import MemberConfig, SnapshotManager
from etcdrecover.config.manager import ConfigManager, RecoveryConfig
from etcdrecover.infrastructure.lifecycle import LifecycleController
from etcdrecover.infrastructure.supervisor import ServiceSupervisor
from etcdrecover.utils.errors import NotFoundError, PreconditionError, RecoveryError, RecoveryIOError
from etcdrecover.utils.files import FileManager

from .manager import CLIENT_CERT_BACKUPS, SNAPSHOT_DB_SUBPATH, BackupKind, BackupManager
from .workspace import Workspace

logger = logging.getLogger(__name__)

Step = Tuple[str, Callable[[], Any]]


class RecoveryManager:
    """Runs the recovery procedures step by step.

    Steps run strictly in order. The first failing step stops the run and
    nothing done so far is rolled back: the workspace is the checkpoint and
    every backup step is write-once, so the same procedure can be run again.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        connect_func: Optional[Callable[[ClusterConfig], EtcdAdminClient]] = None,
        supervisor: Optional[ServiceSupervisor] = None,
        config_manager: Optional[ConfigManager] = None,
        verbose: bool = False,
    ):
        """
        Initialize recovery manager.

        Args:
            config: Host layout and tunables
            connect_func: Opens admin clients against the cluster
            supervisor: Host service supervisor for kubelet
            config_manager: Reads etcd.conf
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose

        self.workspace = Workspace(config.asset_dir)
        self.files = FileManager(verbose=verbose)
        self.certs = CertificateManager(verbose=verbose)
        self.backups = BackupManager(self.workspace, cert_manager=self.certs, verbose=verbose)
        self.lifecycle = LifecycleController(config.manifest_dir, config.manifest_stopped_dir, verbose=verbose)
        self.supervisor = supervisor or ServiceSupervisor(unit=config.supervisor_unit, verbose=verbose)
        self.snapshots = SnapshotManager(connect_func, restore_command=config.restore_command, verbose=verbose)
        self.membership = MembershipManager(connect_func, verbose=verbose)
        self.config_manager = config_manager or ConfigManager()

    def cluster_config(
        self,
        endpoints: Optional[List[str]] = None,
        ca_cert: Optional[str] = None,
        cert: Optional[str] = None,
        key: Optional[str] = None,
    ) -> ClusterConfig:
        """
        Build connection settings for a cluster request.

        Explicit TLS files win; otherwise the backed up etcd client
        certificates are used when all three are present.
        """
        if not any((ca_cert, cert, key)):
            backup_dir = self.workspace.backup_dir
            backed_up = {attr: os.path.join(backup_dir, name) for attr, name in CLIENT_CERT_BACKUPS.items()}
            if all(self.files.file_exists(path) for path in backed_up.values()):
                ca_cert = backed_up["ca_bundle"]
                cert = backed_up["client_cert"]
                key = backed_up["client_key"]

        return ClusterConfig(
            endpoints=list(endpoints if endpoints is not None else self.config.endpoints),
            dial_timeout=self.config.dial_timeout,
            ca_cert=ca_cert,
            cert=cert,
            key=key,
        )

    def run_steps(self, procedure: str, steps: List[Step]) -> Dict[str, Any]:
        """
        Run steps in order, halting at the first failure.

        Returns:
            Dict[str, Any]: success, procedure, steps_completed and each step's return value

        Raises:
            RecoveryError: The failing step's error, with the failed and completed steps in details
        """
        result = {"success": True, "procedure": procedure, "steps_completed": [], "results": {}}

        for name, step in steps:
            logger.info("[%s] %s", procedure, name)
            try:
                result["results"][name] = step()
            except RecoveryError as e:
                completed = ", ".join(result["steps_completed"]) or "none"
                logger.error("[%s] %s failed: %s", procedure, name, e.message)
                step_info = f"Failed at step '{name}' of {procedure}; completed steps: {completed}"
                e.details = f"{e.details}\n{step_info}" if e.details else step_info
                raise
            result["steps_completed"].append(name)

        return result

    # Steps shared between procedures

    def _init_step(self) -> Step:
        return ("init workspace", self.workspace.init)

    def _backup_manifest_step(self) -> Step:
        return (
            "backup manifest",
            lambda: self.backups.backup_manifest(self.config.manifest_dir, self.config.manifest_name),
        )

    def _backup_etcd_conf_step(self) -> Step:
        return ("backup etcd.conf", lambda: self.backups.backup_etcd_conf(self.config.etcd_conf))

    def _backup_client_certs_step(self) -> Step:
        return ("backup client certs", lambda: self.backups.backup_client_certs(self.config.config_file_dir))

    def _stop_etcd_step(self) -> Step:
        return ("stop etcd", lambda: self._stop_manifest(self.config.manifest_name))

    def _stop_manifest(self, manifest_name: str) -> str:
        # A manifest already in the stopped directory means an earlier run stopped it
        if self.lifecycle.state(manifest_name) == "stopped":
            logger.info("%s is already stopped", manifest_name)
            return os.path.join(self.lifecycle.stopped_dir, manifest_name)
        return self.lifecycle.stop(manifest_name)

    def _start_manifest(self, manifest_name: str) -> str:
        if self.lifecycle.is_running(manifest_name):
            logger.info("%s is already running", manifest_name)
            return os.path.join(self.lifecycle.manifest_dir, manifest_name)
        return self.lifecycle.start(manifest_name)

    # Procedures

    def init_workspace(self) -> Dict[str, Any]:
        return self.run_steps("init", [self._init_step()])

    def backup_all(self, include_data_dir: bool = False) -> Dict[str, Any]:
        """Back up manifest, etcd.conf, client certs and etcd certificates."""
        steps = [
            self._init_step(),
            self._backup_manifest_step(),
            self._backup_etcd_conf_step(),
            self._backup_client_certs_step(),
            ("backup etcd certs", lambda: self.backups.backup_static_certs(self.config.static_resource_dir)),
        ]
        if include_data_dir:
            steps.append(("backup data dir", self._backup_data_dir))

        return self.run_steps("backup", steps)

    def add_member(self, recovery_server_ip: str, member_name: str, peer_urls: List[str]) -> Dict[str, Any]:
        """
        Stop the local etcd and add this host back to the cluster served from the recovery server.

        Args:
            recovery_server_ip: Address of a healthy member
            member_name: Name this member will start with
            peer_urls: Peer URLs of this member
        """
        cluster = lambda: self.cluster_config([f"https://{recovery_server_ip}:2379"])  # noqa: E731

        steps = [
            self._init_step(),
            self._backup_manifest_step(),
            self._backup_etcd_conf_step(),
            self._backup_client_certs_step(),
            self._stop_etcd_step(),
            ("add member", lambda: self.membership.add_member(cluster(), peer_urls)),
        ]

        result = self.run_steps("addmember", steps)
        result["member"] = result["results"]["add member"]
        result["member_name"] = member_name
        return result

    def remove_member(self, member_name: str, endpoints: Optional[List[str]] = None) -> Dict[str, Any]:
        """Remove a member from the live cluster by name."""
        steps = [
            self._init_step(),
            self._backup_client_certs_step(),
            ("remove member", lambda: self.membership.remove_member(self.cluster_config(endpoints), member_name)),
        ]

        result = self.run_steps("delmember", steps)
        result["member"] = result["results"]["remove member"]
        return result

    def list_members(self, endpoints: Optional[List[str]] = None):
        return self.membership.list_members(self.cluster_config(endpoints))

    def save_snapshot(self, dest_path: str, endpoints: Optional[List[str]] = None) -> Dict[str, Any]:
        """Save a snapshot from exactly one member."""
        steps = [("save snapshot", lambda: self.snapshots.save_snapshot(self.cluster_config(endpoints), dest_path))]

        result = self.run_steps("savesnapshot", steps)
        result["snapshot"] = result["results"]["save snapshot"]
        return result

    def restore(
        self,
        snapshot_path: str,
        name: Optional[str] = None,
        initial_cluster: Optional[str] = None,
        initial_cluster_token: Optional[str] = None,
        peer_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Replace the local data directory with one restored from a snapshot.

        Member identity defaults to the ETCD_* values of the backed up etcd.conf
        and is resolved before etcd is stopped, so a missing value never leaves
        the data directory removed.
        """
        if not os.path.isfile(snapshot_path):
            raise NotFoundError(f"Snapshot file not found: {snapshot_path}")

        target = {}

        def resolve_step() -> MemberConfig:
            target["member"], target["peer_urls"] = self._restore_target(
                name, initial_cluster, initial_cluster_token, peer_urls
            )
            return target["member"]

        steps = [
            self._init_step(),
            self._backup_manifest_step(),
            self._backup_etcd_conf_step(),
            self._backup_client_certs_step(),
            ("resolve member", resolve_step),
            self._stop_etcd_step(),
            ("backup data dir", self._backup_data_dir),
            ("remove data dir", lambda: self.files.remove_tree(self.config.data_dir)),
            (
                "restore snapshot",
                lambda: self.snapshots.restore_snapshot(snapshot_path, target["member"], target["peer_urls"]),
            ),
            ("start etcd", lambda: self.lifecycle.start(self.config.manifest_name)),
        ]

        return self.run_steps("restore", steps)

    def _backup_data_dir(self) -> Dict[str, Any]:
        backup_dst = os.path.join(self.workspace.backup_dir, "etcd")

        # Only complete copies are ever renamed into place, so an earlier run finished this step
        if self.files.file_exists(os.path.join(backup_dst, SNAPSHOT_DB_SUBPATH)):
            logger.info("etcd data-dir backup already present in %s", backup_dst)
            return {
                "kind": BackupKind.DATA_DIR.value,
                "source": self.config.data_dir,
                "destination": backup_dst,
                "skipped": True,
                "complete": True,
                "errors": [],
            }

        result = self.backups.backup_data_dir(self.config.data_dir)
        if result["errors"]:
            failed = ", ".join(entry["path"] for entry in result["errors"])
            raise RecoveryIOError(
                f"Data directory backup to {result['destination']} is incomplete",
                details=f"Failed entries: {failed}",
            )
        return result

    def _restore_target(
        self,
        name: Optional[str],
        initial_cluster: Optional[str],
        initial_cluster_token: Optional[str],
        peer_urls: Optional[List[str]],
    ) -> Tuple[MemberConfig, List[str]]:
        etcd_conf = {}
        if not (name and initial_cluster and peer_urls):
            conf_path = os.path.join(self.workspace.backup_dir, os.path.basename(self.config.etcd_conf))
            etcd_conf = self.config_manager.load_etcd_conf(conf_path)

        name = name or etcd_conf.get("ETCD_NAME")
        initial_cluster = initial_cluster or etcd_conf.get("ETCD_INITIAL_CLUSTER")
        initial_cluster_token = initial_cluster_token or etcd_conf.get("ETCD_INITIAL_CLUSTER_TOKEN") or "etcd-cluster"
        if not peer_urls:
            advertised = etcd_conf.get("ETCD_INITIAL_ADVERTISE_PEER_URLS", "")
            peer_urls = [url.strip() for url in advertised.split(",") if url.strip()]

        missing = [
            label
            for label, value in (("member name", name), ("initial cluster", initial_cluster), ("peer URLs", peer_urls))
            if not value
        ]
        if missing:
            raise PreconditionError(
                f"Cannot restore without {', '.join(missing)}",
                suggestions=["Pass them on the command line or set ETCD_NAME, ETCD_INITIAL_CLUSTER "
                             "and ETCD_INITIAL_ADVERTISE_PEER_URLS in etcd.conf"],
            )

        member_config = MemberConfig(
            name=name,
            data_dir=self.config.data_dir,
            initial_cluster=initial_cluster,
            initial_cluster_token=initial_cluster_token,
        )
        return member_config, peer_urls

    def regenerate_certs(
        self,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Regenerate the etcd certificates with the certificate agent static pod.

        Args:
            deadline: Maximum seconds to wait for the agent
            cancel_event: Setting this event aborts the wait
        """
        agent = self.config.cert_agent_manifest
        static_dir = self.config.static_resource_dir

        steps = [
            self._init_step(),
            ("backup etcd certs", lambda: self.backups.backup_static_certs(static_dir)),
            ("remove etcd certs", lambda: self._remove_certs_unless_agent_running(agent, static_dir)),
            ("start cert agent", lambda: self._start_manifest(agent)),
            (
                "wait for certs",
                lambda: self.certs.wait_for_certificate_quorum(
                    static_dir,
                    threshold=self.config.cert_quorum,
                    poll_interval=self.config.cert_poll_interval,
                    cancel_event=cancel_event,
                    deadline=deadline,
                ),
            ),
            ("stop cert agent", lambda: self.lifecycle.stop(agent)),
        ]

        return self.run_steps("regen-certs", steps)

    def _remove_certs_unless_agent_running(self, agent: str, static_dir: str) -> List[str]:
        # A running agent was started by an earlier run and is already regenerating
        if self.lifecycle.is_running(agent):
            logger.info("%s is already running, keeping its certificates", agent)
            return []
        return self.certs.remove_certificates(static_dir)

    def stop_static_pods(self) -> Dict[str, Any]:
        """Stop every static pod, then kubelet."""
        result = self.run_steps(
            "stop",
            [("stop static pods", self.lifecycle.stop_all), ("stop kubelet", self.supervisor.stop)],
        )
        result["errors"] = result["results"]["stop static pods"]["errors"]
        result["success"] = not result["errors"]
        return result

    def start_static_pods(self) -> Dict[str, Any]:
        """Restore every static pod manifest, then start kubelet."""
        result = self.run_steps(
            "start",
            [("start static pods", self.lifecycle.start_all), ("start kubelet", self.supervisor.start)],
        )
        result["errors"] = result["results"]["start static pods"]["errors"]
        result["success"] = not result["errors"]
        return result
