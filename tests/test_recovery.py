"""Tests for the recovery procedures."""

import os
from unittest.mock import MagicMock, patch

import pytest
from conftest import write_file

from etcdrecover.backup.recovery import RecoveryManager
from etcdrecover.config.manager import RecoveryConfig
from etcdrecover.utils.errors import (
    NotFoundError,
    PreconditionError,
    ProtocolError,
    RecoveryIOError,
    WaitCancelledError,
)


class TestRecoveryManager:
    """Test recovery procedures against a temporary host layout."""

    @pytest.fixture(autouse=True)
    def setup(self, recovery_config, host_layout, fake_connect, fake_client):
        self.config = recovery_config
        self.host = host_layout
        self.connect = fake_connect
        self.client = fake_client
        self.supervisor = MagicMock()
        self.recovery = RecoveryManager(self.config, connect_func=self.connect, supervisor=self.supervisor)
        self.backup_dir = self.recovery.workspace.backup_dir
        self.active_manifest = os.path.join(self.host["manifest_dir"], "etcd-member.yaml")

    def test_init_workspace(self):
        """Init creates the workspace under the asset directory."""
        result = self.recovery.init_workspace()

        assert result["success"] is True
        assert os.path.isdir(self.backup_dir)

    def test_default_asset_dir(self, host_layout):
        """The default ./assets workspace works from a fresh directory."""
        config = RecoveryConfig(manifest_dir=host_layout["manifest_dir"], etcd_conf=host_layout["etcd_conf"])
        recovery = RecoveryManager(config, supervisor=MagicMock())

        recovery.init_workspace()
        recovery.backups.backup_manifest(config.manifest_dir)
        recovery.backups.backup_etcd_conf(config.etcd_conf)
        recovery.lifecycle.stop()

        assert os.path.isfile(os.path.join("assets", "backup", "etcd-member.yaml"))
        assert os.path.isfile(os.path.join("assets", "backup", "etcd.conf"))
        assert os.path.isfile(os.path.join("assets", "manifests-stopped", "etcd-member.yaml"))
        assert not os.path.exists(os.path.join(host_layout["manifest_dir"], "etcd-member.yaml"))

    def test_backup_all(self):
        """Manifest, etcd.conf, client certs and etcd certs are staged."""
        result = self.recovery.backup_all()

        assert result["steps_completed"] == [
            "init workspace",
            "backup manifest",
            "backup etcd.conf",
            "backup client certs",
            "backup etcd certs",
        ]
        for name in ("etcd-member.yaml", "etcd.conf", "etcd-client.crt", "system:etcd-peer-master-0"):
            assert os.path.exists(os.path.join(self.backup_dir, name))

    def test_backup_all_with_data_dir(self):
        """The data directory is included on request."""
        self.recovery.backup_all(include_data_dir=True)

        assert os.path.isfile(os.path.join(self.backup_dir, "etcd", "member", "snap", "db"))

    def test_cluster_config_uses_backed_up_certs(self):
        """Backed up client certs are used for TLS when present."""
        assert self.recovery.cluster_config(["https://10.0.0.2:2379"]).tls_enabled is False

        self.recovery.backup_all()
        cluster = self.recovery.cluster_config(["https://10.0.0.2:2379"])

        assert cluster.ca_cert == os.path.join(self.backup_dir, "etcd-ca-bundle.crt")
        assert cluster.key == os.path.join(self.backup_dir, "etcd-client.key")
        assert cluster.dial_timeout == self.config.dial_timeout

    def test_add_member(self):
        """addmember stops etcd, then registers the member with the recovery server."""
        result = self.recovery.add_member("10.0.0.2", "etcd-member-master-2", ["https://10.0.0.3:2380"])

        assert result["success"] is True
        assert result["member"].peer_urls == ["https://10.0.0.3:2380"]
        assert result["member_name"] == "etcd-member-master-2"
        assert not os.path.exists(self.active_manifest)
        assert self.connect.configs[0].endpoints == ["https://10.0.0.2:2379"]
        assert self.connect.configs[0].cert == os.path.join(self.backup_dir, "etcd-client.crt")

    def test_add_member_rerun_after_failure(self):
        """A failed add leaves etcd stopped, and a re-run completes."""
        self.connect.error = ProtocolError("Cannot connect to any etcd endpoint")

        with pytest.raises(ProtocolError) as exc_info:
            self.recovery.add_member("10.0.0.2", "etcd-member-master-2", ["https://10.0.0.3:2380"])

        assert "Failed at step 'add member' of addmember" in exc_info.value.details
        assert "stop etcd" in exc_info.value.details
        assert not os.path.exists(self.active_manifest)

        self.connect.error = None
        result = self.recovery.add_member("10.0.0.2", "etcd-member-master-2", ["https://10.0.0.3:2380"])

        assert result["success"] is True

    def test_remove_member(self):
        """delmember removes the named member."""
        result = self.recovery.remove_member("etcd-member-master-1", ["https://10.0.0.2:2379"])

        assert result["member"].id == 2
        assert self.client.removed == [2]

    def test_remove_unknown_member(self):
        """An unknown member fails the remove step."""
        with pytest.raises(NotFoundError) as exc_info:
            self.recovery.remove_member("etcd-member-master-9", ["https://10.0.0.2:2379"])

        assert "remove member" in exc_info.value.details

    def test_halts_at_first_failure(self):
        """Steps after the failing one never run."""
        os.remove(self.host["etcd_conf"])

        with pytest.raises(RecoveryIOError) as exc_info:
            self.recovery.add_member("10.0.0.2", "etcd-member-master-2", ["https://10.0.0.3:2380"])

        assert "Failed at step 'backup etcd.conf' of addmember" in exc_info.value.details
        assert os.path.exists(self.active_manifest)
        assert self.connect.configs == []

    def test_save_snapshot(self, temp_directory):
        """A snapshot is saved from the given endpoint."""
        dest = os.path.join(temp_directory, "snapshot.db")

        result = self.recovery.save_snapshot(dest, ["https://10.0.0.2:2379"])

        assert result["snapshot"]["path"] == dest
        assert os.path.isfile(dest)

    def test_save_snapshot_uses_configured_endpoints(self, temp_directory):
        """Without explicit endpoints the configured ones are used."""
        self.config.endpoints = ["https://10.0.0.2:2379", "https://10.0.0.3:2379"]

        with pytest.raises(PreconditionError):
            self.recovery.save_snapshot(os.path.join(temp_directory, "snapshot.db"))

    def _write_snapshot(self, temp_directory):
        snapshot = os.path.join(temp_directory, "snapshot.db")
        with open(snapshot, "wb") as f:
            f.write(b"snapshot")
        return snapshot

    @staticmethod
    def _fake_restore(command, **kwargs):
        data_dir = command[command.index("--data-dir") + 1]
        os.makedirs(os.path.join(data_dir, "member", "snap"))
        return MagicMock(returncode=0, stdout="", stderr="")

    def test_restore_missing_snapshot(self, temp_directory):
        """Nothing is touched when the snapshot is missing."""
        with pytest.raises(NotFoundError):
            self.recovery.restore(os.path.join(temp_directory, "missing.db"))

        assert os.path.isfile(self.active_manifest)
        assert not os.path.exists(self.config.asset_dir)

    def test_restore_with_existing_data_backup(self, temp_directory):
        """A complete data directory backup from an earlier run counts as done."""
        snapshot = self._write_snapshot(temp_directory)
        self.recovery.backup_all(include_data_dir=True)

        with patch("subprocess.run", side_effect=self._fake_restore):
            result = self.recovery.restore(snapshot)

        assert result["results"]["backup data dir"]["skipped"] is True
        assert result["steps_completed"][-1] == "start etcd"
        assert not os.path.exists(os.path.join(self.host["data_dir"], "member", "wal"))
        assert os.path.isfile(self.active_manifest)

    def test_restore_without_identity_keeps_data_dir(self, temp_directory):
        """Missing member identity fails before etcd is stopped, and a re-run with flags completes."""
        snapshot = self._write_snapshot(temp_directory)
        with open(self.host["etcd_conf"], "w") as f:
            f.write(f"ETCD_DATA_DIR={self.host['data_dir']}\n")

        with patch("subprocess.run") as mock_run:
            with pytest.raises(PreconditionError) as exc_info:
                self.recovery.restore(snapshot)

        mock_run.assert_not_called()
        assert "Failed at step 'resolve member' of restore" in exc_info.value.details
        assert os.path.isfile(os.path.join(self.host["data_dir"], "member", "snap", "db"))
        assert os.path.isfile(self.active_manifest)

        with patch("subprocess.run", side_effect=self._fake_restore) as mock_run:
            result = self.recovery.restore(
                snapshot,
                name="etcd-member-master-0",
                initial_cluster="etcd-member-master-0=https://10.0.0.1:2380",
                peer_urls=["https://10.0.0.1:2380"],
            )

        command = mock_run.call_args[0][0]
        assert command[command.index("--name") + 1] == "etcd-member-master-0"
        assert result["steps_completed"][-1] == "start etcd"
        assert os.path.isfile(self.active_manifest)

    def test_restore_rerun_after_restore_tool_failure(self, temp_directory):
        """A failed restore tool leaves etcd stopped, and a re-run reuses the data backup."""
        snapshot = self._write_snapshot(temp_directory)

        with patch("subprocess.run", return_value=MagicMock(returncode=1, stdout="", stderr="corrupt snapshot")):
            with pytest.raises(RecoveryIOError) as exc_info:
                self.recovery.restore(snapshot)

        assert "Failed at step 'restore snapshot' of restore" in exc_info.value.details
        assert not os.path.exists(self.active_manifest)
        assert not os.path.exists(os.path.join(self.host["data_dir"], "member", "wal"))

        with patch("subprocess.run", side_effect=self._fake_restore):
            result = self.recovery.restore(snapshot)

        assert result["results"]["backup data dir"]["skipped"] is True
        assert result["results"]["stop etcd"] == os.path.join(
            self.recovery.lifecycle.stopped_dir, self.config.manifest_name
        )
        assert os.path.isfile(os.path.join(self.backup_dir, "etcd", "member", "snap", "db"))
        assert os.path.isfile(self.active_manifest)

    def test_restore(self, temp_directory):
        """restore backs up, replaces the data directory and starts etcd."""
        snapshot = self._write_snapshot(temp_directory)

        with patch("subprocess.run", side_effect=self._fake_restore) as mock_run:
            result = self.recovery.restore(snapshot)

        command = mock_run.call_args[0][0]
        assert command[command.index("--name") + 1] == "etcd-member-master-0"
        assert command[command.index("--initial-cluster-token") + 1] == "etcd-cluster-1"
        assert command[command.index("--initial-advertise-peer-urls") + 1] == "https://10.0.0.1:2380"
        assert result["steps_completed"][-1] == "start etcd"
        assert result["steps_completed"].index("resolve member") < result["steps_completed"].index("stop etcd")
        assert os.path.isfile(self.active_manifest)
        assert os.path.isfile(os.path.join(self.backup_dir, "etcd", "member", "snap", "db"))
        assert not os.path.exists(os.path.join(self.host["data_dir"], "member", "wal"))

    def test_regenerate_certs(self):
        """Certificates are backed up, removed and regenerated by the agent."""
        static_dir = self.host["static_resource_dir"]

        def agent_writes_certs(*args, **kwargs):
            for i in range(3):
                os.makedirs(os.path.join(static_dir, f"system:etcd-new-{i}"))
            return os.path.join(self.host["manifest_dir"], self.config.cert_agent_manifest)

        with patch.object(self.recovery.lifecycle, "start", side_effect=agent_writes_certs):
            with patch.object(self.recovery.lifecycle, "stop") as mock_stop:
                result = self.recovery.regenerate_certs(deadline=5)

        assert result["results"]["wait for certs"] == 1
        assert len(result["results"]["remove etcd certs"]) == 3
        assert os.path.isdir(os.path.join(self.backup_dir, "system:etcd-peer-master-0"))
        mock_stop.assert_called_once_with(self.config.cert_agent_manifest)

    def test_regenerate_certs_timeout(self):
        """An agent that never finishes times out and stays running."""
        with patch.object(self.recovery.lifecycle, "start"):
            with patch.object(self.recovery.lifecycle, "stop") as mock_stop:
                with pytest.raises(WaitCancelledError):
                    self.recovery.regenerate_certs(deadline=0.05)

        mock_stop.assert_not_called()

    def test_regenerate_certs_rerun_after_timeout(self):
        """A re-run keeps the running agent and the certificates it wrote."""
        static_dir = self.host["static_resource_dir"]
        agent = self.config.cert_agent_manifest
        write_file(os.path.join(self.recovery.lifecycle.stopped_dir, agent), "kind: Pod\n")

        with pytest.raises(WaitCancelledError):
            self.recovery.regenerate_certs(deadline=0.05)

        assert self.recovery.lifecycle.is_running(agent)
        for i in range(3):
            os.makedirs(os.path.join(static_dir, f"system:etcd-new-{i}"))

        result = self.recovery.regenerate_certs(deadline=5)

        assert result["results"]["remove etcd certs"] == []
        assert result["results"]["wait for certs"] == 1
        assert len(os.listdir(static_dir)) == 4
        assert self.recovery.lifecycle.state(agent) == "stopped"

    def test_stop_and_start_static_pods(self):
        """All manifests move and kubelet follows."""
        stopped = self.recovery.stop_static_pods()

        assert stopped["success"] is True
        assert os.listdir(self.host["manifest_dir"]) == []
        self.supervisor.stop.assert_called_once()

        started = self.recovery.start_static_pods()

        assert started["success"] is True
        assert len(os.listdir(self.host["manifest_dir"])) == 2
        self.supervisor.start.assert_called_once()
