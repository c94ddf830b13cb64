"""Pytest configuration and shared fixtures."""

import os
import shutil
import tempfile

import pytest

from etcdrecover.cluster.client import Member
from etcdrecover.config.manager import RecoveryConfig
from etcdrecover.utils.errors import ProtocolError

ETCD_CONF = """# etcd member environment
ETCD_NAME=etcd-member-master-0
ETCD_DATA_DIR=/var/lib/etcd
ETCD_INITIAL_CLUSTER="etcd-member-master-0=https://10.0.0.1:2380"
ETCD_INITIAL_CLUSTER_TOKEN=etcd-cluster-1
ETCD_INITIAL_ADVERTISE_PEER_URLS=https://10.0.0.1:2380
"""


class FakeAdminClient:
    """In-memory stand-in for EtcdAdminClient."""

    def __init__(self, members=None, snapshot_data=b"snapshot-bytes", fail_snapshot=None):
        self.members = list(members or [])
        self.snapshot_data = snapshot_data
        self.fail_snapshot = fail_snapshot
        self.removed = []
        self.added = []
        self.closed = False
        self.endpoint = "https://10.0.0.2:2379"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def snapshot(self, file_obj):
        file_obj.write(self.snapshot_data[: len(self.snapshot_data) // 2])
        if self.fail_snapshot is not None:
            raise self.fail_snapshot
        file_obj.write(self.snapshot_data[len(self.snapshot_data) // 2:])

    def add_member(self, peer_urls):
        member = Member(id=0xABC, name="", peer_urls=list(peer_urls))
        self.added.append(member)
        self.members.append(member)
        return member

    def list_members(self):
        return list(self.members)

    def remove_member(self, member_id):
        self.removed.append(member_id)
        self.members = [m for m in self.members if m.id != member_id]

    def status(self):
        return {"leader": 1}

    def close(self):
        self.closed = True


class FakeConnect:
    """Connect function recording the cluster configs it was called with."""

    def __init__(self, client=None, error=None):
        self.client = client or FakeAdminClient()
        self.error = error
        self.configs = []

    def __call__(self, cluster_config):
        self.configs.append(cluster_config)
        if self.error is not None:
            raise self.error
        return self.client


def write_file(path, content="", mode=None):
    """Create a file with parent directories."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    if mode is not None:
        os.chmod(path, mode)
    return path


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Cleanup
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolate_filesystem(temp_directory, monkeypatch):
    """Isolate filesystem operations to temporary directory."""
    monkeypatch.chdir(temp_directory)
    monkeypatch.delenv("ETCDRECOVER_CONFIG", raising=False)
    return temp_directory


@pytest.fixture
def fake_client():
    """Admin client with two members."""
    return FakeAdminClient(
        members=[
            Member(id=1, name="etcd-member-master-0", peer_urls=["https://10.0.0.1:2380"]),
            Member(id=2, name="etcd-member-master-1", peer_urls=["https://10.0.0.2:2380"]),
        ]
    )


@pytest.fixture
def fake_connect(fake_client):
    return FakeConnect(fake_client)


@pytest.fixture
def unreachable_connect():
    return FakeConnect(error=ProtocolError("Cannot connect to any etcd endpoint (https://10.0.0.9:2379)"))


@pytest.fixture
def host_layout(temp_directory):
    """Master host layout under a temporary root."""
    root = os.path.join(temp_directory, "host")
    kube = os.path.join(root, "etc", "kubernetes")
    manifest_dir = os.path.join(kube, "manifests")
    static_resource_dir = os.path.join(kube, "static-pod-resources", "etcd-member")
    data_dir = os.path.join(root, "var", "lib", "etcd")
    etcd_conf = os.path.join(root, "etc", "etcd", "etcd.conf")

    write_file(os.path.join(manifest_dir, "etcd-member.yaml"), "kind: Pod\nmetadata:\n  name: etcd-member\n")
    write_file(os.path.join(manifest_dir, "kube-apiserver.yaml"), "kind: Pod\n")
    write_file(etcd_conf, ETCD_CONF)

    for revision in (2, 10):
        pod_dir = os.path.join(kube, "static-pod-resources", f"kube-apiserver-pod-{revision}")
        write_file(os.path.join(pod_dir, "configmaps", "etcd-serving-ca", "ca-bundle.crt"), f"ca-{revision}")
        write_file(os.path.join(pod_dir, "secrets", "etcd-client", "tls.crt"), f"cert-{revision}")
        write_file(os.path.join(pod_dir, "secrets", "etcd-client", "tls.key"), f"key-{revision}", mode=0o600)

    for name in ("system:etcd-peer-master-0", "system:etcd-server-master-0", "system:etcd-metric-master-0"):
        write_file(os.path.join(static_resource_dir, name, "tls.crt"), name)
    write_file(os.path.join(static_resource_dir, "unrelated.txt"), "x")

    write_file(os.path.join(data_dir, "member", "snap", "db"), "db-contents")
    write_file(os.path.join(data_dir, "member", "wal", "0000000000000000-0000000000000000.wal"), "wal")

    return {
        "root": root,
        "config_file_dir": kube,
        "manifest_dir": manifest_dir,
        "static_resource_dir": static_resource_dir,
        "data_dir": data_dir,
        "etcd_conf": etcd_conf,
    }


@pytest.fixture
def recovery_config(host_layout, temp_directory):
    """RecoveryConfig pointing at the temporary host layout."""
    return RecoveryConfig(
        asset_dir=os.path.join(temp_directory, "assets"),
        config_file_dir=host_layout["config_file_dir"],
        manifest_dir=host_layout["manifest_dir"],
        etcd_conf=host_layout["etcd_conf"],
        data_dir=host_layout["data_dir"],
        static_resource_dir=host_layout["static_resource_dir"],
        cert_quorum=3,
        cert_poll_interval=0.01,
    )
