"""etcd cluster operations for etcdrecover."""

from .client import ClusterConfig, EtcdAdminClient, Member, connect
from .membership import MembershipManager
from .snapshot import MemberConfig, SnapshotManager

__all__ = [
    "ClusterConfig",
    "EtcdAdminClient",
    "Member",
    "MemberConfig",
    "MembershipManager",
    "SnapshotManager",
    "connect",
]
