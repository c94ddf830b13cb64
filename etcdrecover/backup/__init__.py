"""Backup and recovery procedures for etcd members."""

from .manager import BackupKind, BackupManager
from .recovery import RecoveryManager
from .workspace import Workspace

__all__ = ["BackupKind", "BackupManager", "RecoveryManager", "Workspace"]
