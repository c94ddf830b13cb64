"""Configuration management for etcdrecover."""

from .manager import ConfigManager, RecoveryConfig
from .schemas import RECOVERY_CONFIG_SCHEMA

__all__ = ['ConfigManager', 'RecoveryConfig', 'RECOVERY_CONFIG_SCHEMA']
