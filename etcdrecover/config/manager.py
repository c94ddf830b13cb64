"""Configuration management for etcdrecover."""

import base64
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, StrictUndefined, UndefinedError

from etcdrecover.templates.kubeconfig import get_recovery_kubeconfig_template
from etcdrecover.utils.errors import ConfigurationError, NotFoundError, RecoveryIOError

from .validator import ConfigValidationError, ConfigValidator

CONFIG_ENV_VAR = "ETCDRECOVER_CONFIG"
DEFAULT_CONFIG_PATHS = ["etcdrecover.yml", "/etc/etcdrecover/config.yml"]


@dataclass
class RecoveryConfig:
    """Host layout and tunables for one recovery run."""

    asset_dir: str = "./assets"
    config_file_dir: str = "/etc/kubernetes"
    manifest_dir: str = "/etc/kubernetes/manifests"
    manifest_stopped_dir: Optional[str] = None
    manifest_name: str = "etcd-member.yaml"
    cert_agent_manifest: str = "etcd-generate-certs.yaml"
    etcd_conf: str = "/etc/etcd/etcd.conf"
    data_dir: str = "/var/lib/etcd"
    static_resource_dir: str = "/etc/kubernetes/static-pod-resources/etcd-member"
    supervisor_unit: str = "kubelet.service"
    dial_timeout: float = 5.0
    restore_command: str = "etcdutl"
    cert_quorum: int = 9
    cert_poll_interval: float = 10.0
    endpoints: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.asset_dir:
            self.asset_dir = "."
        if not self.manifest_stopped_dir:
            self.manifest_stopped_dir = os.path.join(self.asset_dir, "manifests-stopped")

    @property
    def backup_dir(self) -> str:
        return os.path.join(self.asset_dir, "backup")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConfigManager:
    """Manages etcdrecover configuration files."""

    def __init__(self, path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            path: Optional base directory for relative config lookups (defaults to current directory)
        """
        self.path = path or os.getcwd()
        self.validator = ConfigValidator()

        self.jinja_env = Environment(trim_blocks=True, lstrip_blocks=True, undefined=StrictUndefined)

    def get_config_path(self, config_file: Optional[str] = None) -> Optional[str]:
        """
        Resolve the configuration file to load.

        An explicit path wins, then $ETCDRECOVER_CONFIG, then the default locations.

        Returns:
            Optional[str]: Path to config file or None if no file is configured
        """
        if config_file:
            return config_file

        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return env_path

        for candidate in DEFAULT_CONFIG_PATHS:
            candidate_path = os.path.join(self.path, candidate)
            if os.path.exists(candidate_path):
                return candidate_path

        return None

    def load_config_file(self, config_path: str, validate: bool = True) -> Dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            config_path: Path to configuration file
            validate: Whether to validate the configuration

        Returns:
            Dict[str, Any]: Loaded configuration

        Raises:
            ConfigValidationError: If configuration is invalid
            ConfigurationError: If the file is missing or not valid YAML
        """
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}", details=str(e)) from e

        if not isinstance(config, dict):
            raise ConfigValidationError([f"{config_path} must contain a mapping"])

        if validate:
            errors = self.validator.validate_recovery_config(config)
            if errors:
                raise ConfigValidationError(errors)

        return config

    def load_config(
        self,
        config_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> RecoveryConfig:
        """
        Build the recovery configuration: defaults, then the config file, then overrides.

        Args:
            config_file: Optional explicit configuration file
            overrides: Values from the command line; None values are ignored

        Returns:
            RecoveryConfig: Merged configuration
        """
        values = {}

        config_path = self.get_config_path(config_file)
        if config_path:
            values.update(self.load_config_file(config_path))

        if overrides:
            values.update({key: value for key, value in overrides.items() if value is not None})

        errors = self.validator.validate_recovery_config(values)
        if errors:
            raise ConfigValidationError(errors)

        return RecoveryConfig(**values)

    def load_etcd_conf(self, path: str) -> Dict[str, str]:
        """
        Parse an etcd environment file (KEY=VALUE lines).

        Args:
            path: Path to etcd.conf

        Returns:
            Dict[str, str]: Variables defined in the file
        """
        values = {}

        try:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError as e:
            raise NotFoundError(f"etcd configuration not found: {path}") from e
        except OSError as e:
            raise RecoveryIOError(f"Failed to read {path}", details=str(e)) from e

        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip().strip('"').strip("'")

        return values

    def render_kubeconfig(self, params: Dict[str, str]) -> str:
        """
        Render the recovery kubeconfig.

        Args:
            params: CA, CERT, KEY (base64 data), RECOVERY_SERVER_IP and CLUSTER_NAME

        Returns:
            str: Rendered kubeconfig
        """
        template = self.jinja_env.from_string(get_recovery_kubeconfig_template())
        try:
            return template.render(**params)
        except UndefinedError as e:
            raise ConfigurationError("Failed to render recovery kubeconfig", details=str(e)) from e

    def render_recovery_kubeconfig(self, backup_dir: str, recovery_server_ip: str, cluster_name: str) -> str:
        """Render the recovery kubeconfig from the backed up etcd client certificates."""
        params = {"RECOVERY_SERVER_IP": recovery_server_ip, "CLUSTER_NAME": cluster_name}

        for key, filename in (("CA", "etcd-ca-bundle.crt"), ("CERT", "etcd-client.crt"), ("KEY", "etcd-client.key")):
            path = os.path.join(backup_dir, filename)
            try:
                with open(path, "rb") as f:
                    params[key] = base64.b64encode(f.read()).decode("ascii")
            except FileNotFoundError as e:
                raise NotFoundError(f"Backed up certificate not found: {path}") from e

        return self.render_kubeconfig(params)
