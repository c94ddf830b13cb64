"""Configuration validation for etcdrecover."""

import os
from typing import Any, Dict, List

import jsonschema

from etcdrecover.utils.errors import ConfigurationError, create_error_suggestions, format_validation_errors

from .schemas import RECOVERY_CONFIG_SCHEMA


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(
            f"Configuration validation failed with {len(errors)} error(s)",
            details=format_validation_errors(errors),
            suggestions=create_error_suggestions("configuration_invalid"),
        )


class ConfigValidator:
    """Validates etcdrecover configuration files."""

    def validate_recovery_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate a recovery configuration.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        errors = []

        validator = jsonschema.Draft7Validator(RECOVERY_CONFIG_SCHEMA)
        for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
            location = ".".join(str(part) for part in error.path)
            if location:
                errors.append(f"{location}: {error.message}")
            else:
                errors.append(error.message)

        # The stopped directory must not be the directory kubelet watches
        manifest_dir = config.get("manifest_dir")
        stopped_dir = config.get("manifest_stopped_dir")
        if manifest_dir and stopped_dir and _same_path(manifest_dir, stopped_dir):
            errors.append("manifest_stopped_dir must differ from manifest_dir")

        return errors


def _same_path(a: str, b: str) -> bool:
    return os.path.normpath(os.path.abspath(a)) == os.path.normpath(os.path.abspath(b))
