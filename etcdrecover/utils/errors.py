"""Error handling utilities for etcdrecover."""

import sys
import traceback
from typing import Optional

import click


class RecoveryError(Exception):
    """Base exception for etcdrecover errors."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
    ):
        self.message = message
        self.details = details
        self.suggestions = suggestions or []
        super().__init__(message)


class RecoveryIOError(RecoveryError):
    """Raised when a filesystem or host process operation fails."""

    pass


class ProtocolError(RecoveryError):
    """Raised when a request against the etcd cluster fails."""

    pass


class PreconditionError(RecoveryError):
    """Raised when an operation is attempted without its required preconditions."""

    pass


class NotFoundError(RecoveryError):
    """Raised when an expected resource or member is absent."""

    pass


class AlreadyExistsError(RecoveryError):
    """Raised when a one-shot operation is attempted a second time."""

    pass


class ConfigurationError(RecoveryError):
    """Raised when configuration is invalid or missing."""

    pass


class WaitCancelledError(RecoveryError):
    """Raised when a blocking wait is cancelled or runs past its deadline."""

    pass


class ErrorHandler:
    """Handles and formats errors for user-friendly display."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handle_error(self, error: Exception, context: Optional[str] = None) -> None:
        """
        Handle and display error with appropriate formatting.

        Args:
            error: Exception to handle
            context: Optional context about when/where error occurred
        """
        if isinstance(error, RecoveryError):
            self._handle_recovery_error(error, context)
        else:
            self._handle_generic_error(error, context)

    def _handle_recovery_error(self, error: RecoveryError, context: Optional[str]) -> None:
        """Handle etcdrecover-specific errors."""
        click.echo(f"✗ {type(error).__name__}: {error.message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if error.details:
            click.echo(f"Details: {error.details}", err=True)

        if error.suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in error.suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def _handle_generic_error(self, error: Exception, context: Optional[str]) -> None:
        """Handle generic Python exceptions."""
        error_type = type(error).__name__

        if isinstance(error, FileNotFoundError):
            message = f"File not found: {error}"
            suggestions = [
                "Check that the path is correct",
                "Ensure the recovery runs on the affected master host",
            ]
        elif isinstance(error, PermissionError):
            message = f"Permission denied: {error}"
            suggestions = [
                "Check file/directory permissions",
                "Recovery steps normally require root privileges",
            ]
        elif isinstance(error, ConnectionError):
            message = f"Connection failed: {error}"
            suggestions = create_error_suggestions("cluster_unreachable")
        else:
            message = f"{error_type}: {error}"
            suggestions = []

        click.echo(f"✗ {message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def exit_with_error(self, error: Exception, context: Optional[str] = None, exit_code: int = 1) -> None:
        """Handle error and exit with specified code."""
        self.handle_error(error, context)
        sys.exit(exit_code)


def create_error_suggestions(error_type: str, **kwargs) -> list:
    """
    Create contextual error suggestions based on error type and context.

    Args:
        error_type: Type of error
        **kwargs: Additional context information

    Returns:
        list: List of suggestion strings
    """
    suggestions = {
        "cluster_unreachable": [
            "Check that at least one etcd member is running",
            "Verify the endpoint URLs and the 2379 client port",
            "Check that the backed up client certificates are valid",
        ],
        "certs_not_found": [
            "Check that /etc/kubernetes/static-pod-resources is present",
            "Verify a kube-apiserver-pod revision directory holds etcd-client secrets",
        ],
        "backup_exists": [
            "Inspect the existing backup before removing it",
            "Move the asset directory aside to start a fresh recovery run",
        ],
        "manifest_missing": [
            "Check whether etcd is already stopped (see the manifests-stopped directory)",
            "Verify the manifest directory path",
        ],
        "member_not_found": [
            "List members with 'etcdrecover members' and check the exact name",
        ],
        "configuration_invalid": [
            "Check YAML syntax in configuration file",
            "Verify all values have the expected types",
        ],
    }

    return suggestions.get(error_type, [])


def format_validation_errors(errors: list) -> str:
    """
    Format validation errors for display.

    Args:
        errors: List of validation error messages

    Returns:
        str: Formatted error message
    """
    if not errors:
        return "No validation errors"

    if len(errors) == 1:
        return f"Validation error: {errors[0]}"

    formatted = "Validation errors:\n"
    for i, error in enumerate(errors, 1):
        formatted += f"  {i}. {error}\n"

    return formatted.strip()
