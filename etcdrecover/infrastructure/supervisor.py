"""Host service supervisor (systemd) control for auxiliary units."""

import logging
import subprocess
from typing import List

from etcdrecover.utils.errors import RecoveryIOError

logger = logging.getLogger(__name__)


class ServiceSupervisor:
    """Stops and starts a systemd unit, kubelet by default."""

    def __init__(self, unit: str = "kubelet.service", systemctl: str = "systemctl", verbose: bool = False):
        """
        Initialize service supervisor.

        Args:
            unit: systemd unit to control
            systemctl: systemctl executable
            verbose: Enable verbose output
        """
        self.unit = unit
        self.systemctl = systemctl
        self.verbose = verbose

    def stop(self) -> None:
        """Stop the unit."""
        logger.info("Stopping %s", self.unit)
        self._run(["stop", self.unit])

    def reload(self) -> None:
        """Reload systemd unit definitions."""
        self._run(["daemon-reload"])

    def start(self) -> None:
        """Reload unit definitions, then start the unit."""
        logger.info("Starting %s", self.unit)
        self.reload()
        self._run(["start", self.unit])

    def _run(self, args: List[str]) -> None:
        command = [self.systemctl] + args

        if self.verbose:
            logger.debug("Running %s", " ".join(command))

        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise RecoveryIOError(f"Failed to run {' '.join(command)}", details=str(e)) from e

        if result.returncode != 0:
            raise RecoveryIOError(
                f"{' '.join(command)} exited with status {result.returncode}",
                details=(result.stderr or result.stdout or "").strip() or None,
            )
