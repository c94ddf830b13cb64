"""Discovery and inspection of etcd certificate material on a master host."""

import glob
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from cryptography import x509

from etcdrecover.utils.errors import (
    NotFoundError,
    RecoveryIOError,
    WaitCancelledError,
    create_error_suggestions,
)

logger = logging.getLogger(__name__)

APISERVER_POD_PATTERN = "kube-apiserver-pod-[0-9]*"
ETCD_CERT_PATTERN = "system:etcd-*"
CA_BUNDLE_SUBPATH = os.path.join("configmaps", "etcd-serving-ca", "ca-bundle.crt")
CLIENT_CERT_SUBPATH = os.path.join("secrets", "etcd-client", "tls.crt")
CLIENT_KEY_SUBPATH = os.path.join("secrets", "etcd-client", "tls.key")

DEFAULT_CERT_QUORUM = 9
DEFAULT_POLL_INTERVAL = 10.0


@dataclass
class CertificateBundle:
    """etcd client TLS material found in one kube-apiserver static-pod revision."""

    ca_bundle: str
    client_cert: str
    client_key: str


class CertificateManager:
    """Locates and inspects etcd certificates."""

    def __init__(self, verbose: bool = False):
        """Initialize certificate manager."""
        self.verbose = verbose

    def list_apiserver_pod_dirs(self, config_file_dir: str) -> List[str]:
        """Return kube-apiserver static-pod revision directories, newest revision first."""
        resources_dir = glob.escape(os.path.join(config_file_dir, "static-pod-resources"))
        pattern = os.path.join(resources_dir, APISERVER_POD_PATTERN)
        candidates = [path for path in glob.glob(pattern) if os.path.isdir(path)]
        return sorted(candidates, key=_revision, reverse=True)

    def find_certificate_bundle(self, config_file_dir: str) -> CertificateBundle:
        """
        Find the etcd client certificate bundle.

        Every revision directory is tried in turn until one holds the CA
        bundle, client certificate and client key.

        Args:
            config_file_dir: Kubernetes configuration root, usually /etc/kubernetes

        Returns:
            CertificateBundle: Paths of the three files

        Raises:
            NotFoundError: If no revision directory holds a complete set
        """
        candidates = self.list_apiserver_pod_dirs(config_file_dir)

        for pod_dir in candidates:
            bundle = CertificateBundle(
                ca_bundle=os.path.join(pod_dir, CA_BUNDLE_SUBPATH),
                client_cert=os.path.join(pod_dir, CLIENT_CERT_SUBPATH),
                client_key=os.path.join(pod_dir, CLIENT_KEY_SUBPATH),
            )
            if all(os.path.isfile(p) for p in (bundle.ca_bundle, bundle.client_cert, bundle.client_key)):
                logger.info("etcd client certs found in %s", pod_dir)
                return bundle

            logger.info("%s does not contain etcd client certs, trying next", pod_dir)

        raise NotFoundError(
            "No etcd client certs found",
            details=f"Searched {len(candidates)} director{'y' if len(candidates) == 1 else 'ies'} "
            f"matching {os.path.join(config_file_dir, 'static-pod-resources', APISERVER_POD_PATTERN)}",
            suggestions=create_error_suggestions("certs_not_found"),
        )

    def list_certificates(self, static_resource_dir: str) -> List[str]:
        """Return the system:etcd-* resources in a static resource directory."""
        return sorted(glob.glob(os.path.join(glob.escape(static_resource_dir), ETCD_CERT_PATTERN)))

    def count_certificates(self, static_resource_dir: str) -> int:
        return len(self.list_certificates(static_resource_dir))

    def wait_for_certificate_quorum(
        self,
        static_resource_dir: str,
        threshold: int = DEFAULT_CERT_QUORUM,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        counter: Optional[Callable[[], int]] = None,
    ) -> int:
        """
        Block until at least `threshold` etcd certificates exist.

        Without a cancel event or deadline this waits indefinitely.

        Args:
            static_resource_dir: Directory the certificate agent writes into
            threshold: Number of certificates that make the set complete
            poll_interval: Seconds between scans
            cancel_event: Setting this event aborts the wait
            deadline: Maximum seconds to wait
            counter: Replaces the directory scan; returns the current count

        Returns:
            int: Number of polls performed

        Raises:
            WaitCancelledError: If cancelled or the deadline passes first
        """
        if counter is None:
            counter = lambda: self.count_certificates(static_resource_dir)  # noqa: E731

        started = time.monotonic()
        polls = 0

        while True:
            polls += 1
            count = counter()
            if count >= threshold:
                logger.info("Found %d of %d etcd certificates after %d poll(s)", count, threshold, polls)
                return polls

            logger.info("Waiting for certs to generate (%d of %d)...", count, threshold)

            wait_for = poll_interval
            if deadline is not None:
                remaining = deadline - (time.monotonic() - started)
                if remaining <= 0:
                    raise WaitCancelledError(
                        f"Timed out waiting for {threshold} etcd certificates in {static_resource_dir}",
                        details=f"Last count was {count} after {polls} poll(s)",
                    )
                wait_for = min(poll_interval, remaining)

            if cancel_event is not None:
                if cancel_event.wait(wait_for):
                    raise WaitCancelledError(
                        f"Wait for etcd certificates in {static_resource_dir} was cancelled",
                        details=f"Last count was {count} after {polls} poll(s)",
                    )
            else:
                time.sleep(wait_for)

    def remove_certificates(self, static_resource_dir: str) -> List[str]:
        """
        Remove all system:etcd-* resources so the agent regenerates them.

        Returns:
            List[str]: Removed paths
        """
        removed = []
        for path in self.list_certificates(static_resource_dir):
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
            except OSError as e:
                raise RecoveryIOError(f"Failed to remove {path}", details=str(e)) from e
            removed.append(path)

        if self.verbose:
            logger.debug("Removed %d etcd certificate resources", len(removed))

        return removed

    def describe_certificate(self, cert_path: str) -> Dict[str, Any]:
        """
        Summarize a PEM certificate.

        Args:
            cert_path: Path to certificate file

        Returns:
            Dict[str, Any]: Subject, issuer, serial, validity and expires_in_days
        """
        try:
            with open(cert_path, "rb") as f:
                cert_data = f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Certificate file not found: {cert_path}") from e
        except OSError as e:
            raise RecoveryIOError(f"Failed to read {cert_path}", details=str(e)) from e

        try:
            cert = x509.load_pem_x509_certificate(cert_data)
        except ValueError as e:
            raise RecoveryIOError(f"Invalid certificate format: {cert_path}", details=str(e)) from e

        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc
        now = datetime.now(timezone.utc)

        return {
            "path": cert_path,
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serial_number": str(cert.serial_number),
            "not_valid_before": not_before.isoformat(),
            "not_valid_after": not_after.isoformat(),
            "expires_in_days": (not_after - now).days,
            "expired": not_after < now,
        }


def _revision(path: str) -> int:
    match = re.search(r"(\d+)$", os.path.basename(path))
    return int(match.group(1)) if match else -1
