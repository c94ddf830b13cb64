"""etcd administrative client connection."""

import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, List, Optional, Tuple
from urllib.parse import urlsplit

from etcdrecover.utils.errors import PreconditionError, ProtocolError, create_error_suggestions

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_PORT = 2379


# Lazy imports for etcd3 so filesystem-only commands work without a gRPC stack
def _get_etcd3_imports():
    """Get etcd3 imports, importing them only when needed."""
    try:
        import etcd3
        import grpc
        from etcd3.exceptions import Etcd3Exception
    except (ImportError, TypeError) as e:
        # TypeError: etcd3's generated protobuf modules reject newer protobuf runtimes
        raise ProtocolError(
            "The etcd3 client library could not be loaded",
            details=str(e),
            suggestions=[
                "Install the client with 'pip install etcd3'",
                "With protobuf 4 or newer set PROTOCOL_BUFFERS_PYTHON_IMPLEMENTATION=python",
            ],
        ) from e

    return etcd3, (Etcd3Exception, grpc.RpcError)


@dataclass
class ClusterConfig:
    """Connection settings for one request against the cluster."""

    endpoints: List[str] = field(default_factory=list)
    dial_timeout: float = 5.0
    ca_cert: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None

    @classmethod
    def from_endpoint_string(cls, endpoints: str, **kwargs) -> "ClusterConfig":
        """Build a config from a comma separated endpoint list."""
        return cls(endpoints=[ep.strip() for ep in (endpoints or "").split(",") if ep.strip()], **kwargs)

    @property
    def tls_enabled(self) -> bool:
        return any((self.ca_cert, self.cert, self.key))


@dataclass
class Member:
    """A cluster member as reported by etcd."""

    id: int
    name: str
    peer_urls: List[str] = field(default_factory=list)
    client_urls: List[str] = field(default_factory=list)


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    """
    Split an endpoint URL into host and port.

    Args:
        endpoint: "https://10.0.0.1:2379", "10.0.0.1:2379" or "10.0.0.1"

    Returns:
        Tuple[str, int]: Host and port (2379 when absent)
    """
    parsed = urlsplit(endpoint if "://" in endpoint else f"//{endpoint}")

    try:
        port = parsed.port
    except ValueError as e:
        raise PreconditionError(f"Invalid endpoint {endpoint}", details=str(e)) from e

    if not parsed.hostname:
        raise PreconditionError(f"Invalid endpoint {endpoint}: no host")

    return parsed.hostname, port or DEFAULT_CLIENT_PORT


def _to_member(member: Any) -> Member:
    return Member(
        id=int(member.id),
        name=member.name,
        peer_urls=list(member.peer_urls),
        client_urls=list(member.client_urls),
    )


class EtcdAdminClient:
    """Administrative operations against one connected etcd endpoint."""

    def __init__(self, client: Any, endpoint: str, errors: Tuple[type, ...]):
        self._client = client
        self.endpoint = endpoint
        self._errors = errors

    def __enter__(self) -> "EtcdAdminClient":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def snapshot(self, file_obj: BinaryIO) -> None:
        """Stream a point-in-time snapshot of the keyspace into file_obj."""
        self._call("snapshot", self._client.snapshot, file_obj)

    def add_member(self, peer_urls: List[str]) -> Member:
        member = self._call("member add", self._client.add_member, peer_urls)
        return _to_member(member)

    def list_members(self) -> List[Member]:
        return self._call("member list", lambda: [_to_member(m) for m in self._client.members])

    def remove_member(self, member_id: int) -> None:
        self._call("member remove", self._client.remove_member, member_id)

    def status(self) -> Any:
        return self._call("status", self._client.status)

    def close(self) -> None:
        try:
            self._client.close()
        except self._errors as e:
            logger.debug("Error closing connection to %s: %s", self.endpoint, e)

    def _call(self, operation: str, func: Callable, *args):
        try:
            return func(*args)
        except self._errors as e:
            raise ProtocolError(
                f"etcd {operation} against {self.endpoint} failed",
                details=str(e),
                suggestions=create_error_suggestions("cluster_unreachable"),
            ) from e


def connect(config: ClusterConfig) -> EtcdAdminClient:
    """
    Connect to the first answering endpoint.

    Args:
        config: Cluster connection settings

    Returns:
        EtcdAdminClient: Connected client

    Raises:
        PreconditionError: If no endpoints are given or TLS settings are incomplete
        ProtocolError: If no endpoint answers
    """
    if not config.endpoints:
        raise PreconditionError("No etcd endpoints given")

    if config.tls_enabled and not all((config.ca_cert, config.cert, config.key)):
        raise PreconditionError("TLS needs a CA bundle, a client certificate and a client key")

    etcd3, errors = _get_etcd3_imports()

    failures = []
    for endpoint in config.endpoints:
        host, port = parse_endpoint(endpoint)
        client = etcd3.client(
            host=host,
            port=port,
            ca_cert=config.ca_cert,
            cert_key=config.key,
            cert_cert=config.cert,
            timeout=config.dial_timeout,
        )
        admin = EtcdAdminClient(client, endpoint, errors)

        try:
            admin.status()
        except ProtocolError as e:
            logger.warning("etcd endpoint %s is not answering: %s", endpoint, e.details)
            failures.append(f"{endpoint}: {e.details}")
            admin.close()
            continue

        logger.debug("Connected to etcd at %s", endpoint)
        return admin

    raise ProtocolError(
        f"Cannot connect to any etcd endpoint ({', '.join(config.endpoints)})",
        details="; ".join(failures),
        suggestions=create_error_suggestions("cluster_unreachable"),
    )
