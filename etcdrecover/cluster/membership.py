"""Cluster membership changes through the etcd admin API."""

import logging
from typing import Callable, List, Optional

from etcdrecover.utils.errors import NotFoundError, PreconditionError, create_error_suggestions

from .client import ClusterConfig, EtcdAdminClient, Member, connect

logger = logging.getLogger(__name__)

# etcd never assigns member id 0
UNKNOWN_MEMBER_ID = 0


def find_member_id(members: List[Member], name: str) -> int:
    """Return the id of the member named exactly `name`, or 0."""
    for member in members:
        if member.name == name:
            return member.id
    return UNKNOWN_MEMBER_ID


class MembershipManager:
    """Adds and removes members of a live etcd cluster."""

    def __init__(
        self,
        connect_func: Optional[Callable[[ClusterConfig], EtcdAdminClient]] = None,
        verbose: bool = False,
    ):
        self.connect = connect_func or connect
        self.verbose = verbose

    def add_member(self, cluster_config: ClusterConfig, peer_urls: List[str]) -> Member:
        """
        Add a member with the given peer URLs.

        Args:
            cluster_config: Endpoints of the live cluster
            peer_urls: Peer URLs of the new member

        Returns:
            Member: The member as accepted by the cluster

        Raises:
            PreconditionError: If no peer URLs are given
            ProtocolError: If connecting or the request fails
        """
        if not peer_urls:
            raise PreconditionError("Adding a member needs at least one peer URL")

        with self.connect(cluster_config) as client:
            member = client.add_member(peer_urls)

        logger.info("Added member %x with peer URLs %s", member.id, ", ".join(member.peer_urls))
        return member

    def list_members(self, cluster_config: ClusterConfig) -> List[Member]:
        with self.connect(cluster_config) as client:
            return client.list_members()

    def remove_member(self, cluster_config: ClusterConfig, name: str) -> Member:
        """
        Remove the member named `name`.

        Membership is listed fresh on every call, since it may have changed
        since the last one.

        Args:
            cluster_config: Endpoints of the live cluster
            name: Exact member name

        Returns:
            Member: The removed member

        Raises:
            NotFoundError: If no member has that name
            ProtocolError: If connecting or a request fails
        """
        with self.connect(cluster_config) as client:
            members = client.list_members()
            member_id = find_member_id(members, name)

            if member_id == UNKNOWN_MEMBER_ID:
                raise NotFoundError(
                    f"Member {name} not found to remove",
                    details=f"Current members: {', '.join(m.name or '<unstarted>' for m in members) or 'none'}",
                    suggestions=create_error_suggestions("member_not_found"),
                )

            client.remove_member(member_id)

        removed = next(m for m in members if m.id == member_id)
        logger.info("Removed member %s (%x)", name, member_id)
        return removed
