"""
Node address pool model.

A NodeIPPool is the controller's view of one CiliumNode: the pod CIDRs owned
by the node, the pool of addresses the node may hand out, and the addresses
the dataplane reports as in use. Addresses are ipaddress objects so they
compare numerically.
"""

import copy
import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .errors import MalformedData, MalformedIdentity

logger = logging.getLogger(__name__)

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class OwnerKind(enum.Enum):
    STATEFULSET = "StatefulSet"
    DEPLOYMENT = "Deployment"
    REPLICASET = "ReplicaSet"
    DAEMONSET = "DaemonSet"
    JOB = "Job"
    # Kinds we keep but cannot look up
    OTHER = "Other"

    @property
    def resource(self) -> Optional[str]:
        """The cache/API resource name used to look the owner up."""
        return _KIND_RESOURCES.get(self)


_KIND_RESOURCES = {
    OwnerKind.STATEFULSET: "statefulsets.apps",
    OwnerKind.DEPLOYMENT: "deployments.apps",
    OwnerKind.REPLICASET: "replicasets.apps",
    OwnerKind.DAEMONSET: "daemonsets.apps",
    OwnerKind.JOB: "jobs.batch",
}

OWNER_RESOURCES: Tuple[str, ...] = tuple(_KIND_RESOURCES.values())


@dataclass(frozen=True)
class OwnerRef:
    """The workload that reserved an address, rendered as '<namespace>/<kind>/<name>'."""

    namespace: str
    kind: OwnerKind
    name: str
    # Kind as written in the identity, only differs from kind.value for OwnerKind.OTHER
    raw_kind: str = ""

    @classmethod
    def create(cls, namespace: str, kind: str, name: str) -> "OwnerRef":
        if not namespace or not kind or not name:
            raise MalformedIdentity(f"{namespace}/{kind}/{name}")
        for part in (namespace, kind, name):
            if "/" in part:
                raise MalformedIdentity(f"{namespace}/{kind}/{name}")
        try:
            owner_kind = OwnerKind(kind)
        except ValueError:
            owner_kind = OwnerKind.OTHER
        if owner_kind is OwnerKind.OTHER:
            return cls(namespace, owner_kind, name, raw_kind=kind)
        return cls(namespace, owner_kind, name, raw_kind=owner_kind.value)

    @classmethod
    def parse(cls, identity: str) -> "OwnerRef":
        """
        Parses an identity string.

        Args:
            identity: Text of the form '<namespace>/<kind>/<name>'.

        Returns:
            The parsed OwnerRef.

        Raises:
            MalformedIdentity: If the text does not have exactly three non-empty parts.
        """
        parts = identity.split("/")
        if len(parts) != 3 or not all(parts):
            raise MalformedIdentity(identity)
        return cls.create(*parts)

    @property
    def key(self) -> str:
        """Cache key of the owning object."""
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return f"{self.namespace}/{self.raw_kind or self.kind.value}/{self.name}"


@dataclass(frozen=True)
class AllocationRecord:
    """Per-address pool entry; a record without owner is free."""

    owner: Optional[OwnerRef] = None

    @property
    def free(self) -> bool:
        return self.owner is None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AllocationRecord":
        """
        Reads a spec.ipam.pool value.

        Raises:
            MalformedIdentity: If the stored identity cannot be parsed.
        """
        if not data:
            return cls()
        identity = data.get("owner") or data.get("resource")
        if not identity:
            return cls()
        return cls(OwnerRef.parse(str(identity)))

    def to_dict(self) -> Dict[str, Optional[str]]:
        if self.owner is None:
            return {}
        identity = str(self.owner)
        return {"owner": identity, "resource": identity}


FREE = AllocationRecord()


@dataclass
class NodeIPPool:
    """Working copy of a node's address pool."""

    name: str
    pod_cidrs: List[str] = field(default_factory=list)
    pool: Dict[Address, AllocationRecord] = field(default_factory=dict)
    used: Set[Address] = field(default_factory=set)
    resource_version: Optional[str] = None
    # Pool entries whose stored identity could not be parsed, kept verbatim
    malformed: Dict[Address, str] = field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "NodeIPPool":
        """
        Builds a pool from a raw CiliumNode object.

        Entries with an unparseable address are dropped with a warning. Entries
        with an unparseable owner are kept as reserved and listed in `malformed`
        so they are never handed out again.
        """
        metadata = resource.get("metadata") or {}
        spec_ipam = (resource.get("spec") or {}).get("ipam") or {}
        status_ipam = (resource.get("status") or {}).get("ipam") or {}
        name = metadata.get("name", "")

        pool: Dict[Address, AllocationRecord] = {}
        malformed: Dict[Address, str] = {}
        for text, record in (spec_ipam.get("pool") or {}).items():
            try:
                address = ipaddress.ip_address(text)
            except ValueError:
                logger.warning(f"Node '{name}': skipping invalid pool address '{text}'")
                continue
            try:
                pool[address] = AllocationRecord.from_dict(record)
            except MalformedIdentity as e:
                logger.warning(f"Node '{name}': pool entry '{text}' has {e}")
                malformed[address] = str(e.identity)
                pool[address] = FREE

        used: Set[Address] = set()
        for text in status_ipam.get("used") or {}:
            try:
                used.add(ipaddress.ip_address(text))
            except ValueError:
                logger.warning(f"Node '{name}': skipping invalid used address '{text}'")

        return cls(
            name=name,
            pod_cidrs=list(spec_ipam.get("podCIDRs") or []),
            pool=pool,
            used=used,
            resource_version=metadata.get("resourceVersion"),
            malformed=malformed,
        )

    def copy(self) -> "NodeIPPool":
        return copy.deepcopy(self)

    @property
    def free_count(self) -> int:
        return len(self.pool) - len(self.used)

    def first_cidr(self) -> Network:
        """
        Returns the network expansion draws from.

        Raises:
            MalformedData: If the node has no pod CIDR or it cannot be parsed.
        """
        if not self.pod_cidrs:
            raise MalformedData(f"node '{self.name}' has no podCIDRs")
        try:
            return ipaddress.ip_network(self.pod_cidrs[0], strict=False)
        except ValueError as e:
            raise MalformedData(f"node '{self.name}' has invalid podCIDR '{self.pod_cidrs[0]}': {e}")

    def is_available(self, address: Address) -> bool:
        return (
            self.pool.get(address, None) == FREE
            and address not in self.used
            and address not in self.malformed
        )

    def reserved(self) -> Iterator[Tuple[Address, OwnerRef]]:
        for address in sorted(self.pool):
            owner = self.pool[address].owner
            if owner is not None:
                yield address, owner

    def find_owner(self, owner: OwnerRef) -> Optional[Address]:
        for address, current in self.reserved():
            if current == owner:
                return address
        return None

    def dangling_used(self) -> Set[Address]:
        """Addresses reported in use that are not part of the pool."""
        return self.used - set(self.pool)

    def duplicate_owners(self) -> Dict[OwnerRef, List[Address]]:
        seen: Dict[OwnerRef, List[Address]] = {}
        for address, owner in self.reserved():
            seen.setdefault(owner, []).append(address)
        return {owner: addrs for owner, addrs in seen.items() if len(addrs) > 1}

    def pool_patch(self, original: Optional["NodeIPPool"] = None) -> Dict[str, Dict[str, Optional[str]]]:
        """
        Renders spec.ipam.pool for a JSON merge patch.

        With `original`, only entries that differ from it are rendered. Free
        entries that were reserved in `original` carry explicit nulls so the
        merge clears the stored owner.
        """
        rendered: Dict[str, Dict[str, Optional[str]]] = {}
        for address in sorted(self.pool):
            if address in self.malformed:
                continue
            record = self.pool[address]
            before = original.pool.get(address) if original is not None else None
            if before is not None and before == record:
                continue
            body = record.to_dict()
            if not body and before is not None and not before.free:
                body = {"owner": None, "resource": None}
            rendered[str(address)] = body
        return rendered
