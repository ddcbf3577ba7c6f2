import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

from . import config
from .cache import ResourceCache
from .errors import MalformedData, NotFound, PoolExhausted, TransientError
from .pool import FREE, Address, AllocationRecord, NodeIPPool, OwnerRef
from .writeback import PoolWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PodAllocationRequest:
    """A pod on a node that needs a pool address for its owner."""

    pod_key: str
    node_name: str
    owner: OwnerRef
    pod_ip: Optional[str] = None

    @property
    def has_address(self) -> bool:
        return bool(self.pod_ip)


@dataclass
class BindResult:
    address: Address
    changed: bool
    # The pool after binding; the input pool when nothing changed
    pool: NodeIPPool


class Binder:
    """
    Reserves pool addresses for workload owners.

    Both operations are idempotent: binding an owner that already holds the
    requested address returns that address with `changed=False`, and the
    caller must not write anything in that case. An owner never holds more
    than one address of a pool.
    """

    def __init__(self, cache: ResourceCache, writer: PoolWriter):
        self.cache = cache
        self.writer = writer

    def reserve(self, pool: NodeIPPool, owner: OwnerRef) -> BindResult:
        """
        Reserves the lowest free address for `owner`.

        Raises:
            PoolExhausted: If every address is reserved or in use.
        """
        existing = pool.find_owner(owner)
        if existing is not None:
            return BindResult(existing, False, pool)

        for address in sorted(pool.pool):
            if pool.is_available(address):
                mutated = pool.copy()
                mutated.pool[address] = AllocationRecord(owner)
                return BindResult(address, True, mutated)
        raise PoolExhausted(pool.name)

    def bind_resolved(self, pool: NodeIPPool, owner: OwnerRef, address: Address) -> BindResult:
        """
        Records `owner` on the address the dataplane gave its pod.

        Any other address still held by the same owner is freed.

        Raises:
            MalformedData: If the address is not part of the pool.
        """
        if address not in pool.pool:
            raise MalformedData(f"address {address} is not in the pool of node '{pool.name}'")

        held = [a for a, current in pool.reserved() if current == owner]
        if held == [address]:
            return BindResult(address, False, pool)

        mutated = pool.copy()
        for previous in held:
            if previous != address:
                logger.info(f"Node '{pool.name}': owner '{owner}' moved from {previous} to {address}")
                mutated.pool[previous] = FREE
        current = pool.pool[address].owner
        if current is not None and current != owner:
            logger.warning(f"Node '{pool.name}': {address} was reserved for '{current}', rebinding to '{owner}'")
        mutated.malformed.pop(address, None)
        mutated.pool[address] = AllocationRecord(owner)
        return BindResult(address, True, mutated)

    async def allocate(self, request: PodAllocationRequest) -> BindResult:
        """
        Binds the request against the current pool of its node and persists the result.

        Pods without an address get a reservation, pods with one are bound at
        that address. Nothing is written when the binding already exists.

        Raises:
            TransientError: If the node pool is not cached yet, or the write failed.
            PoolExhausted: If no address is free.
            MalformedData: If the pod address is invalid or outside the pool.
        """
        try:
            raw = self.cache.get(config.CILIUM_NODES, request.node_name)
        except NotFound:
            raise TransientError(f"no CiliumNode for node '{request.node_name}' yet")
        current = NodeIPPool.from_resource(raw)

        if request.has_address:
            try:
                address = ipaddress.ip_address(request.pod_ip)
            except ValueError:
                raise MalformedData(f"pod '{request.pod_key}' has invalid address '{request.pod_ip}'")
            result = self.bind_resolved(current, request.owner, address)
        else:
            result = self.reserve(current, request.owner)

        if not result.changed:
            logger.debug(f"Pod '{request.pod_key}': owner '{request.owner}' already holds {result.address}")
            return result

        await self.writer.write(current, result.pool)
        logger.info(f"Pod '{request.pod_key}': bound {result.address} on node '{request.node_name}' to '{request.owner}'")
        return result
