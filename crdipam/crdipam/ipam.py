import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from . import config
from .cache import ResourceCache
from .errors import MalformedData, NotFound, TransientError
from .pool import FREE, Address, AllocationRecord, NodeIPPool, OwnerKind, OwnerRef
from .writeback import PoolWriter

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one pool reconcile."""

    expanded: List[Address] = field(default_factory=list)
    recycled: List[Address] = field(default_factory=list)
    exhausted: bool = False
    written: bool = False
    # Seconds until the pool should be looked at again, for pending recycles
    requeue_after: Optional[float] = None

    @property
    def changed(self) -> bool:
        return bool(self.expanded or self.recycled)


class PoolReconciler:
    """Expands a node's address pool and recycles addresses of deleted owners."""

    cache: ResourceCache
    writer: PoolWriter

    def __init__(
        self,
        cache: ResourceCache,
        writer: PoolWriter,
        low_watermark: int = config.DEFAULT_LOW_WATERMARK,
        expand_step: int = config.DEFAULT_EXPAND_STEP,
        recycle_grace_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.writer = writer
        self.low_watermark = low_watermark
        self.expand_step = expand_step
        self.recycle_grace_seconds = recycle_grace_seconds
        self.clock = clock
        # (node, address, owner) -> first time the owner was seen missing
        self._missing_since: Dict[Tuple[str, Address, OwnerRef], float] = {}

    @classmethod
    def from_settings(cls, settings: config.Settings, cache: ResourceCache, writer: PoolWriter) -> "PoolReconciler":
        return cls(
            cache,
            writer,
            low_watermark=settings.low_watermark,
            expand_step=settings.expand_step,
            recycle_grace_seconds=settings.recycle_grace_seconds,
        )

    def expand(self, pool: NodeIPPool) -> Tuple[List[Address], bool]:
        """
        Adds free addresses to the pool when it runs low.

        Scanning resumes after the numerically greatest address already taken
        from the first pod CIDR, so repeated expansions never rescan the range.

        Args:
            pool: The working copy to mutate.

        Returns:
            The added addresses and whether the CIDR ran out before the step was filled.

        Raises:
            MalformedData: If the node has no usable pod CIDR.
        """
        if pool.free_count > self.low_watermark:
            return [], False

        cidr = pool.first_cidr()
        in_range = [address for address in pool.pool if address in cidr]
        if in_range:
            start = int(max(in_range)) + 1
        else:
            start = int(cidr.network_address)
        end = int(cidr.broadcast_address)

        address_type = type(cidr.network_address)
        added: List[Address] = []
        current = start
        while len(added) < self.expand_step and current <= end:
            address = address_type(current)
            if address not in pool.pool:
                pool.pool[address] = AllocationRecord()
                added.append(address)
            current += 1

        exhausted = len(added) < self.expand_step
        if exhausted:
            logger.warning(
                f"Node '{pool.name}': pod CIDR {cidr} exhausted, added {len(added)} of {self.expand_step} addresses"
            )
        if added:
            logger.info(f"Node '{pool.name}': expanding pool to {len(pool.pool)} addresses ({added[0]} - {added[-1]})")
        return added, exhausted

    def _owner_exists(self, owner: OwnerRef) -> bool:
        """
        Checks the cache for the owning workload.

        Raises:
            TransientError: If the lookup could not be answered.
        """
        resource = owner.kind.resource
        assert resource is not None
        try:
            self.cache.get(resource, owner.key)
        except NotFound:
            return False
        return True

    def recycle(self, pool: NodeIPPool) -> Tuple[List[Address], Optional[float], Optional[TransientError]]:
        """
        Frees addresses whose owner no longer exists.

        Lookups that fail transiently leave the entry untouched; the first
        such error is returned so the caller can retry the whole pool.

        Returns:
            The freed addresses, the seconds until a pending recycle is due,
            and the first transient lookup error.
        """
        recycled: List[Address] = []
        requeue_after: Optional[float] = None
        transient: Optional[TransientError] = None
        now = self.clock()
        pending = set()

        for address, identity in sorted(pool.malformed.items()):
            logger.warning(f"Node '{pool.name}': skipping recycle check of {address}, invalid owner '{identity}'")

        for address, owner in list(pool.reserved()):
            if owner.kind is OwnerKind.OTHER:
                logger.warning(f"Node '{pool.name}': skipping recycle check of {address}, unsupported owner kind in '{owner}'")
                continue
            marker = (pool.name, address, owner)
            try:
                if self._owner_exists(owner):
                    continue
            except TransientError as e:
                logger.warning(f"Node '{pool.name}': could not look up owner '{owner}' of {address}: {e}")
                if transient is None:
                    transient = e
                # Keep any running grace timer
                pending.add(marker)
                continue

            if self.recycle_grace_seconds > 0:
                pending.add(marker)
                first_seen = self._missing_since.setdefault(marker, now)
                remaining = first_seen + self.recycle_grace_seconds - now
                if remaining > 0:
                    logger.info(f"Node '{pool.name}': owner '{owner}' of {address} is gone, recycling in {remaining:.1f}s")
                    requeue_after = remaining if requeue_after is None else min(requeue_after, remaining)
                    continue

            logger.info(f"Node '{pool.name}': owner '{owner}' of {address} no longer exists, recycling")
            pool.pool[address] = FREE
            recycled.append(address)

        # Owners that came back and recycled addresses stop being tracked
        freed = set(recycled)
        for marker in list(self._missing_since):
            if marker[0] == pool.name and (marker not in pending or marker[1] in freed):
                del self._missing_since[marker]

        return recycled, requeue_after, transient

    def forget_node(self, name: str) -> None:
        """Drops pending recycle timers of a deleted node."""
        for marker in [marker for marker in self._missing_since if marker[0] == name]:
            del self._missing_since[marker]

    def plan(self, current: NodeIPPool) -> Tuple[NodeIPPool, ReconcileResult, Optional[TransientError]]:
        """Computes the desired pool on a private copy without writing it."""
        pool = current.copy()
        result = ReconcileResult()
        try:
            result.expanded, result.exhausted = self.expand(pool)
        except MalformedData as e:
            logger.warning(f"Node '{pool.name}': skipping expansion, {e}")
        result.recycled, result.requeue_after, transient = self.recycle(pool)
        return pool, result, transient

    async def reconcile(self, current: NodeIPPool) -> ReconcileResult:
        """
        Expands and recycles one node pool, persisting any change.

        Args:
            current: The pool as read from the cache; it is not modified.

        Returns:
            What the reconcile did.

        Raises:
            TransientError: On write conflicts and I/O failures, or after
                writing the other changes when an owner lookup failed.
        """
        logger.debug(f"--- Starting reconciliation of node '{current.name}' (pool={len(current.pool)}, used={len(current.used)}) ---")
        dangling = current.dangling_used()
        if dangling:
            logger.warning(f"Node '{current.name}': addresses in use but missing from pool: {sorted(dangling)}")
        for owner, addresses in current.duplicate_owners().items():
            logger.warning(f"Node '{current.name}': owner '{owner}' holds several addresses: {addresses}")

        pool, result, transient = self.plan(current)

        if result.changed:
            await self.writer.write(current, pool)
            result.written = True
            logger.info(
                f"Node '{current.name}': updated pool, {len(result.expanded)} added, {len(result.recycled)} recycled"
            )
        else:
            logger.debug(f"Node '{current.name}' has enough addresses, nothing to update")

        if transient is not None:
            raise transient
        return result
