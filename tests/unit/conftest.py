import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from crdipam import config
from crdipam.cache import ResourceCache
from crdipam.errors import Conflict
from crdipam.pool import OWNER_RESOURCES, NodeIPPool
from crdipam.writeback import PoolWriter


def build_node(
    name: str = "node-a",
    cidrs: Iterable[str] = ("10.244.1.0/24",),
    pool: Optional[Dict[str, Optional[str]]] = None,
    used: Iterable[str] = (),
    resource_version: str = "1",
) -> dict:
    """Raw CiliumNode with `pool` mapping address -> owner identity (None for free)."""
    entries = {}
    for address, owner in (pool or {}).items():
        entries[address] = {"owner": owner, "resource": owner} if owner else {}
    return {
        "apiVersion": "cilium.io/v2",
        "kind": "CiliumNode",
        "metadata": {"name": name, "resourceVersion": resource_version},
        "spec": {"ipam": {"podCIDRs": list(cidrs), "pool": entries}},
        "status": {"ipam": {"used": {address: {"resource": "ep"} for address in used}}},
    }


def build_owner(kind_resource: str, namespace: str, name: str) -> dict:
    return {"metadata": {"namespace": namespace, "name": name}, "kind": kind_resource}


class RecordingWriter(PoolWriter):
    """Records writes and, with a cache, stores the result like the watch would."""

    def __init__(self, cache: Optional[ResourceCache] = None):
        super().__init__()
        self.cache = cache
        self.writes: List[tuple] = []

    @staticmethod
    def render(original: NodeIPPool, mutated: NodeIPPool) -> dict:
        return build_node(
            name=mutated.name,
            cidrs=mutated.pod_cidrs,
            pool={str(a): (str(r.owner) if r.owner else None) for a, r in mutated.pool.items()},
            used=[str(a) for a in mutated.used],
            resource_version=str(int(original.resource_version or "0") + 1),
        )

    async def write(self, original: NodeIPPool, mutated: NodeIPPool) -> bool:
        self.writes.append((original, mutated))
        if self.cache is not None:
            self.cache.upsert(config.CILIUM_NODES, self.render(original, mutated))
        return True


class VersionedWriter(RecordingWriter):
    """
    Keeps the stored copy of each node and rejects writes based on an older
    resourceVersion, like the API server does.

    With `publish=False` the cache only sees stored copies after `catch_up()`.
    `latency` suspends each write before it is committed so workers interleave.
    """

    def __init__(self, cache: ResourceCache, publish: bool = True, latency: float = 0.0):
        super().__init__(cache)
        self.publish = publish
        self.latency = latency
        self.stored: Dict[str, dict] = {}
        self.conflicts = 0

    async def write(self, original: NodeIPPool, mutated: NodeIPPool) -> bool:
        await asyncio.sleep(self.latency)
        latest = self.stored.get(original.name)
        if latest is not None and latest["metadata"]["resourceVersion"] != original.resource_version:
            self.conflicts += 1
            raise Conflict(f"CiliumNode '{original.name}' changed since version {original.resource_version}")
        self.writes.append((original, mutated))
        self.stored[original.name] = self.render(original, mutated)
        if self.publish:
            self.cache.upsert(config.CILIUM_NODES, self.stored[original.name])
        return True

    def catch_up(self) -> None:
        for raw in self.stored.values():
            self.cache.upsert(config.CILIUM_NODES, raw)


@pytest.fixture
def make_node():
    return build_node


@pytest.fixture
def cache() -> ResourceCache:
    cache = ResourceCache([config.CILIUM_NODES, config.PODS, *OWNER_RESOURCES])
    for kind in cache.kinds:
        cache.mark_synced(kind)
    return cache


@pytest.fixture
def writer(cache: ResourceCache) -> RecordingWriter:
    return RecordingWriter(cache)
