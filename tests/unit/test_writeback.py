import asyncio
import ipaddress
from unittest.mock import AsyncMock, MagicMock

import httpx
import kr8s
import pytest

from crdipam.errors import Conflict, NotFound, TransientIOError
from crdipam.pool import FREE, AllocationRecord, NodeIPPool, OwnerRef
from crdipam.writeback import PoolWriter


def writer_with(patch):
    node = MagicMock()
    node.patch = patch
    factory = AsyncMock(return_value=node)
    return PoolWriter(timeout=0.05, resource_factory=factory), factory


def changed_pool(make_node):
    original = NodeIPPool.from_resource(
        make_node(pool={"10.244.1.1": "ns/Job/x", "10.244.1.2": None}, resource_version="7")
    )
    mutated = original.copy()
    mutated.pool[ipaddress.ip_address("10.244.1.1")] = FREE
    mutated.pool[ipaddress.ip_address("10.244.1.2")] = AllocationRecord(OwnerRef.parse("ns/StatefulSet/db"))
    return original, mutated


@pytest.mark.asyncio
async def test_write_sends_merge_patch_with_resource_version(make_node):
    patch = AsyncMock()
    writer, factory = writer_with(patch)
    original, mutated = changed_pool(make_node)

    assert await writer.write(original, mutated)

    factory.assert_awaited_once_with({"metadata": {"name": "node-a"}})
    patch.assert_awaited_once_with(
        {
            "spec": {
                "ipam": {
                    "pool": {
                        "10.244.1.1": {"owner": None, "resource": None},
                        "10.244.1.2": {"owner": "ns/StatefulSet/db", "resource": "ns/StatefulSet/db"},
                    }
                }
            },
            "metadata": {"resourceVersion": "7"},
        }
    )


@pytest.mark.asyncio
async def test_nothing_to_write(make_node):
    patch = AsyncMock()
    writer, factory = writer_with(patch)
    original = NodeIPPool.from_resource(make_node(pool={"10.244.1.1": None}))

    assert not await writer.write(original, original.copy())

    factory.assert_not_awaited()
    patch.assert_not_awaited()


@pytest.mark.parametrize(
    "error, expected",
    [
        (kr8s.ServerError("conflict", response=httpx.Response(409)), Conflict),
        (kr8s.ServerError("gone", response=httpx.Response(404)), NotFound),
        (kr8s.ServerError("unavailable", response=httpx.Response(503)), TransientIOError),
        (kr8s.NotFoundError("gone"), NotFound),
        (httpx.ConnectError("refused"), TransientIOError),
        (ConnectionResetError("reset"), TransientIOError),
    ],
)
@pytest.mark.asyncio
async def test_write_errors_are_mapped(make_node, error, expected):
    writer, _ = writer_with(AsyncMock(side_effect=error))
    original, mutated = changed_pool(make_node)

    with pytest.raises(expected):
        await writer.write(original, mutated)


@pytest.mark.asyncio
async def test_write_timeout_is_transient(make_node):
    async def slow_patch(patch):
        await asyncio.sleep(1)

    writer, _ = writer_with(slow_patch)
    original, mutated = changed_pool(make_node)

    with pytest.raises(TransientIOError):
        await writer.write(original, mutated)
