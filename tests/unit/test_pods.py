import ipaddress

import pytest

from crdipam import config
from crdipam.binder import Binder
from crdipam.errors import MalformedData
from crdipam.pods import PodHandler, controlling_owner
from crdipam.pool import OwnerRef
from crdipam.selector import LabelSelector


def build_pod(
    name="db-0",
    node="node-a",
    annotated=True,
    labels=None,
    owners=({"kind": "StatefulSet", "name": "db", "controller": True},),
    pod_ip=None,
):
    annotations = {config.IPAM_POD_ANNOTATION: "static"} if annotated else {}
    pod = {
        "metadata": {
            "namespace": "ns",
            "name": name,
            "annotations": annotations,
            "labels": labels or {},
            "ownerReferences": list(owners),
        },
        "spec": {"nodeName": node} if node else {},
        "status": {"podIP": pod_ip} if pod_ip else {},
    }
    return pod


@pytest.fixture
def handler(cache, writer, make_node):
    cache.upsert(config.CILIUM_NODES, make_node(pool={"10.244.1.1": None, "10.244.1.2": None}))
    return PodHandler(Binder(cache, writer))


def test_controlling_owner_prefers_controller():
    pod = build_pod(
        owners=(
            {"kind": "ConfigMap", "name": "cfg"},
            {"kind": "ReplicaSet", "name": "web-5d4f", "controller": True},
        )
    )

    assert controlling_owner(pod) == OwnerRef.parse("ns/ReplicaSet/web-5d4f")
    assert controlling_owner(build_pod(owners=())) is None


@pytest.mark.asyncio
async def test_pods_without_annotation_are_ignored(handler, writer):
    assert await handler.handle(build_pod(annotated=False)) is None
    assert writer.writes == []


@pytest.mark.asyncio
async def test_selector_filters_pods(cache, writer, make_node):
    cache.upsert(config.CILIUM_NODES, make_node(pool={"10.244.1.1": None}))
    handler = PodHandler(Binder(cache, writer), LabelSelector(match_labels={"noStatic": "true"}))

    assert await handler.handle(build_pod()) is None
    result = await handler.handle(build_pod(labels={"noStatic": "true"}))

    assert result.address == ipaddress.ip_address("10.244.1.1")


@pytest.mark.asyncio
async def test_unscheduled_pods_are_ignored(handler, writer):
    assert await handler.handle(build_pod(node=None)) is None
    assert writer.writes == []


@pytest.mark.asyncio
async def test_unowned_pod_is_malformed(handler):
    with pytest.raises(MalformedData):
        await handler.handle(build_pod(owners=()))


@pytest.mark.asyncio
async def test_reserve_mode_memoizes_allocation(handler, writer, cache, make_node):
    result = await handler.handle(build_pod())
    assert result.address == ipaddress.ip_address("10.244.1.1")

    # A pool change that hides the reservation does not trigger a second allocation
    cache.upsert(config.CILIUM_NODES, make_node(pool={"10.244.1.1": None, "10.244.1.2": None}, resource_version="9"))
    assert await handler.handle(build_pod()) is None
    assert len(writer.writes) == 1

    # Once the pod reports its address the memo is cleared
    assert await handler.handle(build_pod(pod_ip="10.244.1.1")) is None
    result = await handler.handle(build_pod())
    assert result.changed
    assert len(writer.writes) == 2


@pytest.mark.asyncio
async def test_forget_clears_memo(handler, writer):
    await handler.handle(build_pod())
    handler.forget("ns/db-0")

    result = await handler.handle(build_pod())

    assert not result.changed
    assert len(writer.writes) == 1


@pytest.mark.asyncio
async def test_resolved_mode_binds_reported_address(cache, writer, make_node):
    cache.upsert(config.CILIUM_NODES, make_node(pool={"10.244.1.1": None, "10.244.1.2": None}))
    handler = PodHandler(Binder(cache, writer), bind_mode=config.BIND_MODE_RESOLVED)

    assert await handler.handle(build_pod()) is None
    result = await handler.handle(build_pod(pod_ip="10.244.1.2"))

    assert result.address == ipaddress.ip_address("10.244.1.2")
    _, written = writer.writes[0]
    assert written.pool[ipaddress.ip_address("10.244.1.2")].owner == OwnerRef.parse("ns/StatefulSet/db")
