import logging
from typing import Any, Mapping, Optional, Set

from . import config
from .binder import Binder, BindResult, PodAllocationRequest
from .cache import object_key
from .errors import MalformedData
from .pool import OwnerRef
from .selector import LabelSelector

logger = logging.getLogger(__name__)


def controlling_owner(pod: Mapping[str, Any]) -> Optional[OwnerRef]:
    """
    Returns the identity of the workload controlling a pod.

    The reference marked `controller: true` wins, otherwise the first one.

    Raises:
        MalformedData: If the owner reference lacks a kind or a name.
    """
    metadata = pod.get("metadata") or {}
    references = metadata.get("ownerReferences") or []
    if not references:
        return None
    reference = next((ref for ref in references if ref.get("controller")), references[0])
    return OwnerRef.create(metadata.get("namespace", ""), reference.get("kind", ""), reference.get("name", ""))


class PodHandler:
    """Decides whether a pod needs a pool address and hands it to the binder."""

    def __init__(
        self,
        binder: Binder,
        selector: Optional[LabelSelector] = None,
        bind_mode: str = config.BIND_MODE_RESERVE,
        annotation: str = config.IPAM_POD_ANNOTATION,
    ):
        self.binder = binder
        self.selector = selector or LabelSelector()
        self.bind_mode = bind_mode
        self.annotation = annotation
        # Pods reserved by this process that have not reported an address yet
        self._allocated: Set[str] = set()

    def wants_ipam(self, pod: Mapping[str, Any]) -> bool:
        metadata = pod.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        if not annotations.get(self.annotation):
            return False
        return self.selector.matches(metadata.get("labels"))

    def request_for(self, pod: Mapping[str, Any]) -> Optional[PodAllocationRequest]:
        """
        Builds the allocation request for a pod, or None if it needs no work.

        Raises:
            MalformedData: If the pod has no usable owner.
        """
        if not self.wants_ipam(pod):
            return None
        node_name = (pod.get("spec") or {}).get("nodeName")
        if not node_name:
            return None

        key = object_key(pod)
        owner = controlling_owner(pod)
        if owner is None:
            raise MalformedData(f"pod '{key}' has no owner to reserve an address for")
        pod_ip = (pod.get("status") or {}).get("podIP") or None
        return PodAllocationRequest(pod_key=key, node_name=node_name, owner=owner, pod_ip=pod_ip)

    async def handle(self, pod: Mapping[str, Any]) -> Optional[BindResult]:
        """
        Processes one pod event.

        Returns:
            The binding, or None if the pod needed no allocation.
        """
        request = self.request_for(pod)
        if request is None:
            return None

        if self.bind_mode == config.BIND_MODE_RESOLVED:
            if not request.has_address:
                return None
            return await self.binder.allocate(request)

        if request.has_address:
            # The dataplane has bound the pod, the reservation did its job
            self._allocated.discard(request.pod_key)
            return None
        if request.pod_key in self._allocated:
            return None

        result = await self.binder.allocate(request)
        self._allocated.add(request.pod_key)
        return result

    def forget(self, pod_key: str) -> None:
        self._allocated.discard(pod_key)
