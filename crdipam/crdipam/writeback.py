import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import kr8s

from . import config
from .errors import Conflict, NotFound, TransientIOError
from .kr8s_objects import CiliumNode
from .pool import NodeIPPool

logger = logging.getLogger(__name__)

ResourceFactory = Callable[[Dict[str, Any]], Awaitable[Any]]


def _status_code(error: kr8s.ServerError) -> Optional[int]:
    response = getattr(error, "response", None)
    if response is not None:
        return response.status_code
    status = getattr(error, "status", None)
    if isinstance(status, dict):
        return status.get("code")
    return None


class PoolWriter:
    """
    Persists pool changes to the CiliumNode with optimistic concurrency.

    The merge patch carries the resourceVersion the pool was read at, so the
    API server refuses it if anyone else wrote the node in between.
    """

    def __init__(
        self,
        timeout: float = config.DEFAULT_WRITE_TIMEOUT_SECONDS,
        resource_factory: ResourceFactory = CiliumNode,
    ):
        self.timeout = timeout
        self.resource_factory = resource_factory

    @staticmethod
    def build_patch(original: NodeIPPool, mutated: NodeIPPool) -> Dict[str, Any]:
        patch: Dict[str, Any] = {"spec": {"ipam": {"pool": mutated.pool_patch(original)}}}
        if original.resource_version:
            patch["metadata"] = {"resourceVersion": original.resource_version}
        return patch

    async def write(self, original: NodeIPPool, mutated: NodeIPPool) -> bool:
        """
        Writes the entries of `mutated` that differ from `original`.

        Args:
            original: The pool as it was read.
            mutated: The private copy holding the changes.

        Returns:
            False when there was nothing to write.

        Raises:
            Conflict: If the node changed since it was read.
            NotFound: If the node was deleted.
            TransientIOError: On connection errors, timeouts and server errors.
        """
        patch = self.build_patch(original, mutated)
        if not patch["spec"]["ipam"]["pool"]:
            return False

        try:
            node = await self.resource_factory({"metadata": {"name": original.name}})
            await asyncio.wait_for(node.patch(patch), self.timeout)
        except kr8s.NotFoundError:
            raise NotFound(config.CILIUM_NODES, original.name)
        except kr8s.ServerError as e:
            code = _status_code(e)
            if code == 409:
                raise Conflict(f"CiliumNode '{original.name}' changed since version {original.resource_version}")
            if code == 404:
                raise NotFound(config.CILIUM_NODES, original.name)
            raise TransientIOError(f"Updating CiliumNode '{original.name}' failed ({code}): {e}")
        except asyncio.TimeoutError:
            raise TransientIOError(f"Updating CiliumNode '{original.name}' timed out after {self.timeout}s")
        except (httpx.TransportError, ConnectionError) as e:
            raise TransientIOError(f"Updating CiliumNode '{original.name}' failed: {e}")

        logger.debug(f"Patched CiliumNode '{original.name}' with {len(patch['spec']['ipam']['pool'])} pool entries")
        return True
