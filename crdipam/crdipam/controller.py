import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from . import config
from .binder import Binder
from .cache import ResourceCache
from .errors import Conflict, MalformedData, NotFound, PoolExhausted, TransientError
from .ipam import PoolReconciler
from .pods import PodHandler
from .pool import OWNER_RESOURCES, NodeIPPool
from .workqueue import ExponentialBackoff, RateLimitingQueue
from .writeback import PoolWriter

logger = logging.getLogger(__name__)

# Returns seconds after which the key should be processed again, if any
Processor = Callable[[str], Awaitable[Optional[float]]]


async def process_next(queue: RateLimitingQueue, process: Processor) -> bool:
    """
    Processes one key from the queue.

    Every failure ends in either a rate limited requeue or a logged drop,
    nothing escapes to the worker loop.

    Returns:
        False once the queue has shut down.
    """
    key, shutdown = await queue.get()
    if shutdown:
        return False
    try:
        requeue_after = await process(key)
    except MalformedData as e:
        logger.warning(f"Queue '{queue.name}': dropping '{key}': {e}")
        queue.forget(key)
    except NotFound as e:
        logger.info(f"Queue '{queue.name}': dropping '{key}': {e}")
        queue.forget(key)
    except Conflict as e:
        logger.info(f"Queue '{queue.name}': write conflict for '{key}', retrying: {e}")
        queue.add_rate_limited(key)
    except (TransientError, PoolExhausted) as e:
        logger.warning(f"Queue '{queue.name}': retrying '{key}' (attempt {queue.num_requeues(key) + 1}): {e}")
        queue.add_rate_limited(key)
    except Exception:
        logger.exception(f"Queue '{queue.name}': unexpected error processing '{key}', retrying")
        queue.add_rate_limited(key)
    else:
        queue.forget(key)
        if requeue_after is not None:
            queue.add_after(key, requeue_after)
    finally:
        queue.done(key)
    return True


async def worker(queue: RateLimitingQueue, process: Processor) -> None:
    """Pulls keys until the queue shuts down."""
    while await process_next(queue, process):
        pass
    logger.info(f"Queue '{queue.name}' shut down, worker exiting")


class Controller:
    """Connects the cache to the node and pod queues and runs their workers."""

    def __init__(
        self,
        cache: ResourceCache,
        reconciler: PoolReconciler,
        pod_handler: PodHandler,
        workers: int = 1,
        backoff_base: float = config.DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max: float = config.DEFAULT_BACKOFF_MAX_SECONDS,
        resync_seconds: float = config.DEFAULT_RESYNC_SECONDS,
    ):
        self.cache = cache
        self.reconciler = reconciler
        self.pod_handler = pod_handler
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.node_queue = RateLimitingQueue("ciliumnode", ExponentialBackoff(backoff_base, backoff_max))
        self.pod_queue = RateLimitingQueue("pod", ExponentialBackoff(backoff_base, backoff_max))
        self._tasks: List[asyncio.Task] = []
        self._resync_task: Optional[asyncio.Task] = None

        cache.add_handler(config.CILIUM_NODES, self.node_queue.add)
        cache.add_delete_handler(config.CILIUM_NODES, reconciler.forget_node)
        cache.add_handler(config.PODS, self.pod_queue.add)
        # Pod deletions are not queued, they only clear the allocation memo
        cache.add_delete_handler(config.PODS, pod_handler.forget)
        # A deleted owner may hold an address on any node
        for resource in OWNER_RESOURCES:
            if resource in cache.kinds:
                cache.add_delete_handler(resource, self._owner_deleted)

    @classmethod
    def from_settings(cls, settings: config.Settings) -> "Controller":
        cache = ResourceCache(
            [config.CILIUM_NODES, config.PODS, *OWNER_RESOURCES],
            watch_retry_seconds=settings.watch_retry_seconds,
        )
        writer = PoolWriter(timeout=settings.write_timeout_seconds)
        return cls(
            cache,
            PoolReconciler.from_settings(settings, cache, writer),
            PodHandler(Binder(cache, writer), settings.label_selector, settings.bind_mode),
            workers=settings.workers,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            resync_seconds=settings.resync_seconds,
        )

    def _owner_deleted(self, key: str) -> None:
        logger.debug(f"Owner '{key}' deleted, queueing all nodes for recycling")
        self.resync()

    def resync(self) -> None:
        """Queues every cached CiliumNode."""
        for key in self.cache.keys(config.CILIUM_NODES):
            self.node_queue.add(key)

    async def _resync_loop(self) -> None:
        while not self.node_queue.shutting_down:
            await asyncio.sleep(self.resync_seconds)
            logger.debug("Periodic resync of all nodes")
            self.resync()

    async def process_node(self, key: str) -> Optional[float]:
        current = NodeIPPool.from_resource(self.cache.get(config.CILIUM_NODES, key))
        result = await self.reconciler.reconcile(current)
        return result.requeue_after

    async def process_pod(self, key: str) -> Optional[float]:
        pod = self.cache.get(config.PODS, key)
        try:
            await self.pod_handler.handle(pod)
        except PoolExhausted as e:
            # Let the node reconciler re-check the pool; it only expands
            # while free addresses are at or below the low watermark
            self.node_queue.add(e.node)
            raise
        return None

    def start(self) -> List[asyncio.Task]:
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(worker(self.node_queue, self.process_node), name=f"node-worker-{i}"))
            self._tasks.append(asyncio.create_task(worker(self.pod_queue, self.process_pod), name=f"pod-worker-{i}"))
        if self.resync_seconds > 0:
            self._resync_task = asyncio.create_task(self._resync_loop(), name="node-resync")
        return list(self._tasks)

    async def stop(self) -> None:
        self.node_queue.shutdown()
        self.pod_queue.shutdown()
        if self._resync_task is not None:
            self._resync_task.cancel()
            await asyncio.gather(self._resync_task, return_exceptions=True)
            self._resync_task = None
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
