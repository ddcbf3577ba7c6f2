import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

import kr8s

from . import config
from .errors import CacheNotSynced, NotFound

logger = logging.getLogger(__name__)

KeyHandler = Callable[[str], None]


def object_key(raw: Mapping[str, Any]) -> str:
    """Returns 'namespace/name' for namespaced objects and 'name' otherwise."""
    metadata = raw.get("metadata") or {}
    name = metadata.get("name", "")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


class ResourceCache:
    """
    Local, eventually consistent copy of the watched resources.

    Every kind is listed once, then watched. Handlers registered for a kind
    receive the key of each added or modified object, never the object, so
    workers always read the latest copy back from the cache. Objects returned
    by `get` are shared and must not be modified.
    """

    def __init__(self, kinds: Iterable[str], watch_retry_seconds: float = config.DEFAULT_WATCH_RETRY_SECONDS):
        self.kinds: List[str] = list(kinds)
        self.watch_retry_seconds = watch_retry_seconds
        self._stores: Dict[str, Dict[str, Mapping[str, Any]]] = {kind: {} for kind in self.kinds}
        self._synced: Dict[str, asyncio.Event] = {kind: asyncio.Event() for kind in self.kinds}
        self._handlers: Dict[str, List[KeyHandler]] = defaultdict(list)
        self._delete_handlers: Dict[str, List[KeyHandler]] = defaultdict(list)
        self._tasks: List[asyncio.Task] = []

    def _store(self, kind: str) -> Dict[str, Mapping[str, Any]]:
        try:
            return self._stores[kind]
        except KeyError:
            raise ValueError(f"Kind '{kind}' is not cached")

    def add_handler(self, kind: str, handler: KeyHandler) -> None:
        """Registers a callback receiving the key of every added or modified object."""
        self._store(kind)
        self._handlers[kind].append(handler)

    def add_delete_handler(self, kind: str, handler: KeyHandler) -> None:
        """Registers a callback receiving the key of every deleted object."""
        self._store(kind)
        self._delete_handlers[kind].append(handler)

    def is_synced(self, kind: str) -> bool:
        return self._synced[kind].is_set()

    def mark_synced(self, kind: str) -> None:
        self._store(kind)
        self._synced[kind].set()

    def get(self, kind: str, key: str) -> Mapping[str, Any]:
        """
        Returns the cached object.

        Raises:
            CacheNotSynced: If the kind has not been listed yet.
            NotFound: If the object does not exist.
        """
        store = self._store(kind)
        if not self.is_synced(kind):
            raise CacheNotSynced(kind)
        obj = store.get(key)
        if obj is None:
            raise NotFound(kind, key)
        return obj

    def keys(self, kind: str) -> List[str]:
        return sorted(self._store(kind))

    def upsert(self, kind: str, raw: Mapping[str, Any]) -> str:
        key = object_key(raw)
        self._store(kind)[key] = raw
        for handler in self._handlers[kind]:
            handler(key)
        return key

    def remove(self, kind: str, key: str) -> None:
        if self._store(kind).pop(key, None) is None:
            return
        for handler in self._delete_handlers[kind]:
            handler(key)

    def apply_event(self, kind: str, event: str, raw: Mapping[str, Any]) -> None:
        if event in ("ADDED", "MODIFIED"):
            self.upsert(kind, raw)
        elif event == "DELETED":
            self.remove(kind, object_key(raw))
        else:
            logger.debug(f"Ignoring '{event}' event for {kind}")

    async def _list(self, kind: str) -> None:
        listed: Dict[str, Mapping[str, Any]] = {}
        async for obj in kr8s.asyncio.get(kind, namespace=kr8s.ALL):
            listed[object_key(obj.raw)] = obj.raw
        for key in set(self._store(kind)) - set(listed):
            self.remove(kind, key)
        for raw in listed.values():
            self.upsert(kind, raw)
        if not self.is_synced(kind):
            logger.info(f"Cache for '{kind}' synced with {len(listed)} objects")
        self.mark_synced(kind)

    async def _run(self, kind: str) -> None:
        """Lists then watches a kind, relisting after every watch failure."""
        while True:
            try:
                await self._list(kind)
                async for evt, obj in kr8s.asyncio.watch(kind, namespace=kr8s.ALL):
                    self.apply_event(kind, evt, obj.raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Error in '{kind}' watch loop: {e}. Reconnecting in {self.watch_retry_seconds} seconds.")
                await asyncio.sleep(self.watch_retry_seconds)

    async def start(self, timeout: Optional[float] = None) -> None:
        """Starts a watch task per kind and waits until every kind has synced."""
        for kind in self.kinds:
            self._tasks.append(asyncio.create_task(self._run(kind), name=f"watch-{kind}"))
        await asyncio.wait_for(
            asyncio.gather(*(event.wait() for event in self._synced.values())),
            timeout,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)
