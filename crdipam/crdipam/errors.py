class IPAMError(Exception):
    """Base class for all crdipam errors."""


class NotFound(IPAMError):
    """The requested object does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} '{key}' not found")
        self.kind = kind
        self.key = key


class TransientError(IPAMError):
    """A failure that may succeed when retried."""


class Conflict(TransientError):
    """The stored object changed since it was read."""


class TransientIOError(TransientError):
    """The control plane could not be reached or timed out."""


class CacheNotSynced(TransientError):
    """The cache has not completed its initial list for a kind."""

    def __init__(self, kind: str):
        super().__init__(f"cache for '{kind}' has not synced yet")
        self.kind = kind


class MalformedData(IPAMError):
    """Input that can never be processed; retrying will not help."""


class MalformedIdentity(MalformedData):
    """An owner identity string that is not '<namespace>/<kind>/<name>'."""

    def __init__(self, identity: str):
        super().__init__(f"invalid owner identity '{identity}'")
        self.identity = identity


class PoolExhausted(IPAMError):
    """No free address is left in a node pool."""

    def __init__(self, node: str):
        super().__init__(f"no free address left in pool of node '{node}'")
        self.node = node
