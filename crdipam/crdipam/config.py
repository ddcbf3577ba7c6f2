import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .selector import LabelSelector

# Get log level from environment variable or default to INFO
CRDIPAM_LOG_LEVEL = os.environ.get("CRDIPAM_LOG_LEVEL", "INFO").upper()
# Get dependencies log level from environment variable or default to WARNING
DEPENDENCIES_LOG_LEVEL = os.environ.get("DEPENDENCIES_LOG_LEVEL", "WARNING").upper()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging() -> None:
    """Configures the root logger and the crdipam logger levels."""
    logging.basicConfig(
        level=getattr(logging, DEPENDENCIES_LOG_LEVEL, logging.WARNING),  # Set default level for all loggers
        format=LOG_FORMAT,
    )
    # Set specific level for crdipam loggers
    crdipam_logger = logging.getLogger("crdipam")
    crdipam_logger.setLevel(getattr(logging, CRDIPAM_LOG_LEVEL, logging.INFO))


# Annotation set by the admission webhook on pods that need a pool address
IPAM_POD_ANNOTATION = "io.cilium.cni/IPAM.crd"

# Resource kinds held by the cache
CILIUM_NODES = "ciliumnodes.cilium.io"
PODS = "pods"

BIND_MODE_RESERVE = "reserve"
BIND_MODE_RESOLVED = "resolved"
BIND_MODES = (BIND_MODE_RESERVE, BIND_MODE_RESOLVED)

DEFAULT_LOW_WATERMARK = 10
DEFAULT_EXPAND_STEP = 10
DEFAULT_BACKOFF_BASE_SECONDS = 0.005
DEFAULT_BACKOFF_MAX_SECONDS = 1000.0
DEFAULT_WATCH_RETRY_SECONDS = 10.0
DEFAULT_WRITE_TIMEOUT_SECONDS = 20.0
# Every cached CiliumNode is queued again at this interval
DEFAULT_RESYNC_SECONDS = 60.0


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


@dataclass
class Settings:
    """Runtime settings for the controller, read from the environment."""

    label_selector: LabelSelector = field(default_factory=LabelSelector)
    low_watermark: int = DEFAULT_LOW_WATERMARK
    expand_step: int = DEFAULT_EXPAND_STEP
    recycle_grace_seconds: float = 0.0
    bind_mode: str = BIND_MODE_RESERVE
    workers: int = 1
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    watch_retry_seconds: float = DEFAULT_WATCH_RETRY_SECONDS
    write_timeout_seconds: float = DEFAULT_WRITE_TIMEOUT_SECONDS
    resync_seconds: float = DEFAULT_RESYNC_SECONDS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Builds settings from CRDIPAM_* environment variables.

        Args:
            env: Mapping to read from, defaults to os.environ.

        Returns:
            The parsed settings.

        Raises:
            ValueError: If any variable holds an invalid value.
        """
        if env is None:
            env = os.environ

        bind_mode = env.get("CRDIPAM_BIND_MODE", BIND_MODE_RESERVE).strip().lower()
        if bind_mode not in BIND_MODES:
            raise ValueError(f"CRDIPAM_BIND_MODE must be one of {BIND_MODES}, got '{bind_mode}'")

        backoff_base = _float(env, "CRDIPAM_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS)
        backoff_max = _float(env, "CRDIPAM_BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS)
        if backoff_max < backoff_base:
            raise ValueError("CRDIPAM_BACKOFF_MAX_SECONDS must be >= CRDIPAM_BACKOFF_BASE_SECONDS")

        return cls(
            label_selector=LabelSelector.parse(env.get("CRDIPAM_LABEL_SELECTOR", "")),
            low_watermark=_int(env, "CRDIPAM_LOW_WATERMARK", DEFAULT_LOW_WATERMARK),
            expand_step=_int(env, "CRDIPAM_EXPAND_STEP", DEFAULT_EXPAND_STEP, minimum=1),
            recycle_grace_seconds=_float(env, "CRDIPAM_RECYCLE_GRACE_SECONDS", 0.0),
            bind_mode=bind_mode,
            workers=_int(env, "CRDIPAM_WORKERS", 1, minimum=1),
            backoff_base_seconds=backoff_base,
            backoff_max_seconds=backoff_max,
            watch_retry_seconds=_float(env, "CRDIPAM_WATCH_RETRY_SECONDS", DEFAULT_WATCH_RETRY_SECONDS),
            write_timeout_seconds=_float(env, "CRDIPAM_WRITE_TIMEOUT_SECONDS", DEFAULT_WRITE_TIMEOUT_SECONDS),
            resync_seconds=_float(env, "CRDIPAM_RESYNC_SECONDS", DEFAULT_RESYNC_SECONDS),
        )
