"""Event transports between the transition engine and notification workers."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import PostgateConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(conf: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(
        host=conf.redis.host,
        port=conf.redis.port,
        db=conf.redis.db,
        password=conf.redis.password,
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[PostgateConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``POSTGATE_TRANSPORT`` or config.

    The in-memory transport only reaches workers in the same process.
    """
    conf = (config or load_config()).transport
    name = (backend or os.getenv("POSTGATE_TRANSPORT") or conf.backend).lower()
    if name == "inmemory":
        transport: BaseTransport = InMemoryTransport()
    elif name == "redis":
        transport = _redis_transport(conf)
    else:
        raise ValueError(f"Unsupported transport backend: {name}")
    logger.debug(f"Using {name} transport for topic {conf.topic}")
    return transport


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
