"""Transport factory for the event relay."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PhaseflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[PhaseflowConfig] = None
) -> Optional[BaseTransport]:
    """Return the configured event transport, or ``None`` when relaying is off."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("PHASEFLOW_EVENTS_BACKEND")
        or config.events.backend
    ).lower()

    if backend == "none":
        return None
    elif backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.events.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            max_len=redis_conf.stream_max_len,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
