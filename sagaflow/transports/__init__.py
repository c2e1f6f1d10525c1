"""Lifecycle event transports."""

from __future__ import annotations

from typing import Optional

from ..config import SagaflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, else by ``config.transport``.

    ``SAGAFLOW_TRANSPORT`` reaches this through :func:`load_config`.
    """
    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        settings = config.transport.redis
        return RedisTransport(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            prefix=settings.prefix,
        )
    raise ValueError(f"Unsupported transport backend: {name}")


def lifecycle_transport(config: SagaflowConfig) -> Optional[BaseTransport]:
    """Transport the engine should publish to, or ``None`` to keep events local.

    An in-memory transport cannot reach another process, so only an
    external broker is worth publishing to.
    """
    if config.transport.backend == "inmemory":
        return None
    return get_transport(config=config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "lifecycle_transport"]
