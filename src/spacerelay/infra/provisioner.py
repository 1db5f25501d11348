"""Provisioning of the machine a capture session runs on.

Only the interface and a local no-op implementation live here; cloud
providers plug in by implementing ``Provisioner``.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class InfraHandle:
    """A provisioned (or local) machine."""

    provider: str
    host: str
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Provisioner(Protocol):
    """Acquire and release a machine for one session."""

    async def acquire(self, session_id: str) -> InfraHandle:
        """Provision (or reuse) a machine for ``session_id``."""
        ...

    async def release(self, handle: InfraHandle) -> None:
        """Tear the machine down, or keep it if configured to."""
        ...


class LocalProvisioner:
    """Runs everything on the current host."""

    async def acquire(self, session_id: str) -> InfraHandle:
        handle = InfraHandle(provider="local", host=socket.gethostname(), details={"session_id": session_id})
        logger.debug("Using local host %s for session %s", handle.host, session_id)
        return handle

    async def release(self, handle: InfraHandle) -> None:
        logger.debug("Released local host %s", handle.host)


def get_provisioner(settings: Any) -> Provisioner:
    """Return the provisioner named by ``settings.infra.provider``."""
    provider = settings.infra.provider
    if provider == "local":
        return LocalProvisioner()
    raise ValueError(f"Unknown infra provider {provider!r}")
