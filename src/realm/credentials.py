"""SSH agent forwarding: expose the host agent socket inside a container.

Two strategies. The orchestrator picks one from the runtime's ``vm_bridged``
flag. Callers that pass no platform get a single host-platform detection call:

* **VM-bridged** (Docker Desktop, OrbStack): containers run inside a VM.
  Unix sockets cannot cross the VM boundary, so mounting the host's
  ``$SSH_AUTH_SOCK`` (e.g. 1Password's agent) does not work. Docker Desktop
  and OrbStack expose a VM-internal socket at a fixed path that forwards to
  the host agent.
* **Host socket** (native Linux engines, podman): the socket named by
  ``$SSH_AUTH_SOCK`` is bind-mounted directly.

Forwarding is never fatal: no agent means the session runs without it.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, Protocol

from realm.logger import logger
from realm.runtime import RuntimeProvider
from realm.types import ForwardingPlan

CONTAINER_SOCKET = "/run/host-services/ssh-auth.sock"
VM_BRIDGED_HOST_SOCKET = "/run/host-services/ssh-auth.sock"

HostPlatform = Literal["vm-bridged", "native"]


def detect_host_platform(system: str | None = None) -> HostPlatform:
    """Classify the host: does the container runtime sit behind a VM?"""
    system = system or sys.platform
    return "vm-bridged" if system in ("darwin", "win32") else "native"


class SocketStrategy(Protocol):
    def locate(self, environ: Mapping[str, str]) -> ForwardingPlan | None: ...


@dataclass(frozen=True)
class VmBridgedSocket:
    host_socket: str = VM_BRIDGED_HOST_SOCKET

    def locate(self, environ: Mapping[str, str]) -> ForwardingPlan | None:
        # The socket lives inside the runtime's VM; it can't be checked from the host.
        return ForwardingPlan(self.host_socket, CONTAINER_SOCKET, vm_bridged=True)


@dataclass(frozen=True)
class HostAgentSocket:
    def locate(self, environ: Mapping[str, str]) -> ForwardingPlan | None:
        host = environ.get("SSH_AUTH_SOCK")
        if not host:
            logger.info("SSH_AUTH_SOCK is not set; SSH agent forwarding disabled")
            return None
        if not os.path.exists(host):
            logger.warning("SSH agent socket does not exist; forwarding disabled", socket=host)
            return None
        return ForwardingPlan(host, CONTAINER_SOCKET, vm_bridged=False)


_STRATEGIES: dict[HostPlatform, SocketStrategy] = {
    "vm-bridged": VmBridgedSocket(),
    "native": HostAgentSocket(),
}


def resolve(
    enabled: bool = True,
    *,
    platform: HostPlatform | None = None,
    environ: Mapping[str, str] | None = None,
) -> ForwardingPlan | None:
    """Build the forwarding plan for this host, or None when disabled/unavailable."""
    if not enabled:
        logger.debug("SSH agent forwarding disabled by caller")
        return None
    strategy = _STRATEGIES[platform or detect_host_platform()]
    return strategy.locate(os.environ if environ is None else environ)


async def fix_socket_permissions(runtime: RuntimeProvider, image: str, plan: ForwardingPlan) -> None:
    """Make the VM-internal socket usable by non-root container users.

    OrbStack creates the forwarded socket with mode 0660. A one-shot root
    container loosens it. Failures are logged and ignored.
    """
    if not plan.vm_bridged:
        return
    try:
        result = await runtime.run_oneshot(
            [
                "--user",
                "root",
                "--entrypoint",
                "chmod",
                "-v",
                f"{plan.container_socket}:{plan.container_socket}",
                image,
                "666",
                plan.container_socket,
            ]
        )
    except Exception as exc:
        logger.debug("SSH socket permission fix failed", err=str(exc))
        return
    if not result.ok:
        logger.debug("SSH socket permission fix failed", err=result.diagnostic)
