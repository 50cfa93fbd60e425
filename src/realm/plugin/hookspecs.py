"""Pluggy hook specifications for realm plugins.

All hooks use the "realm" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("realm")
hookimpl = pluggy.HookimplMarker("realm")


class RealmSpec:
    """Hook specifications for realm plugins."""

    @hookspec
    def realm_container_runtime(self) -> Any | None:
        """Provide a container runtime implementation.

        The returned object must satisfy ``realm.runtime.RuntimeProvider``:
            - name (str): runtime identifier (e.g., "nerdctl")
            - cli (str): container CLI command
            - is_available() -> bool
            - async ensure_running / inspect / create / start / stop /
              remove / attach / exec / run_oneshot

        For docker-compatible CLIs, return ``realm.runtime.ContainerRuntime(name, cli)``.

        Returns:
            Runtime object, or None if this plugin doesn't provide one.
        """
