"""Plugin system for realm.

Plugins can contribute additional container runtimes. Built on pluggy;
third-party plugins register under the ``realm`` entry-point group.

Usage:
    from realm.plugin import get_plugin_manager

    pm = get_plugin_manager()
    runtimes = pm.hook.realm_container_runtime()
"""

from __future__ import annotations

import pluggy

from realm.logger import logger
from realm.plugin.hookspecs import RealmSpec, hookimpl

__all__ = [
    "get_plugin_manager",
    "hookimpl",
    "reset_plugin_manager",
]

_pm: pluggy.PluginManager | None = None


def get_plugin_manager() -> pluggy.PluginManager:
    """Create (once) and return the plugin manager.

    Hook specifications are validated when each plugin registers, so a
    malformed plugin fails loudly here rather than at call time.
    """
    global _pm
    if _pm is not None:
        return _pm

    pm = pluggy.PluginManager("realm")
    pm.add_hookspecs(RealmSpec)
    try:
        loaded = pm.load_setuptools_entrypoints("realm")
    except Exception:
        logger.exception("Failed to load realm plugins from entry points")
        loaded = 0
    if loaded:
        logger.info("Loaded realm plugins", count=loaded)
    _pm = pm
    return pm


def reset_plugin_manager() -> None:
    """Drop the cached manager (for tests)."""
    global _pm
    _pm = None
