"""Durable session state."""

from realm.state.registry import SessionRegistry, get_registry

__all__ = ["SessionRegistry", "get_registry"]
