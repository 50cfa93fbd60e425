"""realm: sandboxed container sessions over isolated git clones."""

__version__ = "0.1.0"
