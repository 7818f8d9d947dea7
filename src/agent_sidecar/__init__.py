"""Agent sidecar: a stdin/stdout JSON broker in front of an agent engine."""

__version__ = "0.1.0"

__all__ = ["__version__"]
