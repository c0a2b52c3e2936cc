"""Cloud node lifecycle and route reconciliation controllers, with their data model."""

__version__ = "0.1.0"
__all__ = ["model", "nodelifecycle", "route"]