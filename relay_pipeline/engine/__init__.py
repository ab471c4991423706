"""Engine components shared by the dispatchers."""

from .workers import BoundedWorkerPool

__all__ = ["BoundedWorkerPool"]
