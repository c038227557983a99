from .base import BaseResource
from .store import ClusterStore
from .app import App
from .framework import Framework

__all__ = [
    "BaseResource",
    "ClusterStore",
    "App",
    "Framework",
]
