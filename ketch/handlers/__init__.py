from ketch.handlers import app, probes

__all__ = [
    "app",
    "probes",
]
