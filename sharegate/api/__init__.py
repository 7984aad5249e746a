"""HTTP route layer."""

from .server import ShareGateApi, create_app

__all__ = ["ShareGateApi", "create_app"]
