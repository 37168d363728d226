"""Adapter modules for external integrations."""

from .api import ApiClient, ApiError
from .push import PushChannel, PushProtocolError, PushStatus, build_socket_url

__all__ = [
    "ApiClient",
    "ApiError",
    "PushChannel",
    "PushProtocolError",
    "PushStatus",
    "build_socket_url",
]
