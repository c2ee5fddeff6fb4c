"""HTTP surface: routes, decision pipeline, headers and metrics."""

from forgeupdate.server.app import SERVER_KEY, UpdateServer, build_server, create_app
from forgeupdate.server.headers import CorsPolicy
from forgeupdate.server.metrics import ServerMetrics
from forgeupdate.server.runner import start_server, stop_server

__all__ = [
    "SERVER_KEY",
    "CorsPolicy",
    "ServerMetrics",
    "UpdateServer",
    "build_server",
    "create_app",
    "start_server",
    "stop_server",
]
