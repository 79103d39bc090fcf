"""Prefix-mounted stages, CORS policy resolution and the health check.

`PathMount` gives the pipeline Express-style ``use(path, handler)``
semantics: a request whose path equals the mount path, or continues it
with ``/``, goes to the mounted endpoint and never reaches later stages.
Everything else falls through.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from capstone_server.config import DEFAULT_HEALTH_CHECK_PATH, HealthCheckConfig, ServerConfig

PERMISSIVE_CORS: dict[str, Any] = {
    # Reflects the request Origin, which credentialed requests require
    "allow_origin_regex": ".*",
    "allow_credentials": True,
    "allow_methods": ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
    "allow_headers": ["*"],
}


def match_prefix(scope: Scope, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    path = scope["path"]
    root_path = scope.get("root_path", "")
    if root_path and path.startswith(root_path):
        path = path[len(root_path) :]
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


class PathMount:
    """Middleware that short-circuits to `endpoint` for requests under `path`."""

    def __init__(self, app: ASGIApp, path: str, endpoint: ASGIApp) -> None:
        self.app = app
        self.path = path.rstrip("/")
        self.endpoint = endpoint

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not match_prefix(scope, self.path):
            await self.app(scope, receive, send)
            return

        child_scope = dict(scope)
        child_scope["root_path"] = scope.get("root_path", "") + self.path
        await self.endpoint(child_scope, receive, send)


# ------------------------------------------------------------------ #
# Access policy
# ------------------------------------------------------------------ #


def cors_options(server: ServerConfig | None) -> dict[str, Any] | None:
    """Keyword arguments for `CORSMiddleware`, or None when CORS is off.

    ``cors=True`` selects the permissive default; a mapping is used verbatim.
    """
    cors = server.cors if server else None
    if cors is None or cors is False:
        return None
    if cors is True:
        return dict(PERMISSIVE_CORS)
    return dict(cors)


# ------------------------------------------------------------------ #
# Health check (deprecated)
# ------------------------------------------------------------------ #


def health_check_config(server: ServerConfig | None) -> HealthCheckConfig | None:
    health_check = server.health_check if server else None
    if health_check is None or health_check is False:
        return None
    if health_check is True:
        return HealthCheckConfig()
    return health_check


class HealthCheckEndpoint:
    """JSON liveness endpoint.

    A callable ``data`` is invoked on every request; its exceptions are not
    caught here.
    """

    def __init__(self, data: Mapping[str, Any] | Callable[[], Any] | None = None) -> None:
        self.data = data

    def payload(self) -> Any:
        if callable(self.data):
            return self.data()
        if self.data is not None:
            return self.data
        return {"status": "pass", "timestamp": int(time.time() * 1000)}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = JSONResponse(self.payload())
        await response(scope, receive, send)


def health_check_path(config: HealthCheckConfig) -> str:
    return config.path or DEFAULT_HEALTH_CHECK_PATH
