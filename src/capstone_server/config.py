"""Configuration types for the Capstone HTTP server.

Configuration is plain data: callers build a `Config` tree once at
startup and hand it to `create_server()`.  A missing sub-object always
means "feature off" -- nothing is silently enabled with empty settings.
The one exception is ``ServerConfig.cors = True``, which selects a fixed
permissive CORS policy.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

DEFAULT_GRAPHQL_PATH = "/api/graphql"
DEFAULT_HEALTH_CHECK_PATH = "/_healthcheck"
DEFAULT_MAX_FILE_SIZE = 200 * 1024 * 1024  # 200 MiB
DEFAULT_BODY_LIMIT = 100 * 1024  # 100 KiB

ENV_VAR = "CAPSTONE_ENV"


@dataclass(frozen=True)
class Environment:
    """Process-wide deployment signal, injected rather than read ad hoc."""

    production: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Environment:
        env = os.environ if environ is None else environ
        value = env.get(ENV_VAR) or env.get("ENV") or ""
        return cls(production=value.strip().lower() == "production")


# ------------------------------------------------------------------ #
# Server
# ------------------------------------------------------------------ #


@dataclass
class HealthCheckConfig:
    """Deprecated liveness endpoint settings."""

    path: str = DEFAULT_HEALTH_CHECK_PATH
    data: Mapping[str, Any] | Callable[[], Any] | None = None


@dataclass
class ServerConfig:
    cors: bool | dict[str, Any] | None = None
    health_check: bool | HealthCheckConfig | None = None
    extend_app: Callable[[Any, Any], Awaitable[None] | None] | None = None
    extend_http_server: Callable[[Any, Any, Any], None] | None = None
    max_file_size: int | None = None
    host: str = "127.0.0.1"
    port: int = 3000


# ------------------------------------------------------------------ #
# Storage
# ------------------------------------------------------------------ #


@dataclass
class ServerRoute:
    path: str


@dataclass
class StorageConfig:
    """One named collection of stored assets.

    Only ``kind="local"`` entries with a `server_route` are exposed over
    HTTP; other kinds are served by their own backend.
    """

    kind: str
    type: Literal["file", "image"]
    storage_path: str = ""
    server_route: ServerRoute | None = None


# ------------------------------------------------------------------ #
# GraphQL
# ------------------------------------------------------------------ #


PLAYGROUND_CUSTOM = "custom"


@dataclass
class BodyParserOptions:
    limit: int = DEFAULT_BODY_LIMIT
    strict: bool = True


@dataclass
class GraphQLConfig:
    debug: bool | None = None
    # True/False select the built-in landing page; "custom" leaves the
    # landing page entirely to `engine_options["plugins"]`.
    playground: bool | Literal["custom"] | None = None
    path: str = DEFAULT_GRAPHQL_PATH
    body_parser: BodyParserOptions | None = None
    engine_options: dict[str, Any] | None = None


@dataclass
class Config:
    server: ServerConfig | None = None
    graphql: GraphQLConfig | None = None
    storage: dict[str, StorageConfig] | None = None
