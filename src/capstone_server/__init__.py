"""Capstone HTTP server -- GraphQL API, CORS, uploads and stored-file delivery.

Assembles a single ASGI application from a `Config`:
- CORS policy (``server.cors``)
- deprecated health check (``server.health_check``)
- extension hooks (``server.extend_app``, ``server.extend_http_server``)
- static routes for local storage (``storage``)
- GraphQL multipart upload intake and the GraphQL route (``graphql``)

Usage::

    assembled = await create_server(config, schema, context)
    await assembled.http_server.serve()
"""

from capstone_server.app import AssembledServer, create_server
from capstone_server.config import (
    BodyParserOptions,
    Config,
    Environment,
    GraphQLConfig,
    HealthCheckConfig,
    ServerConfig,
    ServerRoute,
    StorageConfig,
)
from capstone_server.engine import GraphQLEngine
from capstone_server.plugins import EnginePlugin, LandingPageDisabled, LandingPageLocalDefault
from capstone_server.uploads import Upload

__all__ = [
    "AssembledServer",
    "BodyParserOptions",
    "Config",
    "EnginePlugin",
    "Environment",
    "GraphQLConfig",
    "GraphQLEngine",
    "HealthCheckConfig",
    "LandingPageDisabled",
    "LandingPageLocalDefault",
    "ServerConfig",
    "ServerRoute",
    "StorageConfig",
    "Upload",
    "create_server",
]
