"""Assembly of the Capstone HTTP server.

`create_server()` builds one Starlette application and walks a fixed,
declarative list of stages.  Each stage has an activation predicate,
evaluated once, and an installer.  Stages only ever append, and the
application runs middleware in the order it was added, so the request
path through the server is exactly the order of `STAGES`:

    CORS -> health check -> extend_app middleware and routes -> static storage
    -> upload intake (GraphQL path) -> GraphQL route

The engine is started before the GraphQL route exists; if it fails to
start, the error propagates and nothing is served on the GraphQL path.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import uvicorn
from graphql import GraphQLSchema
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.exceptions import ExceptionMiddleware
from starlette.routing import BaseRoute, Match, Route, Router
from starlette.types import ASGIApp, Receive, Scope, Send

from capstone_server.config import (
    DEFAULT_GRAPHQL_PATH,
    DEFAULT_MAX_FILE_SIZE,
    PLAYGROUND_CUSTOM,
    Config,
    Environment,
    GraphQLConfig,
    ServerConfig,
)
from capstone_server.engine import EngineOptions, EnginePolicy, GraphQLEngine, RequestContext
from capstone_server.errors import is_debug, make_error_formatter
from capstone_server.plugins import EnginePlugin, LandingPageDisabled, LandingPageLocalDefault
from capstone_server.stages import (
    HealthCheckEndpoint,
    PathMount,
    cors_options,
    health_check_config,
    health_check_path,
)
from capstone_server.static import StorageMount, served_storage, storage_files
from capstone_server.uploads import UploadMiddleware

logger = logging.getLogger(__name__)


class RouteStage:
    """Routes served as one pipeline stage; anything they miss goes to `app`.

    A route must match both path and method to answer the request.
    """

    def __init__(self, app: ASGIApp, routes: list[BaseRoute]) -> None:
        self.app = app
        self.router = Router(routes=routes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] in ("http", "websocket"):
            for route in self.router.routes:
                match, child_scope = route.matches(scope)
                if match is Match.FULL:
                    scope = {**scope, **child_scope}
                    scope.setdefault("router", self.router)
                    await ExceptionMiddleware(route.handle)(scope, receive, send)
                    return
        await self.app(scope, receive, send)


class Application(Starlette):
    """Starlette application whose middleware runs in registration order.

    Starlette's own `add_middleware` makes the most recently added
    middleware the outermost; here the first one added sees the request
    first, so hooks can slot middleware into a known position.
    """

    _app_router: Router | None = None

    def add_middleware(self, middleware_class: Any, *args: Any, **kwargs: Any) -> None:
        if self.middleware_stack is not None:
            raise RuntimeError("Cannot add middleware after an application has started")
        if self._app_router is not None:
            self._close_route_stage()
        self.user_middleware.append(Middleware(middleware_class, *args, **kwargs))

    @contextmanager
    def route_stages(self) -> Iterator[None]:
        """Install routes registered inside the block as pipeline stages.

        Routes added between two `add_middleware` calls are served at
        that point of the pipeline rather than by the router at its end.
        """
        self._app_router = self.router
        self.router = Router()
        try:
            yield
        finally:
            self._close_route_stage()
            self.router = self._app_router
            self._app_router = None

    def _close_route_stage(self) -> None:
        staged = self.router
        for handlers in ("on_startup", "on_shutdown"):
            getattr(self._app_router, handlers, []).extend(getattr(staged, handlers, []))
        if staged.routes:
            self.user_middleware.append(Middleware(RouteStage, routes=list(staged.routes)))
        self.router = Router()


@dataclass
class AssembledServer:
    """Long-lived handles owned by the caller, who starts and stops them."""

    http_server: uvicorn.Server
    app: Application
    engine: GraphQLEngine


@dataclass
class Assembly:
    """Working state threaded through the stages."""

    config: Config
    schema: GraphQLSchema
    context: RequestContext
    environment: Environment
    app: Application
    http_server: uvicorn.Server
    engine: GraphQLEngine | None = None

    @property
    def server(self) -> ServerConfig:
        return self.config.server or ServerConfig()

    @property
    def graphql(self) -> GraphQLConfig:
        return self.config.graphql or GraphQLConfig()

    @property
    def graphql_path(self) -> str:
        return self.graphql.path or DEFAULT_GRAPHQL_PATH


# ------------------------------------------------------------------ #
# Stages
# ------------------------------------------------------------------ #


def _install_cors(assembly: Assembly) -> None:
    options = cors_options(assembly.config.server)
    assembly.app.add_middleware(CORSMiddleware, **options)


def _install_health_check(assembly: Assembly) -> None:
    health_check = health_check_config(assembly.config.server)
    path = health_check_path(health_check)
    logger.warning("server.health_check is deprecated; serving it at %s", path)
    assembly.app.add_middleware(PathMount, path=path, endpoint=HealthCheckEndpoint(health_check.data))


async def _extend_app(assembly: Assembly) -> None:
    with assembly.app.route_stages():
        result = assembly.server.extend_app(assembly.app, assembly.context)
        if inspect.isawaitable(result):
            await result


def _extend_http_server(assembly: Assembly) -> None:
    assembly.server.extend_http_server(assembly.http_server, assembly.context, assembly.schema)


def _install_storage(assembly: Assembly) -> None:
    for name, entry in served_storage(assembly.config.storage):
        logger.debug("Serving storage %r from %s at %s", name, entry.storage_path, entry.server_route.path)
        assembly.app.add_middleware(StorageMount, path=entry.server_route.path, files=storage_files(entry))


def select_plugins(graphql: GraphQLConfig, environment: Environment) -> list[EnginePlugin]:
    """Landing page plugin followed by the user's plugins.

    ``playground="custom"`` leaves the user's plugin list untouched.
    """
    user_plugins = list((graphql.engine_options or {}).get("plugins") or [])
    playground = graphql.playground
    if playground == PLAYGROUND_CUSTOM:
        return user_plugins
    if playground is None:
        playground = not environment.production
    landing_page = LandingPageLocalDefault() if playground else LandingPageDisabled()
    return [landing_page, *user_plugins]


def _create_engine(assembly: Assembly) -> None:
    graphql = assembly.graphql
    policy = EnginePolicy(
        schema=assembly.schema,
        format_error=make_error_formatter(assembly.config.graphql, assembly.environment),
        include_stacktrace_in_error_responses=is_debug(assembly.config.graphql, assembly.environment),
        plugins=select_plugins(graphql, assembly.environment),
    )
    options = EngineOptions.from_passthrough(policy, graphql.engine_options)
    assembly.engine = GraphQLEngine.from_options(options)


async def _start_engine(assembly: Assembly) -> None:
    await assembly.engine.start()
    logger.info("GraphQL engine started")


def _install_uploads(assembly: Assembly) -> None:
    max_file_size = assembly.server.max_file_size
    if max_file_size is None:
        max_file_size = DEFAULT_MAX_FILE_SIZE
    assembly.app.add_middleware(UploadMiddleware, path=assembly.graphql_path, max_file_size=max_file_size)


def _mount_graphql(assembly: Assembly) -> None:
    handler = assembly.engine.http_handler(assembly.context, assembly.graphql.body_parser)
    path = assembly.graphql_path.rstrip("/")
    # Prefix mount: sub-paths reach the same handler
    assembly.app.router.routes.extend(
        [
            Route(path or "/", handler, methods=["GET", "POST"]),
            Route(path + "/{subpath:path}", handler, methods=["GET", "POST"]),
        ]
    )
    logger.info("GraphQL API mounted at %s", assembly.graphql_path)


def _always(assembly: Assembly) -> bool:
    return True


@dataclass(frozen=True)
class Stage:
    name: str
    enabled: Callable[[Assembly], bool]
    install: Callable[[Assembly], Awaitable[None] | None] = field(repr=False)


STAGES: tuple[Stage, ...] = (
    Stage("cors", lambda a: cors_options(a.config.server) is not None, _install_cors),
    Stage("health_check", lambda a: health_check_config(a.config.server) is not None, _install_health_check),
    Stage("extend_app", lambda a: a.server.extend_app is not None, _extend_app),
    Stage("extend_http_server", lambda a: a.server.extend_http_server is not None, _extend_http_server),
    Stage("storage", lambda a: bool(a.config.storage), _install_storage),
    Stage("engine", _always, _create_engine),
    Stage("engine_start", _always, _start_engine),
    Stage("uploads", _always, _install_uploads),
    Stage("graphql", _always, _mount_graphql),
)


# ------------------------------------------------------------------ #
# Factory
# ------------------------------------------------------------------ #


async def create_server(
    config: Config,
    schema: GraphQLSchema,
    context: RequestContext,
    *,
    environment: Environment | None = None,
) -> AssembledServer:
    """Assemble the application, listener and started GraphQL engine.

    `environment` defaults to `Environment.from_env()`.  Errors raised by
    hooks or by the engine start propagate to the caller.
    """
    environment = environment or Environment.from_env()
    server = config.server or ServerConfig()
    app = Application()
    # Logging is configured by whoever runs the process
    http_server = uvicorn.Server(uvicorn.Config(app, host=server.host, port=server.port, log_config=None))

    assembly = Assembly(
        config=config,
        schema=schema,
        context=context,
        environment=environment,
        app=app,
        http_server=http_server,
    )

    for stage in STAGES:
        if not stage.enabled(assembly):
            continue
        logger.debug("Installing stage %s", stage.name)
        result = stage.install(assembly)
        if inspect.isawaitable(result):
            await result

    return AssembledServer(http_server=http_server, app=app, engine=assembly.engine)
