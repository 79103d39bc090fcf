"""Error shaping and the exceptions raised by this package."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from capstone_server.config import Environment, GraphQLConfig

FormatError = Callable[[dict[str, Any], BaseException | None], dict[str, Any]]

# Extension keys that can carry internals (tracebacks, original exception data)
REDACTED_EXTENSIONS = ("debug", "exception")


class CapstoneServerError(Exception):
    """Base class for errors raised by capstone_server."""


class EngineNotStartedError(CapstoneServerError):
    """The GraphQL engine was asked to serve before `start()` completed."""


class RequestError(CapstoneServerError):
    """A client error detected before GraphQL execution.

    Carries the HTTP status code the pipeline answers with.
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        return {"errors": [{"message": self.message}]}


class PayloadTooLargeError(RequestError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=413)


def is_debug(graphql_config: GraphQLConfig | None, environment: Environment) -> bool:
    """Explicit ``debug`` flag if set, otherwise on outside production."""
    debug = graphql_config.debug if graphql_config else None
    if debug is None:
        return not environment.production
    return debug


def make_error_formatter(
    graphql_config: GraphQLConfig | None,
    environment: Environment,
) -> FormatError:
    """Build the engine's ``format_error`` hook.

    Redaction always runs first, so a user-supplied ``format_error`` in
    ``engine_options`` only ever sees the redacted error; its return value
    is then used as-is.
    """
    debug = is_debug(graphql_config, environment)
    engine_options = (graphql_config.engine_options if graphql_config else None) or {}
    custom = engine_options.get("format_error")

    def format_error(formatted: dict[str, Any], error: BaseException | None) -> dict[str, Any]:
        extensions = formatted.get("extensions")
        if not debug and extensions:
            for key in REDACTED_EXTENSIONS:
                extensions.pop(key, None)

        if custom is not None:
            return custom(formatted, error)

        return formatted

    return format_error
