"""GraphQL execution engine over graphql-core, and its HTTP handler.

Option precedence is explicit: `EnginePolicy` holds the fields the server
controls (schema, error formatting, stacktrace policy, plugins) and
`EngineOptions.extra` holds user passthrough options.  Policy fields
always win over the passthrough bag.
"""

from __future__ import annotations

import inspect
import json
import logging
import traceback
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from graphql import (
    ExecutionResult,
    GraphQLError,
    GraphQLSchema,
    OperationType,
    execute,
    get_operation_ast,
    parse,
    specified_rules,
    validate,
)
from graphql.validation import NoSchemaIntrospectionCustomRule
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response

from capstone_server.config import BodyParserOptions
from capstone_server.errors import EngineNotStartedError, FormatError, PayloadTooLargeError, RequestError
from capstone_server.models import GraphQLRequest, GraphQLResponse
from capstone_server.plugins import EnginePlugin
from capstone_server.uploads import OPERATIONS_STATE_KEY

logger = logging.getLogger(__name__)


class RequestContext(Protocol):
    """Shared context handle; builds the per-request execution context."""

    async def with_request(self, request: Request, response: Response) -> Any: ...


# ------------------------------------------------------------------ #
# Options
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class EnginePolicy:
    schema: GraphQLSchema
    format_error: FormatError
    include_stacktrace_in_error_responses: bool
    plugins: list[EnginePlugin] = field(default_factory=list)


POLICY_KEYS = frozenset({"schema", "format_error", "include_stacktrace_in_error_responses", "plugins"})


@dataclass(frozen=True)
class EngineOptions:
    policy: EnginePolicy
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_passthrough(cls, policy: EnginePolicy, passthrough: dict[str, Any] | None) -> EngineOptions:
        extra = {k: v for k, v in (passthrough or {}).items() if k not in POLICY_KEYS}
        return cls(policy=policy, extra=extra)

    def as_kwargs(self) -> dict[str, Any]:
        return {
            **self.extra,
            "format_error": self.policy.format_error,
            "include_stacktrace_in_error_responses": self.policy.include_stacktrace_in_error_responses,
            "plugins": list(self.policy.plugins),
        }


# ------------------------------------------------------------------ #
# Engine
# ------------------------------------------------------------------ #


class GraphQLEngine:
    """Executes GraphQL requests against one schema.

    Must be started exactly once with `start()` before it serves anything;
    plugins get their ``server_will_start`` hook there and any exception
    they raise aborts the start.
    """

    def __init__(
        self,
        schema: GraphQLSchema,
        *,
        format_error: FormatError | None = None,
        include_stacktrace_in_error_responses: bool = False,
        plugins: Sequence[EnginePlugin] = (),
        root_value: Any = None,
        introspection: bool = True,
        validation_rules: Sequence[Any] | None = None,
        middleware: Any = None,
    ) -> None:
        self.schema = schema
        self.format_error = format_error
        self.include_stacktrace_in_error_responses = include_stacktrace_in_error_responses
        self.plugins = list(plugins)
        self.root_value = root_value
        self.introspection = introspection
        self.middleware = middleware

        rules = list(specified_rules) + list(validation_rules or [])
        if not introspection:
            rules.append(NoSchemaIntrospectionCustomRule)
        self.validation_rules = rules

        self._started = False

    @classmethod
    def from_options(cls, options: EngineOptions) -> GraphQLEngine:
        return cls(options.policy.schema, **options.as_kwargs())

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        for plugin in self.plugins:
            await plugin.server_will_start(self)
        self._started = True

    def landing_page(self, endpoint: str) -> str | None:
        for plugin in self.plugins:
            if plugin.disables_landing_page:
                return None
            page = plugin.render_landing_page(endpoint)
            if page is not None:
                return page
        return None

    # -- errors ----------------------------------------------------------

    def format(self, error: GraphQLError) -> dict[str, Any]:
        formatted = dict(error.formatted)
        extensions = dict(formatted.get("extensions") or {})
        original = error.original_error
        if self.include_stacktrace_in_error_responses and original is not None:
            exception = dict(extensions.get("exception") or {})
            exception["stacktrace"] = "".join(traceback.format_exception(original)).splitlines()
            extensions["exception"] = exception
        if extensions:
            formatted["extensions"] = extensions

        if self.format_error is None:
            return formatted
        return self.format_error(formatted, original if original is not None else error)

    def error_response(self, message: str, *, original: BaseException | None = None) -> GraphQLResponse:
        error = GraphQLError(message, original_error=original)
        return GraphQLResponse(errors=[self.format(error)])

    # -- execution -------------------------------------------------------

    async def execute(
        self,
        operation: GraphQLRequest,
        context_value: Any,
        *,
        allowed_operations: frozenset[OperationType] | None = None,
    ) -> tuple[GraphQLResponse, int]:
        """Run one operation. Returns the response body and an HTTP status."""
        if not self._started:
            raise EngineNotStartedError("GraphQL engine has not been started")

        try:
            document = parse(operation.query)
        except GraphQLError as error:
            return GraphQLResponse(errors=[self.format(error)]), 400

        validation_errors = validate(self.schema, document, self.validation_rules)
        if validation_errors:
            return GraphQLResponse(errors=[self.format(e) for e in validation_errors]), 400

        if allowed_operations is not None:
            op = get_operation_ast(document, operation.operation_name)
            if op is not None and op.operation not in allowed_operations:
                message = f"Can only perform a {op.operation.value} operation from a POST request."
                return self.error_response(message), 405

        result = execute(
            self.schema,
            document,
            root_value=self.root_value,
            context_value=context_value,
            variable_values=operation.variables,
            operation_name=operation.operation_name,
            middleware=self.middleware,
        )
        if inspect.isawaitable(result):
            result = await result
        return self._to_response(result), 200

    def _to_response(self, result: ExecutionResult) -> GraphQLResponse:
        errors = [self.format(e) for e in result.errors] if result.errors else None
        return GraphQLResponse(data=result.data, errors=errors, extensions=result.extensions)

    # -- HTTP ------------------------------------------------------------

    def http_handler(
        self,
        context: RequestContext,
        body_parser: BodyParserOptions | None = None,
    ) -> Callable[[Request], Awaitable[Response]]:
        """Starlette endpoint serving this engine.

        The JSON body is decoded with `body_parser` limits unless the upload
        intake already decoded a multipart request.
        """
        options = body_parser or BodyParserOptions()

        async def handle(request: Request) -> Response:
            if request.method == "GET" and "query" not in request.query_params:
                page = self.landing_page(request.url.path)
                if page is not None and "text/html" in request.headers.get("accept", ""):
                    return HTMLResponse(page)

            try:
                body = await _request_payload(request, options)
                operations = _parse_operations(body)
            except RequestError as exc:
                return JSONResponse(exc.to_payload(), status_code=exc.status_code)

            carrier = Response()
            try:
                context_value = await context.with_request(request, carrier)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Context creation failed for %s", request.url.path)
                payload = self.error_response(f"Context creation failed: {exc}", original=exc)
                return _json(payload.to_payload(), 500, carrier)

            allowed = frozenset({OperationType.QUERY}) if request.method == "GET" else None
            if isinstance(operations, list):
                results = [await self.execute(op, context_value, allowed_operations=allowed) for op in operations]
                return _json([r.to_payload() for r, _ in results], 200, carrier)

            response, status = await self.execute(operations, context_value, allowed_operations=allowed)
            if status == 200 and response.data is None and response.errors:
                status = 400
            return _json(response.to_payload(), status, carrier)

        return handle


def _json(payload: Any, status_code: int, carrier: Response) -> JSONResponse:
    response = JSONResponse(payload, status_code=status_code)
    for key, value in carrier.raw_headers:
        if key not in (b"content-length", b"content-type"):
            response.raw_headers.append((key, value))
    return response


async def _request_payload(request: Request, options: BodyParserOptions) -> Any:
    decoded = getattr(request.state, OPERATIONS_STATE_KEY, None)
    if decoded is not None:
        return decoded

    if request.method == "GET":
        params = request.query_params
        payload: dict[str, Any] = {"query": params.get("query"), "operationName": params.get("operationName")}
        for key in ("variables", "extensions"):
            if key in params:
                payload[key] = _loads(params[key], f"Invalid JSON in the '{key}' query parameter.")
        return payload

    return await read_json_body(request, options)


async def read_json_body(request: Request, options: BodyParserOptions) -> Any:
    """Read and decode a JSON request body, enforcing ``options.limit``."""
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() != "application/json":
        raise RequestError("POST body missing, invalid Content-Type, or JSON object has no keys.")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > options.limit:
            raise PayloadTooLargeError("Request entity too large.")

    value = _loads(bytes(body), "Invalid JSON in the request body.")
    if options.strict and not isinstance(value, (dict, list)):
        raise RequestError("JSON body must be an object or an array.")
    return value


def _loads(data: str | bytes, message: str) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        raise RequestError(message) from None


def _parse_operations(body: Any) -> GraphQLRequest | list[GraphQLRequest]:
    if isinstance(body, list):
        if not body:
            raise RequestError("No operations found in request.")
        return [_parse_operation(item) for item in body]
    return _parse_operation(body)


def _parse_operation(item: Any) -> GraphQLRequest:
    if not isinstance(item, dict) or not item.get("query"):
        raise RequestError("GraphQL operations must contain a non-empty `query`.")
    try:
        return GraphQLRequest.model_validate(item)
    except ValidationError:
        raise RequestError("Invalid GraphQL operation payload.") from None
