"""Shared test fixtures: a small schema, a recording context, HTTP helpers.

The schema exercises every path the server cares about: plain queries,
resolver errors, context access, and file uploads::

    type Query { hello: String, boom: String, whoami: String, rootName: String }
    type Mutation { upload(file: Upload!): String, uploadMany(files: [Upload!]!): [String] }
"""

from __future__ import annotations

from typing import Any

import httpx
from graphql import (
    GraphQLArgument,
    GraphQLField,
    GraphQLList,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLSchema,
    GraphQLString,
)
from starlette.requests import Request
from starlette.responses import Response

from capstone_server import Config, Environment, create_server
from capstone_server.app import AssembledServer
from capstone_server.uploads import Upload

DEV = Environment(production=False)
PROD = Environment(production=True)


class RecordingContext:
    """Context handle that records every request it builds a context for."""

    def __init__(self, user: str = "tester", cookie: str | None = None) -> None:
        self.user = user
        self.cookie = cookie
        self.requests: list[Request] = []

    async def with_request(self, request: Request, response: Response) -> dict[str, Any]:
        self.requests.append(request)
        if self.cookie:
            response.set_cookie("session", self.cookie)
        return {"user": self.user, "request": request}


class FailingContext:
    async def with_request(self, request: Request, response: Response) -> Any:
        raise RuntimeError("database unavailable")


# ------------------------------------------------------------------ #
# Schema
# ------------------------------------------------------------------ #

uploads_seen: list[str] = []


def _resolve_boom(root: Any, info: Any) -> str:
    raise ValueError("kaboom")


async def _resolve_upload(root: Any, info: Any, file: Any) -> str:
    data = await file.read()
    uploads_seen.append(file.filename)
    return f"{file.filename}:{file.content_type}:{len(data)}"


async def _resolve_upload_many(root: Any, info: Any, files: list[Any]) -> list[str]:
    return [await _resolve_upload(root, info, f) for f in files]


def make_schema() -> GraphQLSchema:
    query = GraphQLObjectType(
        "Query",
        {
            "hello": GraphQLField(GraphQLString, resolve=lambda root, info: "world"),
            "boom": GraphQLField(GraphQLString, resolve=_resolve_boom),
            "whoami": GraphQLField(GraphQLString, resolve=lambda root, info: info.context["user"]),
            "rootName": GraphQLField(GraphQLString, resolve=lambda root, info: getattr(root, "name", None)),
        },
    )
    mutation = GraphQLObjectType(
        "Mutation",
        {
            "upload": GraphQLField(
                GraphQLString,
                args={"file": GraphQLArgument(GraphQLNonNull(Upload))},
                resolve=_resolve_upload,
            ),
            "uploadMany": GraphQLField(
                GraphQLList(GraphQLString),
                args={"files": GraphQLArgument(GraphQLNonNull(GraphQLList(GraphQLNonNull(Upload))))},
                resolve=_resolve_upload_many,
            ),
        },
    )
    return GraphQLSchema(query=query, mutation=mutation)


# ------------------------------------------------------------------ #
# Server helpers
# ------------------------------------------------------------------ #


async def build(
    config: Config | None = None,
    *,
    context: Any = None,
    environment: Environment = DEV,
    schema: GraphQLSchema | None = None,
) -> AssembledServer:
    return await create_server(
        config or Config(),
        schema or make_schema(),
        context or RecordingContext(),
        environment=environment,
    )


def client_for(app: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def post_query(app: Any, query: str, path: str = "/api/graphql", **extra: Any) -> httpx.Response:
    async with client_for(app) as client:
        return await client.post(path, json={"query": query, **extra})
