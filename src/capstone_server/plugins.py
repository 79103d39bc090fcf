"""Engine plugins, including the built-in landing pages."""

from __future__ import annotations

import html
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from capstone_server.engine import GraphQLEngine


class EnginePlugin:
    """Base class for GraphQL engine plugins.

    Subclasses override whichever hooks they need; the defaults do nothing.
    """

    # When True, the engine stops looking for a landing page at this plugin.
    disables_landing_page: bool = False

    async def server_will_start(self, engine: GraphQLEngine) -> None:
        """Called once from `GraphQLEngine.start()`. Raising aborts the start."""

    def render_landing_page(self, endpoint: str) -> str | None:
        """HTML served for browser GETs on the GraphQL path, if any."""
        return None


_GRAPHIQL_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>__TITLE__</title>
    <style>body { margin: 0; height: 100vh; } #graphiql { height: 100vh; }</style>
    <link rel="stylesheet" href="https://unpkg.com/graphiql@3/graphiql.min.css" />
  </head>
  <body>
    <div id="graphiql">Loading...</div>
    <script crossorigin src="https://unpkg.com/react@18/umd/react.production.min.js"></script>
    <script crossorigin src="https://unpkg.com/react-dom@18/umd/react-dom.production.min.js"></script>
    <script crossorigin src="https://unpkg.com/graphiql@3/graphiql.min.js"></script>
    <script>
      const fetcher = GraphiQL.createFetcher({ url: __ENDPOINT__, headers: __HEADERS__ });
      ReactDOM.createRoot(document.getElementById("graphiql")).render(
        React.createElement(GraphiQL, { fetcher, defaultEditorToolsVisibility: true })
      );
    </script>
  </body>
</html>
"""


class LandingPageLocalDefault(EnginePlugin):
    """Serve an embedded GraphiQL explorer pointed at the current endpoint."""

    def __init__(self, title: str = "GraphQL Playground", headers: dict[str, str] | None = None) -> None:
        self.title = title
        self.headers = headers or {}

    def render_landing_page(self, endpoint: str) -> str | None:
        return (
            _GRAPHIQL_HTML.replace("__TITLE__", html.escape(self.title))
            .replace("__ENDPOINT__", json.dumps(endpoint))
            .replace("__HEADERS__", json.dumps(self.headers))
        )


class LandingPageDisabled(EnginePlugin):
    """Turn the landing page off; browser GETs are treated as plain requests."""

    disables_landing_page = True
