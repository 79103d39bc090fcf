"""Read-only HTTP delivery of locally stored assets."""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping

from starlette.exceptions import HTTPException
from starlette.responses import PlainTextResponse, Response
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Receive, Scope, Send

from capstone_server.config import StorageConfig
from capstone_server.stages import match_prefix

OCTET_STREAM = "application/octet-stream"

# A storage mount answers only for files it can serve; these pass on
FALLTHROUGH_STATUS = frozenset({404, 405})


class StorageFiles(StaticFiles):
    """`StaticFiles` without directory indexes, redirects or Last-Modified.

    With ``force_binary`` every file is sent as ``application/octet-stream``
    so browsers never sniff and render uploaded documents inline.
    """

    def __init__(self, *, directory: str | os.PathLike[str], force_binary: bool = False) -> None:
        super().__init__(directory=directory, html=False, follow_symlink=False)
        self.force_binary = force_binary

    async def lookup(self, scope: Scope) -> Response | None:
        """Response for the file addressed by `scope`, or None to pass it on."""
        if not self.config_checked:
            await self.check_config()
            self.config_checked = True

        try:
            return await self.get_response(self.get_path(scope), scope)
        except HTTPException as exc:
            if exc.status_code in FALLTHROUGH_STATUS:
                return None
            return PlainTextResponse(exc.detail, status_code=exc.status_code, headers=exc.headers)

    def file_response(
        self,
        full_path: str | os.PathLike[str],
        stat_result: os.stat_result,
        scope: Scope,
        status_code: int = 200,
    ) -> Response:
        # No Last-Modified is sent, so If-Modified-Since must not revalidate
        scope = {**scope, "headers": _without_if_modified_since(scope)}
        response = super().file_response(full_path, stat_result, scope, status_code)
        if "last-modified" in response.headers:
            del response.headers["last-modified"]
        if self.force_binary:
            response.headers["content-type"] = OCTET_STREAM
        return response


def _without_if_modified_since(scope: Scope) -> list[tuple[bytes, bytes]]:
    return [(k, v) for k, v in scope.get("headers", []) if k.lower() != b"if-modified-since"]


def served_storage(storage: Mapping[str, StorageConfig] | None) -> Iterator[tuple[str, StorageConfig]]:
    """Yield the (name, entry) pairs that are exposed over HTTP."""
    for name, entry in (storage or {}).items():
        if entry.kind != "local" or not entry.server_route:
            continue
        yield name, entry


def storage_files(entry: StorageConfig) -> StorageFiles:
    return StorageFiles(directory=entry.storage_path, force_binary=entry.type == "file")


class StorageMount:
    """Serves `files` under `path`; requests it cannot answer go to `app`.

    Missing files, directories and methods other than GET or HEAD all
    fall through, so a storage route may share a prefix with later stages.
    """

    def __init__(self, app: ASGIApp, path: str, files: StorageFiles) -> None:
        self.app = app
        self.path = path.rstrip("/")
        self.files = files

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not match_prefix(scope, self.path):
            await self.app(scope, receive, send)
            return

        child_scope = {**scope, "root_path": scope.get("root_path", "") + self.path}
        response = await self.files.lookup(child_scope)
        if response is None:
            await self.app(scope, receive, send)
            return
        await response(child_scope, receive, send)
