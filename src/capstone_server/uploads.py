"""GraphQL multipart request intake.

Implements the GraphQL multipart request protocol: a ``multipart/form-data``
body whose first field is ``operations`` (the JSON request), second is
``map`` (file field name -> list of object paths inside ``operations``),
followed by the file parts themselves.  Each mapped path is replaced by
the decoded `UploadFile` before the operations reach the engine.

The body is streamed through python-multipart; a file that grows past
the configured ceiling aborts parsing immediately.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from tempfile import SpooledTemporaryFile
from typing import Any

from graphql import GraphQLScalarType
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.datastructures import Headers, UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from capstone_server.config import DEFAULT_MAX_FILE_SIZE
from capstone_server.errors import PayloadTooLargeError, RequestError
from capstone_server.stages import match_prefix

logger = logging.getLogger(__name__)

# Key under scope["state"] holding the decoded operations
OPERATIONS_STATE_KEY = "graphql_operations"

DEFAULT_MAX_FIELD_SIZE = 1024 * 1024  # 1 MiB
SPOOL_MAX_SIZE = 1024 * 1024


def _serialize_upload(value: Any) -> Any:
    raise TypeError("Upload scalar is input-only")


Upload = GraphQLScalarType(
    name="Upload",
    description="A file part of a GraphQL multipart request.",
    serialize=_serialize_upload,
    parse_value=lambda value: value,
)


class MultipartOperationsParser:
    """Stream a multipart body into (operations, uploads).

    Parser callbacks run synchronously inside ``MultipartParser.write``;
    file bytes are queued there and written to the spooled files between
    chunks.  Size limits are enforced in the callbacks so an oversized
    file raises before more of the body is read.
    """

    def __init__(
        self,
        headers: Headers,
        stream: AsyncIterator[bytes],
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_field_size: int = DEFAULT_MAX_FIELD_SIZE,
    ) -> None:
        self.headers = headers
        self.stream = stream
        self.max_file_size = max_file_size
        self.max_field_size = max_field_size

        self.operations: Any = None
        self.map: dict[str, list[str]] | None = None
        self.uploads: dict[str, UploadFile] = {}

        self._header_field = b""
        self._header_value = b""
        self._part_headers: list[tuple[bytes, bytes]] = []
        self._field_name = ""
        self._field_data = bytearray()
        self._upload: UploadFile | None = None
        self._upload_size = 0
        self._skip_part = False
        self._pending: list[tuple[UploadFile, bytes]] = []

    # -- parser callbacks ------------------------------------------------

    def on_part_begin(self) -> None:
        self._part_headers = []
        self._field_name = ""
        self._field_data = bytearray()
        self._upload = None
        self._upload_size = 0
        self._skip_part = False

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._part_headers.append((self._header_field.lower(), self._header_value))
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        disposition = b""
        for field, value in self._part_headers:
            if field == b"content-disposition":
                disposition = value
        _, options = parse_options_header(disposition)
        try:
            self._field_name = options[b"name"].decode("latin-1")
        except KeyError:
            raise RequestError("Multipart part is missing a field name.") from None

        if b"filename" not in options:
            if self._field_name == "operations" and self.operations is not None:
                raise RequestError("Duplicate 'operations' field.")
            if self._field_name == "map" and self.operations is None:
                raise RequestError("The 'operations' field must precede the 'map' field.")
            return

        if self.map is None:
            raise RequestError("File parts must follow the 'operations' and 'map' fields.")
        if self._field_name not in self.map:
            # Files nobody asked for are read past, never stored
            self._skip_part = True
            return

        self._upload = UploadFile(
            file=SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE),  # noqa: SIM115
            size=0,
            filename=options[b"filename"].decode("utf-8", errors="replace"),
            headers=Headers(raw=self._part_headers),
        )
        self.uploads[self._field_name] = self._upload

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        chunk = data[start:end]
        if self._skip_part:
            return
        if self._upload is not None:
            self._upload_size += len(chunk)
            if self._upload_size > self.max_file_size:
                raise PayloadTooLargeError(
                    f"File truncated as it exceeds the {self.max_file_size} byte size limit."
                )
            self._pending.append((self._upload, chunk))
            return
        self._field_data.extend(chunk)
        if len(self._field_data) > self.max_field_size:
            raise PayloadTooLargeError(
                f"Field '{self._field_name}' exceeds the {self.max_field_size} byte size limit."
            )

    def on_part_end(self) -> None:
        if self._upload is not None or self._skip_part:
            return
        if self._field_name == "operations":
            self.operations = _load_json(self._field_data, "operations")
            if not isinstance(self.operations, (dict, list)):
                raise RequestError("Invalid type for the 'operations' multipart field.")
        elif self._field_name == "map":
            self.map = _load_map(self._field_data)

    # -- driver ----------------------------------------------------------

    async def parse(self) -> tuple[Any, list[UploadFile]]:
        _, params = parse_options_header(self.headers.get("content-type", ""))
        boundary = params.get(b"boundary")
        if not boundary:
            raise RequestError("Missing multipart boundary.")

        callbacks = {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }
        parser = MultipartParser(boundary, callbacks)

        try:
            async for chunk in self.stream:
                parser.write(chunk)
                await self._flush()
            parser.finalize()
            await self._flush()
        except BaseException:
            await self.close()
            raise

        try:
            operations = self._resolve()
        except RequestError:
            await self.close()
            raise

        for upload in self.uploads.values():
            await upload.seek(0)
        return operations, list(self.uploads.values())

    async def _flush(self) -> None:
        pending, self._pending = self._pending, []
        for upload, chunk in pending:
            await upload.write(chunk)

    def _resolve(self) -> Any:
        if self.operations is None:
            raise RequestError("Missing multipart field 'operations'.")
        if self.map is None:
            raise RequestError("Missing multipart field 'map'.")

        for key, paths in self.map.items():
            upload = self.uploads.get(key)
            if upload is None:
                raise RequestError(f"File missing in the request for key '{key}'.")
            for path in paths:
                _set_path(self.operations, path, upload)
        return self.operations

    async def close(self) -> None:
        for upload in self.uploads.values():
            await upload.close()


def _load_json(data: bytes | bytearray, field: str) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        raise RequestError(f"Invalid JSON in the '{field}' multipart field.") from None


def _load_map(data: bytes | bytearray) -> dict[str, list[str]]:
    value = _load_json(data, "map")
    if not isinstance(value, dict):
        raise RequestError("Invalid type for the 'map' multipart field.")
    for key, paths in value.items():
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise RequestError(f"Invalid type for the 'map' multipart field entry key '{key}'.")
    return value


def _set_path(target: Any, path: str, value: Any) -> None:
    """Replace the value at dotted `path` (e.g. ``0.variables.files.1``)."""
    *parents, last = path.split(".")
    node = target
    try:
        for segment in parents:
            node = node[int(segment)] if isinstance(node, list) else node[segment]
        if isinstance(node, list):
            node[int(last)] = value
        elif isinstance(node, dict) and last in node:
            node[last] = value
        else:
            raise KeyError(last)
    except (KeyError, IndexError, TypeError, ValueError):
        raise RequestError(f"Invalid object path '{path}' in the 'map' multipart field.") from None


def is_multipart(scope: Scope) -> bool:
    headers = Headers(scope=scope)
    content_type, _ = parse_options_header(headers.get("content-type", ""))
    return content_type == b"multipart/form-data"


class UploadMiddleware:
    """Decode multipart uploads for requests under `path`.

    Other paths, methods and content types pass straight through.
    Decoded operations are left in ``scope["state"]`` for the engine.
    """

    def __init__(
        self,
        app: ASGIApp,
        path: str,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_field_size: int = DEFAULT_MAX_FIELD_SIZE,
    ) -> None:
        self.app = app
        self.path = path
        self.max_file_size = max_file_size
        self.max_field_size = max_field_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] != "POST"
            or not match_prefix(scope, self.path)
            or not is_multipart(scope)
        ):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        parser = MultipartOperationsParser(
            request.headers,
            request.stream(),
            max_file_size=self.max_file_size,
            max_field_size=self.max_field_size,
        )
        try:
            operations, uploads = await parser.parse()
        except RequestError as exc:
            logger.info("Rejected multipart request to %s: %s", scope["path"], exc.message)
            response = JSONResponse(exc.to_payload(), status_code=exc.status_code)
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})[OPERATIONS_STATE_KEY] = operations
        try:
            await self.app(scope, receive, send)
        finally:
            for upload in uploads:
                await upload.close()
