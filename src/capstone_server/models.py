"""Pydantic models for GraphQL request and response payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ------------------------------------------------------------------ #
# Request models
# ------------------------------------------------------------------ #


class GraphQLRequest(BaseModel):
    """One GraphQL operation as sent over HTTP (JSON body or query string)."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., description="GraphQL document source")
    operation_name: str | None = Field(None, alias="operationName")
    # May hold UploadFile objects placed by the multipart intake
    variables: dict[str, Any] | None = None
    extensions: dict[str, Any] | None = None


# ------------------------------------------------------------------ #
# Response models
# ------------------------------------------------------------------ #


class GraphQLResponse(BaseModel):
    """Execution result; ``errors`` are already passed through ``format_error``."""

    data: dict[str, Any] | None = None
    errors: list[dict[str, Any]] | None = None
    extensions: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.errors:
            payload["errors"] = self.errors
        if self.data is not None or not self.errors:
            payload["data"] = self.data
        if self.extensions:
            payload["extensions"] = self.extensions
        return payload
