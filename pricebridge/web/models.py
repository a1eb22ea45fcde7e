"""Request bodies for the web API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CompletionRequest(BaseModel):
    product_input: str | None = Field(default=None, max_length=20000)
