"""Callable function payloads."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CreateClientRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email: str | None = None
    password: str | None = None
    display_name: str | None = None


class CreateClientResponse(BaseModel):
    uid: str
    email: str
