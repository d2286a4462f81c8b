"""Pydantic DTOs for the admin API and service layer."""
from __future__ import annotations

from typing import Any

# pyright: reportMissingImports=false

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


def normalize_event_types(value: list[str] | None) -> list[str] | None:
    """Strip blanks and duplicates, keeping first-seen order."""
    if value is None:
        return None
    cleaned = [item.strip() for item in value if item and item.strip()]
    return list(dict.fromkeys(cleaned))


class SubscriptionCreateDTO(_RequestModel):
    url: str
    event_types: list[str] = Field(min_length=1)
    secret: str | None = None
    active: bool = True
    name: str | None = None
    description: str | None = None

    @field_validator("event_types")
    @classmethod
    def _normalize_event_types(cls, value: list[str]) -> list[str]:
        return normalize_event_types(value) or []


class SubscriptionUpdateDTO(_RequestModel):
    url: str | None = None
    event_types: list[str] | None = None
    secret: str | None = None
    active: bool | None = None
    name: str | None = None
    description: str | None = None

    @field_validator("event_types")
    @classmethod
    def _normalize_event_types(cls, value: list[str] | None) -> list[str] | None:
        return normalize_event_types(value)


class WebhookTestDTO(_RequestModel):
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
