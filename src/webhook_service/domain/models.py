"""Webhook domain primitives."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from webhook_service.domain.enums import (
    WILDCARD_EVENT_TYPE,
    DeliveryStatus,
    ErrorKind,
    EventType,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class WebhookSubscription(_CamelModel):
    id: UUID
    name: str | None = None
    description: str | None = None
    url: str
    secret: str
    event_types: list[str] = Field(default_factory=list)
    active: bool = True
    consecutive_failure_count: int = 0
    created_at: datetime
    updated_at: datetime
    deactivated_at: datetime | None = None
    deleted_at: datetime | None = None

    def matches(self, event_type: EventType | str) -> bool:
        value = event_type.value if isinstance(event_type, EventType) else event_type
        return WILDCARD_EVENT_TYPE in self.event_types or value in self.event_types

    def to_api(self, *, include_secret: bool = False, **kwargs: Any) -> dict[str, Any]:
        exclude = set(kwargs.pop("exclude", set()))
        if not include_secret:
            exclude.add("secret")
        return super().to_api(exclude=exclude, **kwargs)


class DeliveryAttempt(_CamelModel):
    """One try at delivering one event to one subscription."""

    id: UUID
    event_id: UUID
    subscription_id: UUID
    event_type: EventType
    sequence: int = 1
    attempt_number: int
    status: DeliveryStatus
    http_status_code: int | None = None
    response_snippet: str | None = None
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    request_body: str
    scheduled_at: datetime
    locked_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime

    def to_api(self, **kwargs: Any) -> dict[str, Any]:
        exclude = set(kwargs.pop("exclude", set()))
        exclude.update({"request_body", "locked_at"})
        return super().to_api(exclude=exclude, **kwargs)


class DeliveryTask(BaseModel):
    """A claimed PENDING attempt plus what the worker needs to send it."""

    attempt_id: UUID
    subscription_id: UUID
    event_id: UUID
    event_type: EventType
    sequence: int
    attempt_number: int
    next_attempt_at: datetime
    request_body: str
    url: str
    secret: str


class DeliveryStatistics(_CamelModel):
    subscription_id: UUID
    total_attempts: int = 0
    pending: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    success_rate: float = 0.0
    last_attempt_at: datetime | None = None
    last_success_at: datetime | None = None


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one HTTP attempt, as decided by the worker and retry policy."""

    status: DeliveryStatus
    completed_at: datetime
    http_status_code: int | None = None
    response_snippet: str | None = None
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    next_attempt_at: datetime | None = None  # set only when status is FAILED


@dataclass(frozen=True)
class OutcomeResult:
    """What persisting an outcome did to the subscription."""

    consecutive_failure_count: int
    deactivated: bool = False
    next_attempt: DeliveryAttempt | None = None
