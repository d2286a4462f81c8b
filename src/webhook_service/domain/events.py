"""Domain events emitted by the event-management application.

A :class:`DomainEvent` is a tagged union: ``type`` selects the payload schema
from :data:`PAYLOAD_SCHEMAS`, and the payload is validated against exactly
that schema. Events are immutable once built.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from webhook_service.domain.enums import EventType


class EventPayload(BaseModel):
    """Base for typed payload variants. Serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UserRegisteredPayload(EventPayload):
    event_id: UUID
    user_email: str
    user_name: str
    registration_status: str


class UserCancelledPayload(EventPayload):
    event_id: UUID
    user_email: str
    user_name: str
    cancellation_reason: str | None = None


class UserCheckedInPayload(EventPayload):
    registration_id: UUID
    event_id: UUID
    session_id: UUID | None = None
    user_email: str
    check_in_method: str
    location: str | None = None


class UserCheckedOutPayload(EventPayload):
    registration_id: UUID
    event_id: UUID
    session_id: UUID | None = None
    user_email: str


class SessionCreatedPayload(EventPayload):
    event_id: UUID
    session_title: str
    session_description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    max_attendees: int | None = None
    resource_id: UUID | None = None
    created_by: str | None = None


class SessionUpdatedPayload(EventPayload):
    event_id: UUID
    session_title: str
    changes: dict[str, Any] = Field(default_factory=dict)
    updated_by: str | None = None


class SessionCancelledPayload(EventPayload):
    event_id: UUID
    session_title: str
    cancellation_reason: str | None = None
    affected_attendees: int = 0
    cancelled_by: str | None = None


class EventCreatedPayload(EventPayload):
    event_name: str
    event_description: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    venue: str | None = None
    max_capacity: int | None = None
    created_by: str | None = None


class EventUpdatedPayload(EventPayload):
    event_name: str
    changes: dict[str, Any] = Field(default_factory=dict)
    updated_by: str | None = None


class EventPublishedPayload(EventPayload):
    event_name: str
    starts_at: datetime | None = None
    published_by: str | None = None


class EventCancelledPayload(EventPayload):
    event_name: str
    cancellation_reason: str | None = None
    affected_registrations: int = 0
    cancelled_by: str | None = None


class ResourceBookedPayload(EventPayload):
    resource_id: UUID
    resource_name: str
    event_id: UUID | None = None
    session_id: UUID | None = None
    booked_from: datetime | None = None
    booked_until: datetime | None = None


class ResourceCancelledPayload(EventPayload):
    resource_id: UUID
    resource_name: str
    reason: str | None = None


class ConflictDetectedPayload(EventPayload):
    conflict_id: UUID
    conflict_type: str
    description: str
    severity: str | None = None
    related_entity_ids: list[UUID] = Field(default_factory=list)


class ConflictResolvedPayload(EventPayload):
    conflict_id: UUID
    conflict_type: str
    resolution: str | None = None
    resolved_by: str | None = None


class SubscriptionDeactivatedPayload(EventPayload):
    subscription_id: UUID
    url: str
    consecutive_failure_count: int
    threshold: int


class WebhookTestPayload(EventPayload):
    message: str = "This is a test webhook delivery"
    data: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_SCHEMAS: dict[EventType, type[EventPayload]] = {
    EventType.USER_REGISTERED: UserRegisteredPayload,
    EventType.USER_CANCELLED: UserCancelledPayload,
    EventType.USER_CHECKED_IN: UserCheckedInPayload,
    EventType.USER_CHECKED_OUT: UserCheckedOutPayload,
    EventType.SESSION_CREATED: SessionCreatedPayload,
    EventType.SESSION_UPDATED: SessionUpdatedPayload,
    EventType.SESSION_CANCELLED: SessionCancelledPayload,
    EventType.EVENT_CREATED: EventCreatedPayload,
    EventType.EVENT_UPDATED: EventUpdatedPayload,
    EventType.EVENT_PUBLISHED: EventPublishedPayload,
    EventType.EVENT_CANCELLED: EventCancelledPayload,
    EventType.RESOURCE_BOOKED: ResourceBookedPayload,
    EventType.RESOURCE_CANCELLED: ResourceCancelledPayload,
    EventType.CONFLICT_DETECTED: ConflictDetectedPayload,
    EventType.CONFLICT_RESOLVED: ConflictResolvedPayload,
    EventType.WEBHOOK_SUBSCRIPTION_DEACTIVATED: SubscriptionDeactivatedPayload,
    EventType.WEBHOOK_TEST: WebhookTestPayload,
}


def payload_schema_for(event_type: EventType) -> type[EventPayload]:
    return PAYLOAD_SCHEMAS[event_type]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """Immutable record of a business occurrence."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    type: EventType
    payload: SerializeAsAny[EventPayload]
    occurred_at: datetime = Field(default_factory=_utcnow)
    aggregate_id: UUID

    @model_validator(mode="before")
    @classmethod
    def _resolve_payload_variant(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "type" not in data:
            return data
        schema = payload_schema_for(EventType(data["type"]))
        payload = data.get("payload")
        if isinstance(payload, str):
            payload = json.loads(payload)
        if isinstance(payload, EventPayload) and not isinstance(payload, schema):
            raise ValueError(
                f"payload {type(payload).__name__} does not match event type {data['type']}"
            )
        if not isinstance(payload, schema):
            payload = schema.model_validate(payload or {})
        return {**data, "payload": payload}

    @field_validator("occurred_at")
    @classmethod
    def _ensure_aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def payload_json(self) -> str:
        return json.dumps(self.payload.to_data(), separators=(",", ":"), ensure_ascii=False)

    def wire_body(self) -> str:
        """Serialize the outbound webhook body.

        The returned text is stored with the delivery task; its UTF-8 bytes are
        what gets signed and sent on every attempt.
        """
        body = {
            "eventId": str(self.event_id),
            "eventType": self.type.value,
            "occurredAt": self.occurred_at.isoformat(),
            "data": self.payload.to_data(),
        }
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def build_deactivation_alert(
    *,
    subscription_id: UUID,
    url: str,
    consecutive_failure_count: int,
    threshold: int,
) -> DomainEvent:
    """Operational alert raised when a subscription is switched off for repeated failures."""
    return DomainEvent(
        type=EventType.WEBHOOK_SUBSCRIPTION_DEACTIVATED,
        aggregate_id=subscription_id,
        payload=SubscriptionDeactivatedPayload(
            subscription_id=subscription_id,
            url=url,
            consecutive_failure_count=consecutive_failure_count,
            threshold=threshold,
        ),
    )
