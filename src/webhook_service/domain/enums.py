"""Domain enumerations."""
from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    USER_CANCELLED = "USER_CANCELLED"
    USER_CHECKED_IN = "USER_CHECKED_IN"
    USER_CHECKED_OUT = "USER_CHECKED_OUT"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_UPDATED = "SESSION_UPDATED"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    EVENT_CREATED = "EVENT_CREATED"
    EVENT_UPDATED = "EVENT_UPDATED"
    EVENT_PUBLISHED = "EVENT_PUBLISHED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    RESOURCE_BOOKED = "RESOURCE_BOOKED"
    RESOURCE_CANCELLED = "RESOURCE_CANCELLED"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    # operational
    WEBHOOK_SUBSCRIPTION_DEACTIVATED = "WEBHOOK_SUBSCRIPTION_DEACTIVATED"
    WEBHOOK_TEST = "WEBHOOK_TEST"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXHAUSTED = "EXHAUSTED"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


WILDCARD_EVENT_TYPE = "*"
