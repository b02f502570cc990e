"""Event envelope and payload schemas.

All events share a common envelope:
{
    "event_type": "<allow-listed type>",
    "user_id": "<player id>",
    "payload": { ... flat, type-specific fields ... },
    "received_at": "<optional ISO timestamp, server time if absent>"
}

A payload is a flat document: string keys mapping to scalars or lists of
scalars. Known event types additionally validate their fields; unknown
fields are kept as-is.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from gamepulse.errors import SchemaError, ValidationError

SCALAR_TYPES = (str, int, float, bool, type(None))


class EventIn(BaseModel):
    """Envelope of an event submitted for ingestion."""

    event_type: str
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime | None = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class GameEndedPayload(_Payload):
    """Payload for game_ended events."""

    game_mode: str | None = None
    score: int | None = Field(default=None, ge=0)
    duration_seconds: int | None = Field(default=None, ge=0)
    level_id: int | None = None


class GameStartedPayload(_Payload):
    """Payload for game_started events."""

    game_mode: str | None = None
    level_id: int | None = None


class InstallPayload(_Payload):
    """Payload for app_installed / user_installed events."""

    campaign_id: str | None = None
    platform: str | None = None


class RevenuePayload(_Payload):
    """Payload for ad_revenue / purchase_completed events."""

    revenue_usd: float | None = Field(default=None, ge=0)
    currency: str | None = None


class SessionPayload(_Payload):
    """Payload for session_started / session_ended events."""

    session_id: str | None = None
    platform: str | None = None
    duration_seconds: int | None = Field(default=None, ge=0)


class LevelPayload(_Payload):
    """Payload for level_* events."""

    level_id: int | None = Field(default=None, ge=1)


class CurrencyPayload(_Payload):
    """Payload for currency_earned / currency_spent events.

    ``source`` names where earned currency came from, ``spent_on`` what it
    was spent on.
    """

    currency_type: Literal["coins", "gems"]
    amount: int = Field(ge=0)
    source: str | None = None
    spent_on: str | None = None


EVENT_PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "game_ended": GameEndedPayload,
    "game_started": GameStartedPayload,
    "app_installed": InstallPayload,
    "user_installed": InstallPayload,
    "ad_revenue": RevenuePayload,
    "purchase_completed": RevenuePayload,
    "session_started": SessionPayload,
    "session_ended": SessionPayload,
    "level_started": LevelPayload,
    "level_completed": LevelPayload,
    "level_failed": LevelPayload,
    "currency_earned": CurrencyPayload,
    "currency_spent": CurrencyPayload,
}


def _is_flat_value(value: Any) -> bool:
    if isinstance(value, SCALAR_TYPES):
        return True
    if isinstance(value, list):
        return all(isinstance(item, SCALAR_TYPES) for item in value)
    return False


def check_flat_payload(payload: Any) -> None:
    """Raise SchemaError unless ``payload`` is a flat document."""
    if not isinstance(payload, dict):
        msg = f"payload must be an object, got {type(payload).__name__}"
        raise SchemaError(msg)
    for key, value in payload.items():
        if not isinstance(key, str):
            msg = f"payload key {key!r} is not a string"
            raise SchemaError(msg)
        if not _is_flat_value(value):
            msg = f"payload field {key!r} is nested; payloads must be flat"
            raise SchemaError(msg)


def validate_payload(event_type: str, payload: dict[str, Any]) -> None:
    """Validate field types for event types with a registered model.

    The payload itself is stored unchanged; the model only checks it.
    """
    model = EVENT_PAYLOAD_MODELS.get(event_type)
    if model is None:
        return
    try:
        model.model_validate(payload)
    except PydanticValidationError as exc:
        msg = f"invalid {event_type} payload: {exc.errors(include_url=False)}"
        raise SchemaError(msg) from exc


def parse_event(raw: dict[str, Any] | EventIn) -> EventIn:
    """Parse a raw dict into a validated envelope.

    Envelope problems (missing type, blank user) raise ValidationError;
    payload shape problems raise SchemaError.
    """
    if isinstance(raw, EventIn):
        event = raw
    else:
        if not isinstance(raw, dict):
            msg = "event must be an object"
            raise ValidationError(msg)
        check_flat_payload(raw.get("payload", {}))
        try:
            event = EventIn.model_validate(raw)
        except PydanticValidationError as exc:
            msg = f"malformed event envelope: {exc.errors(include_url=False)}"
            raise ValidationError(msg) from exc

    if not event.user_id or not event.user_id.strip():
        msg = "user_id must not be empty"
        raise ValidationError(msg)
    if not event.event_type or not event.event_type.strip():
        msg = "event_type must not be empty"
        raise ValidationError(msg)
    check_flat_payload(event.payload)
    validate_payload(event.event_type, event.payload)
    return event
