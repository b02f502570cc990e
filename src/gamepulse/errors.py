"""Exception hierarchy shared by ingestion, aggregation and tournaments."""

from __future__ import annotations


class GamePulseError(Exception):
    """Base class for all service errors."""


class ValidationError(GamePulseError, ValueError):
    """Malformed or unknown event rejected at ingestion; never stored."""


class SchemaError(ValidationError):
    """Event payload is not a flat document or fails its typed model."""


class PartitionMissingError(GamePulseError):
    """No attached partition covers the event's received_at."""

    def __init__(self, received_at: object) -> None:
        super().__init__(f"No partition covers received_at={received_at}")
        self.received_at = received_at


class ProcessingError(GamePulseError):
    """An aggregator could not apply an event. Recorded, retried next cycle."""

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"{event_id}: {reason}")
        self.event_id = event_id
        self.reason = reason


class StateError(GamePulseError):
    """Operation violates the tournament or prize state machine."""


class InvalidTransitionError(StateError, ValueError):
    """Tournament status change not allowed from the current state."""


class AlreadyClaimedError(StateError):
    """Prize was already claimed."""


class NotFoundError(GamePulseError, LookupError):
    """Referenced record does not exist."""


class PrizeNotFoundError(NotFoundError):
    """No prize with the given id."""


class ForbiddenError(GamePulseError):
    """Caller does not own the referenced record."""


class PrizeForbiddenError(ForbiddenError):
    """Prize belongs to another user."""


class DependencyError(GamePulseError):
    """An external dependency (campaign cost source) failed."""
