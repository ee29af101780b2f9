"""Hot-path events and the transformers that flatten them into rows.

Events arrive from source webhooks (one order, one refund, ...) and wait in
the event buffer until a sync folds them into an archive. Their payload
layout is source-specific; a transformer turns a payload into the same flat
row shape the archives use.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

EventTransformer = Callable[[Mapping[str, Any]], Mapping[str, Any] | None]


class RealtimeEvent(BaseModel):
    """One buffered source event.

    Accepts both snake_case and the camelCase field names used by the event
    buffer's JSON export (`eventType`, `createdAt`, ...).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_id: str = Field(validation_alias=AliasChoices("event_id", "eventId", "id"))
    event_type: str = Field(validation_alias=AliasChoices("event_type", "eventType", "type"))
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    processed: bool = False
    owner_id: str | None = Field(
        default=None, validation_alias=AliasChoices("owner_id", "ownerId", "userId")
    )

    @field_validator("event_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def passthrough(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Use the payload as the row unchanged."""
    return dict(payload)


class TransformerRegistry:
    """Event type -> transformer.

    Keys match exactly or as a prefix of the event type, so registering
    "order" covers "order.created", "order.updated" and "orders/create".
    The longest matching key wins.
    """

    def __init__(self, transformers: Mapping[str, EventTransformer] | None = None):
        self._transformers: dict[str, EventTransformer] = dict(transformers or {})

    def register(self, event_type: str, transformer: EventTransformer) -> None:
        self._transformers[event_type] = transformer

    def resolve(self, event_type: str) -> EventTransformer | None:
        if event_type in self._transformers:
            return self._transformers[event_type]
        matches = [key for key in self._transformers if event_type.startswith(key)]
        if not matches:
            return None
        return self._transformers[max(matches, key=len)]

    def handles(self, event_type: str) -> bool:
        return self.resolve(event_type) is not None

    def event_types(self) -> list[str]:
        return list(self._transformers)
