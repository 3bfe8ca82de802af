from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .runtime import MESSAGE_CATEGORIES, MESSAGE_CATEGORY_OTHER
from .storage import Storage

POST_ROW_SAVE = "post_row_save"
PRE_ROW_DELETE = "pre_row_delete"
MISSING_SOURCE_ITEM = "missing_source_item"
POST_ROW_DELETE = "post_row_delete"
POST_ROLLBACK = "post_rollback"
IDMAP_MESSAGE = "idmap_message"


@dataclass(frozen=True)
class RowEvent:
    plugin_id: str
    destination_ids: dict[str, Any] = field(default_factory=dict)
    source_ids: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RollbackEvent:
    plugin_id: str


@dataclass(frozen=True)
class IdMapMessageEvent:
    plugin_id: str
    source_ids: dict[str, Any]
    message: str
    level: int
    category: str = MESSAGE_CATEGORY_OTHER


Listener = Callable[[Any], None]


class EventDispatcher:
    """Notification-only fan-out; listeners cannot veto or alter an event."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_name: str, listener: Listener) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def listeners(self, event_name: str) -> list[Listener]:
        return list(self._listeners.get(event_name, []))

    def dispatch(self, event_name: str, event: Any) -> None:
        for listener in self.listeners(event_name):
            listener(event)


class MessageRecorder:
    """Persists id map messages so completeness checks can count them."""

    def __init__(
        self, storage: Storage, migration_of: Callable[[str], str | None] | None = None
    ) -> None:
        self.storage = storage
        self.migration_of = migration_of

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(IDMAP_MESSAGE, self.on_message)

    def on_message(self, event: IdMapMessageEvent) -> None:
        category = event.category if event.category in MESSAGE_CATEGORIES else MESSAGE_CATEGORY_OTHER
        self.storage.insert_message(
            plugin_id=event.plugin_id,
            message=event.message,
            level=event.level,
            category=category,
            source_ids=event.source_ids,
            migration_id=self.migration_of(event.plugin_id) if self.migration_of else None,
        )
