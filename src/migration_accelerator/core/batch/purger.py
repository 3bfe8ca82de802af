from __future__ import annotations

from typing import Any

from ..events import (
    MISSING_SOURCE_ITEM,
    POST_ROLLBACK,
    POST_ROW_DELETE,
    PRE_ROW_DELETE,
    EventDispatcher,
    RollbackEvent,
    RowEvent,
)
from ..runtime import MigrationRuntime
from ..storage import Storage
from ..utils import now_iso, source_ids_key


class MigrationPurger:
    """Deletes destination rows whose source rows disappeared since the last import.

    The whole source id set is held in memory for one pass, then the id map is
    walked once. Listeners are notified around each deletion and once per pass.
    """

    def __init__(
        self,
        runtime: MigrationRuntime,
        dispatcher: EventDispatcher,
        storage: Storage | None = None,
    ) -> None:
        self.runtime = runtime
        self.dispatcher = dispatcher
        self.storage = storage

    def purge(self, plugin_id: str) -> int:
        id_map = self.runtime.get_id_map(plugin_id)
        # Every imported row needs an update, so a later import revisits it.
        id_map.prepare_update()
        current = {source_ids_key(ids) for ids in self.runtime.source_ids(plugin_id)}

        purged = 0
        id_map.rewind()
        while id_map.valid():
            source_ids = id_map.current_source()
            if source_ids_key(source_ids) not in current:
                destination_ids = id_map.current_destination()
                self._dispatch_row(PRE_ROW_DELETE, plugin_id, destination_ids, source_ids)
                self._dispatch_row(MISSING_SOURCE_ITEM, plugin_id, destination_ids, source_ids)
                self.runtime.rollback_destination(plugin_id, destination_ids)
                self._dispatch_row(POST_ROW_DELETE, plugin_id, destination_ids, source_ids)
                id_map.delete(source_ids)
                purged += 1
            id_map.next()

        self.dispatcher.dispatch(POST_ROLLBACK, RollbackEvent(plugin_id=plugin_id))
        if self.storage is not None:
            self.storage.insert_event(
                "migration_purge", now_iso(), plugin_id=plugin_id, payload={"purged": purged}
            )
        return purged

    def _dispatch_row(
        self,
        event_name: str,
        plugin_id: str,
        destination_ids: dict[str, Any],
        source_ids: dict[str, Any],
    ) -> None:
        self.dispatcher.dispatch(
            event_name,
            RowEvent(plugin_id=plugin_id, destination_ids=destination_ids, source_ids=source_ids),
        )
