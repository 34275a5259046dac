from __future__ import annotations

import logging
from typing import Iterator, Set

from lumigram.core.errors import PersistenceFailure
from lumigram.core.storage import (
    KeyValueStore,
    clear_stamped_ids,
    load_stamped_ids,
    persist_stamped_ids,
)

logger = logging.getLogger(__name__)


class CollectedSet:
    """
    Stable ids of collected places, written through to durable storage.

    Add-only; clear() is the single removal path. Storage failures are
    logged and the in-memory set keeps working.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._ids: Set[str] = load_stamped_ids(store)

    def __contains__(self, stable_id: object) -> bool:
        return stable_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._ids))

    def ids(self) -> Set[str]:
        return set(self._ids)

    def add(self, stable_id: str) -> bool:
        if stable_id in self._ids:
            return False
        self._ids.add(stable_id)
        self._persist()
        return True

    def clear(self) -> None:
        self._ids.clear()
        try:
            clear_stamped_ids(self.store)
        except PersistenceFailure as e:
            logger.warning("[Stamps] clear not persisted: %s", e)

    def _persist(self) -> None:
        try:
            persist_stamped_ids(self.store, self._ids)
        except PersistenceFailure as e:
            logger.warning("[Stamps] persist skipped: %s", e)
