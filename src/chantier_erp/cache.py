"""Local views of document collections that never resurrect deleted entities.

Each :class:`CacheConsistencyManager` keeps, per collection, the entities it
last knew about plus optimistic placeholders awaiting confirmation. Deleted
identifiers are recorded in a :class:`TombstoneStore` and every read, local or
coming from a server re-read, is filtered through it: once deleted in this
process an entity stays invisible until it is explicitly created again.

Local creates and updates stay authoritative until
:meth:`CacheConsistencyManager.acknowledge` records that they reached the
store; a server read that lags behind them neither hides nor reverts them.
"""

from __future__ import annotations

import itertools
from contextlib import contextmanager
from enum import Enum
from operator import attrgetter
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Set, Union

from . import log
from .constants import Collection


CollectionName = Union[Collection, str]
TEMP_ID_PREFIX = "temp-"


class EntityState(str, Enum):
    """Visibility of one identifier inside a manager."""

    ABSENT = "absent"
    CACHED = "cached"
    TOMBSTONED = "tombstoned"


def default_correlation_key(entity: Any) -> Hashable:
    """Match a placeholder with its persisted twin on immutable creation fields."""

    return (entity.client_ref, entity.created_at)


class TombstoneStore:
    """Per-collection sets of deleted identifiers, without expiry."""

    def __init__(self) -> None:
        self._ids: Dict[Collection, Set[str]] = {}

    def add(self, collection: CollectionName, entity_id: str) -> None:
        self._ids.setdefault(Collection(collection), set()).add(entity_id)

    def discard(self, collection: CollectionName, entity_id: str) -> None:
        self._ids.get(Collection(collection), set()).discard(entity_id)

    def contains(self, collection: CollectionName, entity_id: str) -> bool:
        return entity_id in self._ids.get(Collection(collection), set())

    def snapshot(self, collection: CollectionName) -> frozenset[str]:
        return frozenset(self._ids.get(Collection(collection), set()))

    def restore(self, collection: CollectionName, ids: Iterable[str]) -> None:
        self._ids[Collection(collection)] = set(ids)

    def __len__(self) -> int:
        return sum(len(ids) for ids in self._ids.values())


class CacheConsistencyManager:
    """Optimistic per-collection views guarded by a tombstone store.

    Args:
        tombstones (TombstoneStore | None): Store of deleted identifiers. A
            fresh store is created when omitted.
        identity (Callable[[Any], str]): Returns the identifier of an entity.
        correlation_key (Callable[[Any], Hashable]): Returns the fields a
            placeholder shares with the entity the store eventually returns.
    """

    def __init__(
        self,
        tombstones: Optional[TombstoneStore] = None,
        *,
        identity: Callable[[Any], str] = attrgetter("document_id"),
        correlation_key: Callable[[Any], Hashable] = default_correlation_key,
    ) -> None:
        self.tombstones = tombstones if tombstones is not None else TombstoneStore()
        self._identity = identity
        self._correlation_key = correlation_key
        self._views: Dict[Collection, Dict[str, Any]] = {}
        self._placeholders: Dict[Collection, Dict[str, Any]] = {}
        self._unacknowledged: Dict[Collection, Set[str]] = {}
        self._loaded: Set[Collection] = set()
        self._sequence = itertools.count(1)

    def _view(self, collection: CollectionName) -> Dict[str, Any]:
        return self._views.setdefault(Collection(collection), {})

    def _pending(self, collection: CollectionName) -> Dict[str, Any]:
        return self._placeholders.setdefault(Collection(collection), {})

    def _local(self, collection: CollectionName) -> Set[str]:
        return self._unacknowledged.setdefault(Collection(collection), set())

    def is_loaded(self, collection: CollectionName) -> bool:
        """Whether the collection was reconciled with the server at least once."""

        return Collection(collection) in self._loaded

    def state(self, collection: CollectionName, entity_id: str) -> EntityState:
        if self.tombstones.contains(collection, entity_id):
            return EntityState.TOMBSTONED
        if entity_id in self._view(collection) or entity_id in self._pending(collection):
            return EntityState.CACHED
        return EntityState.ABSENT

    def temporary_id(self) -> str:
        """Return a fresh placeholder identifier."""

        return f"{TEMP_ID_PREFIX}{next(self._sequence)}"

    def add_placeholder(self, collection: CollectionName, entity: Any, temp_id: Optional[str] = None) -> str:
        """Show ``entity`` optimistically before the store acknowledges it."""

        temp_id = temp_id or self.temporary_id()
        self._pending(collection)[temp_id] = entity
        log.debug("Placeholder %s added to '%s'", temp_id, Collection(collection).value)
        return temp_id

    def confirm(self, collection: CollectionName, temp_id: str, entity: Any) -> None:
        """Replace placeholder ``temp_id`` with the persisted ``entity``."""

        self._pending(collection).pop(temp_id, None)
        self.create(collection, entity)

    def create(self, collection: CollectionName, entity: Any) -> None:
        """Cache ``entity`` as an unacknowledged local change.

        A tombstone left by an earlier delete is lifted.
        """

        entity_id = self._identity(entity)
        if self.tombstones.contains(collection, entity_id):
            log.debug("Identifier %s recreated in '%s'; lifting tombstone", entity_id, Collection(collection).value)
            self.tombstones.discard(collection, entity_id)
        self._view(collection)[entity_id] = entity
        self._local(collection).add(entity_id)

    def update(self, collection: CollectionName, entity: Any) -> bool:
        """Replace the cached copy of ``entity``. Ignored when tombstoned."""

        entity_id = self._identity(entity)
        if self.tombstones.contains(collection, entity_id):
            log.debug("Ignoring update of deleted %s in '%s'", entity_id, Collection(collection).value)
            return False
        self._view(collection)[entity_id] = entity
        self._local(collection).add(entity_id)
        return True

    def delete(self, collection: CollectionName, entity_id: str) -> None:
        """Tombstone ``entity_id`` and drop it from every view right away."""

        self.tombstones.add(collection, entity_id)
        self._view(collection).pop(entity_id, None)
        self._pending(collection).pop(entity_id, None)
        self._local(collection).discard(entity_id)
        log.debug("Tombstoned %s in '%s'", entity_id, Collection(collection).value)

    def reconcile_with_server(self, collection: CollectionName, fresh: Iterable[Any]) -> List[Any]:
        """Merge a server read into the local view.

        Tombstoned entities are dropped whatever the server says. Each
        remaining entity settles the oldest pending placeholder sharing its
        correlation key. Local changes the server has not acknowledged yet
        (see :meth:`acknowledge`) win over the server copy and survive their
        absence from ``fresh``; any other cached entity is replaced by the
        server copy or dropped with it. The resulting view is the unmatched
        placeholders, then the fresh entities in server order, then the
        unacknowledged local entities the server does not know yet.

        Returns:
            list[Any]: The visible collection after reconciliation.
        """

        visible = [entity for entity in fresh if not self.tombstones.contains(collection, self._identity(entity))]
        pending = self._pending(collection)
        for entity in visible:
            key = self._correlation_key(entity)
            for temp_id, placeholder in pending.items():
                if self._correlation_key(placeholder) == key:
                    del pending[temp_id]
                    break

        current = self._view(collection)
        local = self._local(collection)
        merged: Dict[str, Any] = {}
        for entity in visible:
            entity_id = self._identity(entity)
            merged[entity_id] = current[entity_id] if entity_id in local and entity_id in current else entity
        for entity_id, entity in current.items():
            if entity_id in local and entity_id not in merged:
                merged[entity_id] = entity

        self._views[Collection(collection)] = merged
        self._loaded.add(Collection(collection))
        log.debug(
            "Reconciled '%s': %d visible, %d pending, %d unacknowledged",
            Collection(collection).value,
            len(merged),
            len(pending),
            len(local),
        )
        return self.view(collection)

    def acknowledge(self, collection: Optional[CollectionName] = None) -> None:
        """Mark local changes as stored, so later server reads are authoritative.

        Without ``collection`` every collection is acknowledged.
        """

        if collection is None:
            self._unacknowledged.clear()
        else:
            self._local(collection).clear()

    def view(self, collection: CollectionName) -> List[Any]:
        """Return placeholders then cached entities, minus anything tombstoned."""

        pending = [
            entity
            for temp_id, entity in self._pending(collection).items()
            if not self.tombstones.contains(collection, temp_id)
        ]
        cached = [
            entity
            for entity_id, entity in self._view(collection).items()
            if not self.tombstones.contains(collection, entity_id)
        ]
        return pending + cached

    def get(self, collection: CollectionName, entity_id: str) -> Optional[Any]:
        if self.tombstones.contains(collection, entity_id):
            return None
        found = self._view(collection).get(entity_id)
        if found is None:
            found = self._pending(collection).get(entity_id)
        return found

    @contextmanager
    def transaction(self, collection: CollectionName) -> Iterator["CacheConsistencyManager"]:
        """Apply optimistic changes that are undone if the body raises.

        The view, the placeholders, the unacknowledged ids and the tombstones
        of ``collection`` are snapshotted on entry. Changes made inside the
        block are visible at once; an exception restores the snapshot and is
        re-raised.
        """

        name = Collection(collection)
        saved_view = dict(self._view(name))
        saved_pending = dict(self._pending(name))
        saved_local = set(self._local(name))
        saved_tombstones = self.tombstones.snapshot(name)
        try:
            yield self
        except Exception:
            self._views[name] = saved_view
            self._placeholders[name] = saved_pending
            self._unacknowledged[name] = saved_local
            self.tombstones.restore(name, saved_tombstones)
            log.warning("Rolled back optimistic changes to '%s'", name.value)
            raise
        log.debug("Committed optimistic changes to '%s'", name.value)


__all__ = [
    "TEMP_ID_PREFIX",
    "EntityState",
    "default_correlation_key",
    "TombstoneStore",
    "CacheConsistencyManager",
]
