"""Tests for the tombstone-guarded cache."""

from __future__ import annotations

import itertools
from dataclasses import dataclass

import pytest

from chantier_erp.cache import CacheConsistencyManager, EntityState, TombstoneStore
from chantier_erp.constants import Collection


@dataclass(frozen=True)
class Doc:
    document_id: str
    client_ref: str = "Dupont"
    created_at: str = "2026-03-02T09:00:00"
    total: int = 0


def _ids(entities):
    return [entity.document_id for entity in entities]


@pytest.fixture
def manager():
    return CacheConsistencyManager()


def test_delete_then_stale_server_read(manager):
    manager.delete(Collection.INVOICES, "inv-1")

    visible = manager.reconcile_with_server(Collection.INVOICES, [Doc("inv-1"), Doc("inv-2")])

    assert _ids(visible) == ["inv-2"]
    assert _ids(manager.view(Collection.INVOICES)) == ["inv-2"]
    assert manager.get(Collection.INVOICES, "inv-1") is None


def test_server_read_then_delete(manager):
    manager.reconcile_with_server("invoices", [Doc("inv-1"), Doc("inv-2")])

    manager.delete("invoices", "inv-1")

    assert _ids(manager.view("invoices")) == ["inv-2"]


@pytest.mark.parametrize(
    "steps",
    list(itertools.permutations(["delete", "reconcile_stale", "reconcile_fresh", "update"])),
)
def test_deleted_id_never_visible_after_delete(steps):
    manager = CacheConsistencyManager()
    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1"), Doc("q-2")])
    deleted = False
    for step in steps:
        if step == "delete":
            manager.delete(Collection.QUOTES, "q-1")
            deleted = True
        elif step == "reconcile_stale":
            manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1"), Doc("q-2")])
        elif step == "reconcile_fresh":
            manager.reconcile_with_server(Collection.QUOTES, [Doc("q-2")])
        else:
            manager.update(Collection.QUOTES, Doc("q-1", total=5))
        if deleted:
            assert "q-1" not in _ids(manager.view(Collection.QUOTES))
            assert manager.get(Collection.QUOTES, "q-1") is None

    assert "q-1" not in _ids(manager.view(Collection.QUOTES))
    assert manager.state(Collection.QUOTES, "q-1") is EntityState.TOMBSTONED


def test_update_of_deleted_entity_is_ignored(manager):
    manager.create(Collection.QUOTES, Doc("q-1"))
    manager.delete(Collection.QUOTES, "q-1")

    assert manager.update(Collection.QUOTES, Doc("q-1", total=9)) is False
    assert manager.view(Collection.QUOTES) == []


def test_create_lifts_tombstone(manager):
    manager.delete(Collection.QUOTES, "q-1")

    manager.create(Collection.QUOTES, Doc("q-1", total=3))

    assert manager.state(Collection.QUOTES, "q-1") is EntityState.CACHED
    assert manager.get(Collection.QUOTES, "q-1").total == 3


def test_states(manager):
    assert manager.state(Collection.QUOTES, "q-1") is EntityState.ABSENT
    manager.create(Collection.QUOTES, Doc("q-1"))
    assert manager.state(Collection.QUOTES, "q-1") is EntityState.CACHED
    manager.delete(Collection.QUOTES, "q-1")
    assert manager.state(Collection.QUOTES, "q-1") is EntityState.TOMBSTONED


def test_collections_are_independent(manager):
    manager.delete(Collection.QUOTES, "shared")

    manager.reconcile_with_server(Collection.INVOICES, [Doc("shared")])

    assert _ids(manager.view(Collection.INVOICES)) == ["shared"]


def test_managers_share_nothing_unless_store_is_injected():
    store = TombstoneStore()
    first = CacheConsistencyManager(store)
    second = CacheConsistencyManager(store)
    isolated = CacheConsistencyManager()

    first.delete(Collection.QUOTES, "q-1")

    assert second.reconcile_with_server(Collection.QUOTES, [Doc("q-1")]) == []
    assert _ids(isolated.reconcile_with_server(Collection.QUOTES, [Doc("q-1")])) == ["q-1"]
    assert len(store) == 1


def test_placeholders_are_listed_first(manager):
    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1")])

    temp_id = manager.add_placeholder(Collection.QUOTES, Doc("pending", client_ref="Martin"))

    assert temp_id.startswith("temp-")
    assert _ids(manager.view(Collection.QUOTES)) == ["pending", "q-1"]
    assert manager.state(Collection.QUOTES, temp_id) is EntityState.CACHED


def test_confirm_replaces_placeholder(manager):
    temp_id = manager.add_placeholder(Collection.QUOTES, Doc("draft"))

    manager.confirm(Collection.QUOTES, temp_id, Doc("q-9"))

    assert _ids(manager.view(Collection.QUOTES)) == ["q-9"]
    assert manager.state(Collection.QUOTES, temp_id) is EntityState.ABSENT


def test_reconcile_settles_placeholders_by_correlation(manager):
    manager.add_placeholder(Collection.QUOTES, Doc("a", client_ref="Martin", created_at="t1"))
    manager.add_placeholder(Collection.QUOTES, Doc("b", client_ref="Martin", created_at="t1"))
    manager.add_placeholder(Collection.QUOTES, Doc("c", client_ref="Leroy", created_at="t2"))

    visible = manager.reconcile_with_server(
        Collection.QUOTES, [Doc("q-1", client_ref="Martin", created_at="t1"), Doc("q-0")]
    )

    assert _ids(visible) == ["b", "c", "q-1", "q-0"]


def test_local_create_survives_stale_server_read(manager):
    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1")])
    manager.create(Collection.QUOTES, Doc("q-new"))

    visible = manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1")])

    assert _ids(visible) == ["q-1", "q-new"]
    assert manager.get(Collection.QUOTES, "q-new") is not None


def test_local_update_beats_older_server_copy(manager):
    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1")])
    manager.update(Collection.QUOTES, Doc("q-1", total=7))

    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1", total=0)])

    assert manager.get(Collection.QUOTES, "q-1").total == 7


def test_server_is_authoritative_after_acknowledge(manager):
    manager.create(Collection.QUOTES, Doc("q-1", total=7))
    manager.create(Collection.INVOICES, Doc("inv-1"))

    manager.acknowledge(Collection.QUOTES)
    manager.reconcile_with_server(Collection.QUOTES, [Doc("q-1", total=9)])
    manager.reconcile_with_server(Collection.INVOICES, [])

    assert manager.get(Collection.QUOTES, "q-1").total == 9
    assert _ids(manager.view(Collection.INVOICES)) == ["inv-1"]

    manager.acknowledge()
    assert manager.reconcile_with_server(Collection.INVOICES, []) == []


def test_rollback_restores_unacknowledged_changes(manager):
    manager.create(Collection.QUOTES, Doc("q-1"))

    with pytest.raises(RuntimeError):
        with manager.transaction(Collection.QUOTES) as cache:
            cache.acknowledge(Collection.QUOTES)
            raise RuntimeError

    assert _ids(manager.reconcile_with_server(Collection.QUOTES, [])) == ["q-1"]


def test_temporary_ids_are_unique(manager):
    assert len({manager.temporary_id() for _ in range(50)}) == 50


def test_transaction_commits_on_success(manager):
    manager.reconcile_with_server(Collection.INVOICES, [Doc("inv-1"), Doc("inv-2")])

    with manager.transaction(Collection.INVOICES) as cache:
        cache.delete(Collection.INVOICES, "inv-1")

    assert _ids(manager.view(Collection.INVOICES)) == ["inv-2"]


def test_transaction_rolls_back_failed_delete(manager):
    manager.reconcile_with_server(Collection.INVOICES, [Doc("inv-1"), Doc("inv-2")])

    with pytest.raises(RuntimeError):
        with manager.transaction(Collection.INVOICES) as cache:
            cache.delete(Collection.INVOICES, "inv-1")
            assert _ids(cache.view(Collection.INVOICES)) == ["inv-2"]
            raise RuntimeError("store unreachable")

    assert _ids(manager.view(Collection.INVOICES)) == ["inv-1", "inv-2"]
    assert manager.state(Collection.INVOICES, "inv-1") is EntityState.CACHED


def test_transaction_rolls_back_placeholder(manager):
    with pytest.raises(ValueError):
        with manager.transaction(Collection.QUOTES) as cache:
            cache.add_placeholder(Collection.QUOTES, Doc("optimistic"))
            raise ValueError("rejected")

    assert manager.view(Collection.QUOTES) == []


def test_rollback_leaves_other_collections_alone(manager):
    manager.delete(Collection.QUOTES, "q-1")

    with pytest.raises(RuntimeError):
        with manager.transaction(Collection.INVOICES):
            manager.delete(Collection.INVOICES, "inv-1")
            raise RuntimeError

    assert manager.state(Collection.QUOTES, "q-1") is EntityState.TOMBSTONED
    assert manager.state(Collection.INVOICES, "inv-1") is EntityState.ABSENT


def test_is_loaded_tracks_server_reads(manager):
    assert not manager.is_loaded(Collection.QUOTES)
    manager.view(Collection.QUOTES)
    assert not manager.is_loaded(Collection.QUOTES)
    manager.reconcile_with_server(Collection.QUOTES, [])
    assert manager.is_loaded(Collection.QUOTES)


def test_unknown_collection_is_rejected(manager):
    with pytest.raises(ValueError):
        manager.view("clients")
