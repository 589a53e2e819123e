"""Tests for the embedded document store."""

import re

import pytest

from opennote_data.exceptions import (
    DocumentConflictError,
    DocumentNotFoundError,
    ErrorCode,
    InvalidDocumentError,
    StorageError,
)
from opennote_data.models.db_models import Base
from opennote_data.models.schema import Folder
from opennote_data.storage import open_database
from opennote_data.storage.document_store import (
    DocumentStore,
    next_rev,
    resolve_database_url,
    revision_ancestry,
)
from opennote_data.storage.remote_database import RemoteDatabase

REV_PATTERN = re.compile(r"^\d+-[0-9a-f]{32}$")

PARENT_VIEW = {
    "_id": "_design/parentFolderID",
    "language": "field",
    "views": {"parentFolderID": {"map": "parentFolderID"}},
}


async def replicate(source, target, doc_id):
    """Copy the current revision of doc_id with its ancestry."""
    doc = await source.get(doc_id, revs=True)
    await target.bulk_docs([doc])


@pytest.fixture
async def memory_store(test_config):
    db = DocumentStore(":memory:")
    yield db
    await db.close()


class TestRevisions:

    def test_next_rev_is_deterministic(self):
        first = next_rev(None, {"a": 1}, False)
        assert first == next_rev(None, {"a": 1}, False)
        assert REV_PATTERN.match(first)
        assert first.startswith("1-")

    def test_next_rev_depends_on_parent_and_content(self):
        parent = next_rev(None, {"a": 1}, False)
        child = next_rev(parent, {"a": 2}, False)
        assert child.startswith("2-")
        assert child != next_rev(parent, {"a": 3}, False)
        assert child != next_rev(parent, {"a": 2}, True)

    def test_revision_ancestry_expands_revisions(self):
        doc = {"_rev": "3-c", "_revisions": {"start": 3, "ids": ["c", "b", "a"]}}
        assert revision_ancestry(doc) == ["3-c", "2-b", "1-a"]
        assert revision_ancestry({"_rev": "1-a"}) == ["1-a"]


class TestDatabaseNames:

    def test_memory(self):
        assert resolve_database_url(":memory:") == "sqlite://"

    def test_bare_name_lands_in_data_dir(self, test_config):
        url = resolve_database_url("openNote")
        assert url.endswith("openNote.db")
        assert str(test_config.base_dir) in url

    def test_open_database_picks_remote_for_urls(self, test_config):
        assert isinstance(open_database("https://example.com/notes"), RemoteDatabase)
        assert isinstance(open_database("local.db"), DocumentStore)


class TestDocumentCrud:
    """put / get / post / remove semantics."""

    @pytest.mark.anyio
    async def test_put_and_get(self, store):
        result = await store.put({"_id": "n1", "type": "note", "note": "hi"})
        assert result["ok"] is True
        assert REV_PATTERN.match(result["rev"])

        doc = await store.get("n1")
        assert doc == {"_id": "n1", "_rev": result["rev"], "type": "note", "note": "hi"}

    @pytest.mark.anyio
    async def test_put_accepts_models(self, store):
        result = await store.put(Folder(id="f1", name="Work"))
        doc = await store.get("f1")
        assert doc["title"] == "Work"
        assert doc["_rev"] == result["rev"]

    @pytest.mark.anyio
    async def test_update_needs_current_rev(self, store):
        first = await store.put({"_id": "n1", "v": 1})
        second = await store.put({"_id": "n1", "_rev": first["rev"], "v": 2})
        assert second["rev"].startswith("2-")

        with pytest.raises(DocumentConflictError) as exc_info:
            await store.put({"_id": "n1", "_rev": first["rev"], "v": 3})
        assert exc_info.value.status == 409
        assert exc_info.value.actual_rev == second["rev"]

    @pytest.mark.anyio
    async def test_create_existing_id_without_rev_conflicts(self, store):
        await store.put({"_id": "n1"})
        with pytest.raises(DocumentConflictError):
            await store.put({"_id": "n1"})

    @pytest.mark.anyio
    async def test_missing_id_is_invalid(self, store):
        with pytest.raises(InvalidDocumentError):
            await store.put({"type": "note"})

    @pytest.mark.anyio
    async def test_post_assigns_id(self, store):
        result = await store.post({"_id": "ignored", "_rev": "9-x", "type": "note"})
        assert result["id"] != "ignored"
        doc = await store.get(result["id"])
        assert doc["_rev"].startswith("1-")

    @pytest.mark.anyio
    async def test_unknown_rev_seeds_ancestry(self, store):
        result = await store.put({"_id": "n1", "_rev": "5-" + "a" * 32, "v": 1})
        assert result["rev"].startswith("6-")

    @pytest.mark.anyio
    async def test_get_missing_raises_not_found(self, store):
        with pytest.raises(DocumentNotFoundError) as exc_info:
            await store.get("nope")
        assert exc_info.value.status == 404
        assert exc_info.value.code == ErrorCode.DOCUMENT_NOT_FOUND

    @pytest.mark.anyio
    async def test_remove_leaves_invisible_tombstone(self, store):
        created = await store.put({"_id": "n1", "v": 1})
        removed = await store.remove("n1", created["rev"])
        assert removed["rev"].startswith("2-")

        with pytest.raises(DocumentNotFoundError):
            await store.get("n1")
        assert [row.id for row in await store.all_docs()] == []
        tombstone = await store.get("n1", rev=removed["rev"])
        assert tombstone["_deleted"] is True

        with pytest.raises(DocumentNotFoundError):
            await store.remove("n1", removed["rev"])

    @pytest.mark.anyio
    async def test_remove_with_stale_rev_conflicts(self, store):
        first = await store.put({"_id": "n1", "v": 1})
        await store.put({"_id": "n1", "_rev": first["rev"], "v": 2})
        with pytest.raises(DocumentConflictError):
            await store.remove({"_id": "n1", "_rev": first["rev"]})

    @pytest.mark.anyio
    async def test_recreate_after_delete_extends_history(self, store):
        created = await store.put({"_id": "n1"})
        await store.remove("n1", created["rev"])
        again = await store.put({"_id": "n1", "v": 2})
        assert again["rev"].startswith("3-")
        assert (await store.get("n1"))["v"] == 2

    @pytest.mark.anyio
    async def test_revs_lists_ancestry(self, store):
        first = await store.put({"_id": "n1", "v": 1})
        second = await store.put({"_id": "n1", "_rev": first["rev"], "v": 2})
        doc = await store.get("n1", revs=True)
        assert doc["_revisions"]["start"] == 2
        assert revision_ancestry(doc) == [second["rev"], first["rev"]]

    @pytest.mark.anyio
    async def test_all_docs_ordered_by_id(self, store):
        for doc_id in ("c", "a", "b"):
            await store.put({"_id": doc_id})
        rows = await store.all_docs()
        assert [row.id for row in rows] == ["a", "b", "c"]
        assert all(row.key == row.id for row in rows)
        assert all(row.doc is None for row in await store.all_docs(include_docs=False))


class TestViews:
    """Declarative design-document views."""

    @pytest.mark.anyio
    async def test_query_without_definition_fails(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.query("parentFolderID", None)

    @pytest.mark.anyio
    async def test_query_by_parent(self, store):
        await store.put(PARENT_VIEW)
        await store.put({"_id": "f1", "type": "folder"})
        await store.put({"_id": "n1", "type": "note", "parentFolderID": "f1"})
        await store.put({"_id": "n2", "type": "note", "parentFolderID": "f1"})
        await store.put({"_id": "n3", "type": "note", "parentFolderID": "f2"})

        children = await store.query("parentFolderID", "f1")
        assert [row.id for row in children] == ["n1", "n2"]
        assert children[0].key == "f1"
        assert children[0].doc["type"] == "note"

        roots = await store.query("parentFolderID", None)
        assert [row.id for row in roots] == ["f1"]

    @pytest.mark.anyio
    async def test_index_follows_updates_and_deletes(self, store):
        await store.put(PARENT_VIEW)
        created = await store.put({"_id": "n1", "parentFolderID": "f1"})
        moved = await store.put({"_id": "n1", "_rev": created["rev"], "parentFolderID": "f2"})
        assert await store.query("parentFolderID", "f1") == []
        assert [r.id for r in await store.query("parentFolderID", "f2")] == ["n1"]

        await store.remove("n1", moved["rev"])
        assert await store.query("parentFolderID", "f2") == []

    @pytest.mark.anyio
    async def test_late_definition_indexes_existing_docs(self, store):
        await store.put({"_id": "n1", "parentFolderID": "f1"})
        await store.put(PARENT_VIEW)
        assert [r.id for r in await store.query("parentFolderID", "f1")] == ["n1"]

    @pytest.mark.anyio
    async def test_deleting_definition_drops_view(self, store):
        result = await store.put(PARENT_VIEW)
        await store.remove(PARENT_VIEW["_id"], result["rev"])
        with pytest.raises(DocumentNotFoundError):
            await store.query("parentFolderID", None)


class TestReplicationPrimitives:

    @pytest.mark.anyio
    async def test_changes_in_sequence_order(self, store):
        a = await store.put({"_id": "a"})
        await store.put({"_id": "b"})
        await store.remove("a", a["rev"])

        results, last_seq = await store.changes()
        assert [(c["id"], c["deleted"]) for c in results] == [("b", False), ("a", True)]
        assert last_seq == results[-1]["seq"]

        more, since = await store.changes(since=last_seq)
        assert more == [] and since == last_seq

        limited, _ = await store.changes(limit=1)
        assert len(limited) == 1

    @pytest.mark.anyio
    async def test_revs_diff_reports_unknown_revs(self, store):
        first = await store.put({"_id": "a", "v": 1})
        second = await store.put({"_id": "a", "_rev": first["rev"], "v": 2})
        diff = await store.revs_diff(
            {"a": [first["rev"], second["rev"], "3-" + "f" * 32], "b": ["1-" + "0" * 32]}
        )
        assert diff == {"a": {"missing": ["3-" + "f" * 32]}, "b": {"missing": ["1-" + "0" * 32]}}

    @pytest.mark.anyio
    async def test_bulk_docs_fast_forwards(self, store, memory_store):
        first = await store.put({"_id": "a", "v": 1})
        await replicate(store, memory_store, "a")
        await store.put({"_id": "a", "_rev": first["rev"], "v": 2})
        await replicate(store, memory_store, "a")

        doc = await memory_store.get("a", conflicts=True)
        assert doc["v"] == 2
        assert "_conflicts" not in doc

    @pytest.mark.anyio
    async def test_bulk_docs_is_idempotent(self, store, memory_store):
        await store.put({"_id": "a"})
        await replicate(store, memory_store, "a")
        await replicate(store, memory_store, "a")
        assert (await memory_store.info())["doc_count"] == 1

    @pytest.mark.anyio
    async def test_divergent_edits_converge_on_one_winner(self, store, memory_store):
        base = await store.put({"_id": "a", "v": 0})
        await replicate(store, memory_store, "a")
        await store.put({"_id": "a", "_rev": base["rev"], "v": "local"})
        await memory_store.put({"_id": "a", "_rev": base["rev"], "v": "remote"})

        snapshot_local = await store.get("a", revs=True)
        await replicate(memory_store, store, "a")
        await memory_store.bulk_docs([snapshot_local])

        left = await store.get("a", conflicts=True)
        right = await memory_store.get("a", conflicts=True)
        assert left["_rev"] == right["_rev"]
        assert left["v"] == right["v"]
        assert len(left["_conflicts"]) == 1
        assert left["_conflicts"] == right["_conflicts"]

    @pytest.mark.anyio
    async def test_removing_conflict_rev_keeps_winner(self, store, memory_store):
        base = await store.put({"_id": "a", "v": 0})
        await replicate(store, memory_store, "a")
        await store.put({"_id": "a", "_rev": base["rev"], "v": 1})
        await memory_store.put({"_id": "a", "_rev": base["rev"], "v": 2})
        await replicate(memory_store, store, "a")

        doc = await store.get("a", conflicts=True)
        await store.remove("a", doc["_conflicts"][0])
        after = await store.get("a", conflicts=True)
        assert after["_rev"] == doc["_rev"]
        assert "_conflicts" not in after

    @pytest.mark.anyio
    async def test_deleting_winner_promotes_conflict(self, store, memory_store):
        base = await store.put({"_id": "a", "v": 0})
        await replicate(store, memory_store, "a")
        await store.put({"_id": "a", "_rev": base["rev"], "v": 1})
        await memory_store.put({"_id": "a", "_rev": base["rev"], "v": 2})
        await replicate(memory_store, store, "a")

        doc = await store.get("a", conflicts=True)
        loser = doc["_conflicts"][0]
        await store.remove(doc)
        promoted = await store.get("a", conflicts=True)
        assert promoted["_rev"] == loser
        assert "_conflicts" not in promoted


class TestLifecycle:

    @pytest.mark.anyio
    async def test_info_and_destroy(self, store):
        await store.put(PARENT_VIEW)
        await store.put({"_id": "n1", "parentFolderID": "f1"})
        info = await store.info()
        assert info["doc_count"] == 2
        assert info["update_seq"] == 2

        await store.destroy()
        assert (await store.info())["doc_count"] == 0
        with pytest.raises(DocumentNotFoundError):
            await store.query("parentFolderID", "f1")
        await store.put({"_id": "n1"})

    @pytest.mark.anyio
    async def test_database_errors_become_storage_errors(self, store):
        await store.put({"_id": "n1"})
        Base.metadata.drop_all(store._engine)
        with pytest.raises(StorageError) as exc_info:
            await store.get("n1")
        assert exc_info.value.status == 500
