"""Embedded, replicable JSON document store.

A small CouchDB-flavoured store on top of SQLite:

- every document carries an opaque revision ``<generation>-<hash>`` and a
  write must name the current revision (optimistic concurrency)
- deletions leave tombstones so they can replicate
- every write gets a monotonically increasing sequence number (changes feed)
- replicated writes keep losing leaf revisions as conflicts
- design documents declare views whose index is maintained in the same
  transaction as the document write

All public methods are coroutines. The blocking SQLAlchemy work runs in a
worker thread and one lock per store makes each primitive a single atomic
transaction.
"""

import functools
import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import anyio
from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opennote_data.config import config
from opennote_data.exceptions import (
    DocumentConflictError,
    DocumentNotFoundError,
    ErrorCode,
    InvalidDocumentError,
    OpenNoteError,
    StorageError,
)
from opennote_data.models.db_models import (
    DBConflict,
    DBDocument,
    DBViewEntry,
    get_session_factory,
    init_db,
)
from opennote_data.models.schema import DESIGN_PREFIX, Document, Row, as_doc, generate_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Underscore fields managed by the store, never persisted in the body
_META_FIELDS = ("_id", "_rev", "_deleted", "_revisions", "_conflicts")

DocLike = Union[Dict[str, Any], Document]


def _rev_generation(rev: str) -> int:
    try:
        return int(rev.split("-", 1)[0])
    except (ValueError, AttributeError):
        raise InvalidDocumentError(f"Invalid revision '{rev}'", field="_rev")


def _rev_hash(rev: str) -> str:
    return rev.split("-", 1)[1] if "-" in rev else rev


def next_rev(prev_rev: Optional[str], body: Dict[str, Any], deleted: bool) -> str:
    """Compute the revision following prev_rev for the given content.

    Deterministic, so the same edit applied to the same parent on two
    replicas yields the same revision (and therefore no conflict).
    """
    generation = _rev_generation(prev_rev) + 1 if prev_rev else 1
    digest = hashlib.md5(
        json.dumps(
            [prev_rev, deleted, body], sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
    ).hexdigest()
    return f"{generation}-{digest}"


def revision_ancestry(doc: Dict[str, Any]) -> List[str]:
    """Expand a document's ``_revisions`` into full revs, newest first."""
    revisions = doc.get("_revisions")
    if not revisions:
        return [doc["_rev"]]
    start = int(revisions["start"])
    return [f"{start - i}-{rev_id}" for i, rev_id in enumerate(revisions["ids"])]


def _winner_key(rev: str, deleted: bool) -> Tuple[bool, int, str]:
    # Live beats deleted, then higher generation, then higher hash
    return (not deleted, _rev_generation(rev), _rev_hash(rev))


def _encode_key(key: Any) -> str:
    return json.dumps(key, sort_keys=True, separators=(",", ":"))


def _split(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Return the persisted body of a document (meta fields removed)."""
    return {k: v for k, v in doc.items() if k not in _META_FIELDS}


def resolve_database_url(name: Union[str, Path]) -> str:
    """Map a database name or path to a SQLite URL.

    ``:memory:`` gives a private in-memory database, anything that looks
    like a path is used as-is, and a bare name lands under the configured
    data directory.
    """
    name = str(name)
    if name in (":memory:", ""):
        return "sqlite://"
    if name.startswith("sqlite:"):
        return name
    if name.endswith(".db") or "/" in name or "\\" in name:
        path = config.get_absolute_path(Path(name))
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path}"
    return f"sqlite:///{config.get_database_path(name)}"


class DocumentStore:
    """Local document database.

    Args:
        name: Database name, file path or ``:memory:``.
        engine: Pre-configured SQLAlchemy engine (overrides name resolution).
        revs_limit: Maximum revision ancestry kept per document.
    """

    def __init__(
        self,
        name: Union[str, Path] = ":memory:",
        engine: Optional[Engine] = None,
        revs_limit: Optional[int] = None,
    ):
        self.name = str(name)
        self._url = resolve_database_url(name) if engine is None else str(engine.url)
        self._engine = init_db(self._url, engine)
        self._session_factory = get_session_factory(self._engine)
        self._lock = threading.Lock()
        self._revs_limit = revs_limit or config.revs_limit
        # view name -> emitted field; None means reload from design docs
        self._views: Optional[Dict[str, str]] = None

    def __repr__(self) -> str:
        return f"<DocumentStore(name='{self.name}')>"

    # =========================================================================
    # Transaction plumbing
    # =========================================================================

    def _transact(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            with self._session_factory() as session:
                try:
                    result = fn(session, *args)
                    session.commit()
                    return result
                except OpenNoteError:
                    session.rollback()
                    self._views = None
                    raise
                except SQLAlchemyError as e:
                    session.rollback()
                    self._views = None
                    logger.error(f"Store operation {operation} failed on {self.name}: {e}")
                    raise StorageError(
                        f"Store operation '{operation}' failed",
                        operation=operation,
                        code=ErrorCode.STORAGE_WRITE_FAILED,
                        original_error=e,
                    ) from e

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await anyio.to_thread.run_sync(
            functools.partial(self._transact, operation, fn, *args)
        )

    def _next_seq(self, session: Session) -> int:
        current = session.scalar(select(func.max(DBDocument.seq)))
        return (current or 0) + 1

    @staticmethod
    def _to_doc(row: Union[DBDocument, DBConflict], doc_id: str) -> Dict[str, Any]:
        doc = {"_id": doc_id, "_rev": row.rev}
        doc.update(json.loads(row.data))
        return doc

    @staticmethod
    def _revisions_field(revs: List[str]) -> Dict[str, Any]:
        return {
            "start": _rev_generation(revs[0]),
            "ids": [_rev_hash(r) for r in revs],
        }

    def _write(
        self,
        session: Session,
        existing: Optional[DBDocument],
        doc_id: str,
        revs: List[str],
        deleted: bool,
        body: Dict[str, Any],
    ) -> DBDocument:
        """Persist a new current revision and keep the views in step."""
        seq = self._next_seq(session)
        if existing is None:
            existing = DBDocument(id=doc_id)
            session.add(existing)
        existing.rev = revs[0]
        existing.revisions = json.dumps(revs[: self._revs_limit])
        existing.deleted = deleted
        existing.seq = seq
        existing.doc_type = None if deleted else body.get("type")
        existing.data = json.dumps({} if deleted else body)
        session.flush()

        if doc_id.startswith(DESIGN_PREFIX):
            self._views = None
            self._rebuild_views(session)
        else:
            self._index_document(session, doc_id, body, deleted)
        return existing

    # =========================================================================
    # Views
    # =========================================================================

    def _load_views(self, session: Session) -> Dict[str, str]:
        if self._views is not None:
            return self._views
        views: Dict[str, str] = {}
        design_rows = session.scalars(
            select(DBDocument).where(
                DBDocument.id.like(f"{DESIGN_PREFIX}%"),
                DBDocument.deleted.is_(False),
            )
        ).all()
        for row in design_rows:
            definition = json.loads(row.data)
            for view_name, view in (definition.get("views") or {}).items():
                field = view.get("map") if isinstance(view, dict) else None
                if isinstance(field, str) and field:
                    views[view_name] = field
                else:
                    logger.warning(
                        f"Ignoring view '{view_name}' in {row.id}: map must name a field"
                    )
        self._views = views
        return views

    def _index_document(
        self, session: Session, doc_id: str, body: Dict[str, Any], deleted: bool
    ) -> None:
        session.execute(delete(DBViewEntry).where(DBViewEntry.doc_id == doc_id))
        if deleted:
            return
        for view_name, field in self._load_views(session).items():
            session.add(
                DBViewEntry(view=view_name, key=_encode_key(body.get(field)), doc_id=doc_id)
            )

    def _rebuild_views(self, session: Session) -> None:
        session.execute(delete(DBViewEntry))
        views = self._load_views(session)
        if not views:
            return
        rows = session.scalars(
            select(DBDocument).where(
                DBDocument.deleted.is_(False),
                DBDocument.id.not_like(f"{DESIGN_PREFIX}%"),
            )
        ).all()
        for row in rows:
            body = json.loads(row.data)
            for view_name, field in views.items():
                session.add(
                    DBViewEntry(view=view_name, key=_encode_key(body.get(field)), doc_id=row.id)
                )
        logger.debug(f"Rebuilt {len(views)} view(s) over {len(rows)} document(s) in {self.name}")

    # =========================================================================
    # Document primitives
    # =========================================================================

    def _get(
        self,
        session: Session,
        doc_id: str,
        conflicts: bool,
        revs: bool,
        rev: Optional[str],
    ) -> Dict[str, Any]:
        existing = session.get(DBDocument, doc_id)
        if existing is None:
            raise DocumentNotFoundError(doc_id)

        if rev is not None and rev != existing.rev:
            conflict = session.scalar(
                select(DBConflict).where(DBConflict.doc_id == doc_id, DBConflict.rev == rev)
            )
            if conflict is None:
                raise DocumentNotFoundError(doc_id, f"Revision {rev} of '{doc_id}' not found")
            doc = self._to_doc(conflict, doc_id)
            if revs:
                doc["_revisions"] = self._revisions_field(json.loads(conflict.revisions))
            return doc

        if existing.deleted and rev is None:
            raise DocumentNotFoundError(doc_id, f"Document '{doc_id}' was deleted")

        doc = self._to_doc(existing, doc_id)
        if existing.deleted:
            doc["_deleted"] = True
        if revs:
            doc["_revisions"] = self._revisions_field(json.loads(existing.revisions))
        if conflicts:
            losing = session.scalars(
                select(DBConflict.rev).where(DBConflict.doc_id == doc_id)
            ).all()
            if losing:
                doc["_conflicts"] = sorted(losing, key=lambda r: _winner_key(r, False), reverse=True)
        return doc

    async def get(
        self,
        doc_id: str,
        conflicts: bool = False,
        revs: bool = False,
        rev: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch a document by id.

        Args:
            doc_id: The document id.
            conflicts: Include ``_conflicts`` (losing revisions) if any.
            revs: Include ``_revisions`` (ancestry).
            rev: Fetch this specific leaf revision; tombstones are returned
                (with ``_deleted``) only when asked for by revision.

        Raises:
            DocumentNotFoundError: If the document is absent or deleted.
        """
        return await self._run("get", self._get, doc_id, conflicts, revs, rev)

    def _put(self, session: Session, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = doc.get("_id")
        if not doc_id or not isinstance(doc_id, str):
            raise InvalidDocumentError("Document must have a string _id", field="_id")
        rev = doc.get("_rev")
        deleted = bool(doc.get("_deleted"))
        body = _split(doc)

        existing = session.get(DBDocument, doc_id)
        if existing is None:
            if deleted:
                raise DocumentNotFoundError(doc_id)
            # A revision from another database (e.g. a backup) seeds the ancestry
            parents: List[str] = [rev] if rev else []
        elif existing.deleted:
            # Re-creating a deleted id extends its tombstone
            if rev and rev != existing.rev:
                raise DocumentConflictError(doc_id, expected_rev=rev, actual_rev=existing.rev)
            parents = json.loads(existing.revisions)
        else:
            if rev != existing.rev:
                raise DocumentConflictError(doc_id, expected_rev=rev, actual_rev=existing.rev)
            parents = json.loads(existing.revisions)

        new_rev = next_rev(parents[0] if parents else None, body, deleted)
        self._write(session, existing, doc_id, [new_rev] + parents, deleted, body)
        return {"ok": True, "id": doc_id, "rev": new_rev}

    async def put(self, doc: DocLike) -> Dict[str, Any]:
        """Create or update a document.

        Returns:
            ``{"ok": True, "id": ..., "rev": ...}``

        A ``_rev`` on a document this store has never seen is accepted and
        becomes the parent of the new revision, so backups can be replayed
        into an empty store.

        Raises:
            DocumentConflictError: If ``_rev`` is not the current revision,
                or the id exists and no ``_rev`` was given.
            InvalidDocumentError: If ``_id`` is missing.
        """
        return await self._run("put", self._put, as_doc(doc))

    async def post(self, doc: DocLike) -> Dict[str, Any]:
        """Create a document with a store-assigned id."""
        raw = dict(as_doc(doc))
        raw["_id"] = generate_id()
        raw.pop("_rev", None)
        return await self.put(raw)

    def _remove(self, session: Session, doc_id: str, rev: Optional[str]) -> Dict[str, Any]:
        existing = session.get(DBDocument, doc_id)
        if existing is None:
            raise DocumentNotFoundError(doc_id)

        if rev is not None and rev != existing.rev:
            conflict = session.scalar(
                select(DBConflict).where(DBConflict.doc_id == doc_id, DBConflict.rev == rev)
            )
            if conflict is not None:
                session.delete(conflict)
                return {"ok": True, "id": doc_id, "rev": next_rev(rev, {}, True)}

        if existing.deleted:
            raise DocumentNotFoundError(doc_id, f"Document '{doc_id}' was deleted")
        if rev != existing.rev:
            raise DocumentConflictError(doc_id, expected_rev=rev, actual_rev=existing.rev)

        losing = session.scalars(select(DBConflict).where(DBConflict.doc_id == doc_id)).all()
        if losing:
            # Deleting the winner promotes the best remaining leaf
            best = max(losing, key=lambda c: _winner_key(c.rev, False))
            session.delete(best)
            self._write(
                session,
                existing,
                doc_id,
                json.loads(best.revisions),
                False,
                json.loads(best.data),
            )
            return {"ok": True, "id": doc_id, "rev": next_rev(rev, {}, True)}

        parents = json.loads(existing.revisions)
        new_rev = next_rev(rev, {}, True)
        self._write(session, existing, doc_id, [new_rev] + parents, True, {})
        return {"ok": True, "id": doc_id, "rev": new_rev}

    async def remove(self, doc: Union[DocLike, str], rev: Optional[str] = None) -> Dict[str, Any]:
        """Delete a document revision.

        Accepts a document (its ``_id``/``_rev`` are used) or an id plus
        ``rev``. Naming a losing conflict revision discards just that leaf.

        Raises:
            DocumentNotFoundError: If the document is absent or deleted.
            DocumentConflictError: If the revision is neither current nor
                a known conflict.
        """
        if isinstance(doc, str):
            doc_id = doc
        else:
            raw = as_doc(doc)
            doc_id = raw.get("_id")
            rev = rev or raw.get("_rev")
        if not doc_id:
            raise InvalidDocumentError("Document must have an _id", field="_id")
        return await self._run("remove", self._remove, doc_id, rev)

    def _all_docs(self, session: Session, include_docs: bool) -> List[Row]:
        rows = session.scalars(
            select(DBDocument).where(DBDocument.deleted.is_(False)).order_by(DBDocument.id)
        ).all()
        return [
            Row(
                id=r.id,
                rev=r.rev,
                key=r.id,
                doc=self._to_doc(r, r.id) if include_docs else None,
            )
            for r in rows
        ]

    async def all_docs(self, include_docs: bool = True) -> List[Row]:
        """Snapshot of every live document, ordered by id."""
        return await self._run("all_docs", self._all_docs, include_docs)

    def _query(self, session: Session, view: str, key: Any) -> List[Row]:
        if view not in self._load_views(session):
            raise DocumentNotFoundError(
                f"{DESIGN_PREFIX}{view}", f"View '{view}' is not defined"
            )
        rows = session.execute(
            select(DBViewEntry.key, DBDocument)
            .join(DBDocument, DBDocument.id == DBViewEntry.doc_id)
            .where(
                DBViewEntry.view == view,
                DBViewEntry.key == _encode_key(key),
                DBDocument.deleted.is_(False),
            )
            .order_by(DBDocument.id)
        ).all()
        return [
            Row(id=doc.id, rev=doc.rev, key=json.loads(raw_key), doc=self._to_doc(doc, doc.id))
            for raw_key, doc in rows
        ]

    async def query(self, view: str, key: Any) -> List[Row]:
        """Return documents whose emitted view key equals key.

        Raises:
            DocumentNotFoundError: If no design document defines the view.
        """
        return await self._run("query", self._query, view, key)

    # =========================================================================
    # Replication primitives
    # =========================================================================

    def _changes(
        self, session: Session, since: int, limit: Optional[int]
    ) -> Tuple[List[Dict[str, Any]], int]:
        stmt = select(DBDocument).where(DBDocument.seq > since).order_by(DBDocument.seq)
        if limit:
            stmt = stmt.limit(limit)
        rows = session.scalars(stmt).all()
        results = [
            {"id": r.id, "seq": r.seq, "rev": r.rev, "deleted": bool(r.deleted)}
            for r in rows
        ]
        last_seq = results[-1]["seq"] if results else since
        return results, last_seq

    async def changes(
        self, since: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Latest write of each document after sequence ``since``.

        Returns:
            ``(results, last_seq)`` where each result is
            ``{"id", "seq", "rev", "deleted"}``.
        """
        return await self._run("changes", self._changes, since, limit)

    def _known_revs(self, session: Session, doc_id: str) -> set:
        known = set()
        existing = session.get(DBDocument, doc_id)
        if existing is not None:
            known.update(json.loads(existing.revisions))
        for conflict in session.scalars(
            select(DBConflict).where(DBConflict.doc_id == doc_id)
        ).all():
            known.update(json.loads(conflict.revisions))
        return known

    def _revs_diff(
        self, session: Session, revs: Dict[str, List[str]]
    ) -> Dict[str, Dict[str, List[str]]]:
        diff = {}
        for doc_id, candidates in revs.items():
            known = self._known_revs(session, doc_id)
            missing = [r for r in candidates if r not in known]
            if missing:
                diff[doc_id] = {"missing": missing}
        return diff

    async def revs_diff(self, revs: Dict[str, List[str]]) -> Dict[str, Dict[str, List[str]]]:
        """Report which of the given revisions this store does not have."""
        return await self._run("revs_diff", self._revs_diff, revs)

    def _bulk_docs(self, session: Session, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        results = []
        for doc in docs:
            doc_id = doc.get("_id")
            rev = doc.get("_rev")
            if not doc_id or not rev:
                raise InvalidDocumentError("Replicated documents need _id and _rev")
            ancestry = revision_ancestry(doc)
            deleted = bool(doc.get("_deleted"))
            body = {} if deleted else _split(doc)

            existing = session.get(DBDocument, doc_id)
            if existing is None:
                self._write(session, None, doc_id, ancestry, deleted, body)
                results.append({"ok": True, "id": doc_id, "rev": rev})
                continue

            if rev in self._known_revs(session, doc_id):
                results.append({"ok": True, "id": doc_id, "rev": rev})
                continue

            losing = session.scalars(
                select(DBConflict).where(DBConflict.doc_id == doc_id)
            ).all()
            for conflict in losing:
                if conflict.rev in ancestry:
                    session.delete(conflict)

            if existing.rev in ancestry:
                self._write(session, existing, doc_id, ancestry, deleted, body)
            elif _winner_key(rev, deleted) > _winner_key(existing.rev, existing.deleted):
                if not existing.deleted:
                    session.add(
                        DBConflict(
                            doc_id=doc_id,
                            rev=existing.rev,
                            revisions=existing.revisions,
                            data=existing.data,
                        )
                    )
                logger.info(f"Conflict on '{doc_id}': incoming {rev} wins over {existing.rev}")
                self._write(session, existing, doc_id, ancestry, deleted, body)
            elif not deleted:
                logger.info(f"Conflict on '{doc_id}': local {existing.rev} wins over {rev}")
                session.add(
                    DBConflict(
                        doc_id=doc_id,
                        rev=rev,
                        revisions=json.dumps(ancestry[: self._revs_limit]),
                        data=json.dumps(body),
                    )
                )
            results.append({"ok": True, "id": doc_id, "rev": rev})
        return results

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Write replicated revisions (``new_edits=false`` semantics).

        Each document must carry ``_rev`` and should carry ``_revisions``.
        Known revisions are skipped, descendants fast-forward, and
        divergent branches become conflicts with a deterministic winner.
        """
        return await self._run("bulk_docs", self._bulk_docs, list(docs))

    # =========================================================================
    # Database lifecycle
    # =========================================================================

    def _info(self, session: Session) -> Dict[str, Any]:
        doc_count = session.scalar(
            select(func.count()).select_from(DBDocument).where(DBDocument.deleted.is_(False))
        )
        return {
            "db_name": self.name,
            "doc_count": doc_count or 0,
            "update_seq": session.scalar(select(func.max(DBDocument.seq))) or 0,
        }

    async def info(self) -> Dict[str, Any]:
        """Database name, live document count and latest sequence."""
        return await self._run("info", self._info)

    def _destroy(self, session: Session) -> None:
        session.execute(delete(DBViewEntry))
        session.execute(delete(DBConflict))
        session.execute(delete(DBDocument))
        self._views = None

    async def destroy(self) -> None:
        """Delete every document, tombstone and index entry."""
        await self._run("destroy", self._destroy)
        logger.info(f"Destroyed database {self.name}")

    def sync(self, remote: Any, options: Optional[Any] = None):
        """Create a bidirectional replication session with remote.

        The session is not started; call ``start()`` on it (the sync
        service does) after wiring event handlers.
        """
        from opennote_data.storage.replication import SyncSession

        return SyncSession(self, remote, options)

    async def close(self) -> None:
        """Release the engine's connections."""
        self._engine.dispose()
