"""Document store adapter: the narrow contract the engines build on."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from opennote_data.exceptions import (
    BackupFormatError,
    DocumentConflictError,
    DocumentNotFoundError,
    InvalidDocumentError,
    OpenNoteError,
)
from opennote_data.models.schema import (
    DESIGN_PREFIX,
    PARENT_FOLDER_INDEX,
    Document,
    DocumentType,
    ImportErrorKind,
    ImportOutcome,
    Row,
)
from opennote_data.observability import traced
from opennote_data.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

PARENT_FOLDER_DESIGN_ID = f"{DESIGN_PREFIX}{PARENT_FOLDER_INDEX}"


def create_design_doc(name: str, field: str) -> Dict[str, Any]:
    """Build a design document declaring view ``name``.

    The view emits the value of ``field`` (null when absent) for every
    document, so querying it by key finds all documents with that value.
    """
    return {
        "_id": f"{DESIGN_PREFIX}{name}",
        "language": "field",
        "views": {name: {"map": field}},
    }


def _type_filter(row: Optional[Row], doc_type: DocumentType) -> bool:
    if not row or not row.doc:
        return False
    return row.doc.get("type") == doc_type.value


def folder_filter(row: Optional[Row]) -> bool:
    """True for rows holding a folder."""
    return _type_filter(row, DocumentType.FOLDER)


def note_filter(row: Optional[Row]) -> bool:
    """True for rows holding a note."""
    return _type_filter(row, DocumentType.NOTE)


def _definition(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in ("_id", "_rev")}


class StorageService:
    """Adapter over the local document store.

    Owns the local store handle for the process lifetime. All engines go
    through this class; none of them touches the store directly.
    """

    folder_filter = staticmethod(folder_filter)
    note_filter = staticmethod(note_filter)

    def __init__(self, store: DocumentStore):
        """Initialize the adapter.

        Args:
            store: The local document store.
        """
        self._store = store

    def database(self) -> DocumentStore:
        """The local store handle."""
        return self._store

    # =========================================================================
    # Initialization
    # =========================================================================

    async def init(self) -> None:
        """Make sure exactly one parentFolderID index definition exists."""
        await self._drop_conflicting_revisions(PARENT_FOLDER_DESIGN_ID)
        await self._ensure_design_doc(
            create_design_doc(PARENT_FOLDER_INDEX, PARENT_FOLDER_INDEX)
        )

    async def _drop_conflicting_revisions(self, doc_id: str) -> int:
        try:
            doc = await self._store.get(doc_id, conflicts=True)
        except DocumentNotFoundError:
            return 0
        losing = doc.get("_conflicts", [])
        for rev in losing:
            await self._store.remove(doc_id, rev)
        if losing:
            logger.info(f"Removed {len(losing)} conflicting revision(s) of {doc_id}")
        return len(losing)

    async def _ensure_design_doc(self, design: Dict[str, Any]) -> None:
        try:
            await self._store.put(design)
            logger.info(f"Created index definition {design['_id']}")
            return
        except DocumentConflictError:
            pass

        # Already defined (possibly just now, by someone else)
        current = await self._store.get(design["_id"])
        if _definition(current) == _definition(design):
            return
        try:
            await self._store.put(dict(design, _rev=current["_rev"]))
            logger.info(f"Updated stale index definition {design['_id']}")
        except DocumentConflictError:
            logger.debug(f"{design['_id']} was updated concurrently, keeping that one")

    # =========================================================================
    # Primitives
    # =========================================================================

    async def get(self, doc_id: str) -> Dict[str, Any]:
        return await self._store.get(doc_id)

    async def post(self, doc: Union[Dict[str, Any], Document]) -> Dict[str, Any]:
        return await self._store.post(doc)

    async def put(self, doc: Union[Dict[str, Any], Document]) -> Dict[str, Any]:
        return await self._store.put(doc)

    async def delete(self, doc: Union[Dict[str, Any], Document]) -> Dict[str, Any]:
        return await self._store.remove(doc)

    async def all_docs(self) -> List[Row]:
        """Snapshot of every document at call time."""
        return await self._store.all_docs(include_docs=True)

    async def load_folder_contents(self, folder_id: Optional[str]) -> List[Row]:
        """Children of folder_id via the parentFolderID index."""
        return await self._store.query(PARENT_FOLDER_INDEX, folder_id)

    # =========================================================================
    # Export / import
    # =========================================================================

    @traced("export_data")
    async def export_data(self) -> Dict[str, Any]:
        """Dump every document as ``{"data": [rows]}``."""
        rows = await self.all_docs()
        return {"data": [row.to_dict() for row in rows]}

    async def export_to_file(self, path: Union[str, Path]) -> int:
        """Write the export to a JSON file.

        Returns:
            Number of documents written.
        """
        backup = await self.export_data()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(backup, f, indent=2)
        logger.info(f"Exported {len(backup['data'])} documents to {target}")
        return len(backup["data"])

    async def _import_one(self, entry: Any) -> ImportOutcome:
        doc = entry.get("doc") if isinstance(entry, dict) else None
        if not isinstance(doc, dict):
            return ImportOutcome(
                id=entry.get("id") if isinstance(entry, dict) else None,
                succeeded=False,
                error_kind=ImportErrorKind.INVALID,
                message="Backup entry has no document",
            )
        doc_id = doc.get("_id")
        try:
            result = await self._store.put(doc)
            return ImportOutcome(id=doc_id, succeeded=True, rev=result["rev"])
        except DocumentConflictError:
            message = f"{doc_id} was in conflict and was not imported"
            logger.warning(message)
            return ImportOutcome(
                id=doc_id,
                succeeded=False,
                error_kind=ImportErrorKind.CONFLICT,
                message=message,
            )
        except InvalidDocumentError as e:
            return ImportOutcome(
                id=doc_id,
                succeeded=False,
                error_kind=ImportErrorKind.INVALID,
                message=e.message,
            )
        except OpenNoteError as e:
            logger.error(f"Failed to import {doc_id}: {e}")
            return ImportOutcome(
                id=doc_id,
                succeeded=False,
                error_kind=ImportErrorKind.UNEXPECTED,
                message=e.message,
            )

    @traced("import_data")
    async def import_data(self, backup: Dict[str, Any]) -> List[ImportOutcome]:
        """Replay every backup entry through put.

        Per-document failures never abort the batch; each entry gets an
        ImportOutcome in the order of the backup.

        Raises:
            BackupFormatError: If the backup is not ``{"data": [...]}``.
        """
        if not isinstance(backup, dict) or not isinstance(backup.get("data"), list):
            raise BackupFormatError("Backup must be an object with a 'data' list")
        outcomes = await asyncio.gather(*(self._import_one(e) for e in backup["data"]))
        failed = sum(1 for o in outcomes if not o.succeeded)
        logger.info(f"Imported {len(outcomes) - failed} of {len(outcomes)} documents")
        return list(outcomes)

    async def import_file(self, path: Union[str, Path]) -> List[ImportOutcome]:
        """Read a JSON backup file and import it."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                backup = json.load(f)
        except json.JSONDecodeError as e:
            raise BackupFormatError(f"Backup is not valid JSON: {e.msg}") from e
        return await self.import_data(backup)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def destroy_database(self) -> None:
        """Wipe the local store and re-create the index definition."""
        await self._store.destroy()
        await self.init()
