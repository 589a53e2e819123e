"""Folder hierarchy operations: subtree deletion and orphan cleanup."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from opennote_data.config import config
from opennote_data.exceptions import (
    DocumentConflictError,
    DocumentNotFoundError,
)
from opennote_data.models.schema import Document, DocumentType, Row, parse_document
from opennote_data.observability import timed_operation, traced
from opennote_data.services.storage_service import StorageService
from opennote_data.services.tag_service import TagService

logger = logging.getLogger(__name__)


class FolderService:
    """Structural operations over the parent -> children relation.

    When a tag engine is attached, every deletion also keeps the tag
    index consistent.
    """

    def __init__(
        self,
        storage: StorageService,
        tag_service: Optional[TagService] = None,
        max_retries: Optional[int] = None,
    ):
        """Initialize the folder engine.

        Args:
            storage: Document store adapter.
            tag_service: Tag engine to notify about deleted notes.
            max_retries: Conflict retries per removal (defaults to config).
        """
        self.storage = storage
        self.tag_service = tag_service
        self.max_retries = (
            config.folder_delete_max_retries if max_retries is None else max_retries
        )

    async def _remove(self, doc: Dict[str, Any]) -> bool:
        """Remove doc, re-reading it on conflicts.

        Returns:
            False if it was already gone.
        """
        attempt = 0
        while True:
            try:
                await self.storage.delete(doc)
                return True
            except DocumentNotFoundError:
                logger.debug(f"{doc.get('_id')} already removed")
                return False
            except DocumentConflictError:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                try:
                    doc = await self.storage.get(doc["_id"])
                except DocumentNotFoundError:
                    return False
                logger.debug(f"Retrying removal of {doc['_id']} at {doc['_rev']}")

    async def _delete_subtree(self, folder_doc: Dict[str, Any]) -> bool:
        children = await self.storage.load_folder_contents(folder_doc["_id"])
        tasks = []
        for row in children:
            if row.type == DocumentType.FOLDER.value:
                tasks.append(asyncio.ensure_future(self._delete_subtree(row.doc)))
            else:
                tasks.append(asyncio.ensure_future(self._remove(row.doc)))
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # Stop sibling branches and reap their outcomes before re-raising
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return await self._remove(folder_doc)

    @traced("delete_folder_subtree")
    async def delete_folder_subtree(self, folder: Union[Dict[str, Any], Document]) -> bool:
        """Delete folder and everything beneath it.

        Children are removed (concurrently) before the folder itself. A
        folder without an id is ignored.

        Returns:
            True if the folder document was removed by this call.

        Raises:
            DocumentConflictError: If a removal kept conflicting. Nothing
                is rolled back; calling again finishes the job.
        """
        folder = parse_document(folder)
        if not folder.id:
            logger.debug("delete_folder_subtree called without a folder id, ignoring")
            return False

        if self.tag_service is not None:
            await self.tag_service.delete_folder(folder)

        folder_doc = folder.to_doc()
        if not folder.rev:
            try:
                folder_doc = await self.storage.get(folder.id)
            except DocumentNotFoundError:
                return False
        removed = await self._delete_subtree(folder_doc)
        logger.info(f"Deleted folder {folder.id} and its contents")
        return removed

    async def _check_parent(self, row: Row) -> Optional[Row]:
        """Return row if its parent folder is gone."""
        try:
            await self.storage.get(row.doc["parentFolderID"])
            return None
        except DocumentNotFoundError:
            return row

    @traced("clean_orphans")
    async def clean_orphans(self) -> List[str]:
        """Remove documents whose parent folder no longer exists.

        Every parent check settles before anything is removed. If one of
        them failed for another reason than a missing parent, that error
        is raised and nothing is removed.

        Returns:
            Ids of the orphans removed.
        """
        rows = [
            row
            for row in await self.storage.all_docs()
            if row.doc and row.doc.get("parentFolderID")
        ]
        results = await asyncio.gather(
            *(self._check_parent(row) for row in rows), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(f"Orphan check failed for {len(errors)} document(s)")
            raise errors[0]

        orphans = [r for r in results if r is not None]
        with timed_operation("remove_orphans", count=len(orphans)):
            await asyncio.gather(*(self._remove_orphan(row) for row in orphans))
        if orphans:
            logger.info(f"Removed {len(orphans)} orphaned document(s)")
        return [row.id for row in orphans]

    async def _remove_orphan(self, row: Row) -> None:
        if row.type == DocumentType.FOLDER.value:
            await self.delete_folder_subtree(row.doc)
            return
        await self._remove(row.doc)
        if self.tag_service is not None and row.type == DocumentType.NOTE.value:
            await self.tag_service.delete_note(row.doc)
