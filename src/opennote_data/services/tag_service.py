"""Hashtag extraction and the inverted tag index."""

import asyncio
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from opennote_data.config import config
from opennote_data.exceptions import (
    DocumentConflictError,
    DocumentNotFoundError,
    ErrorCode,
)
from opennote_data.models.schema import (
    TAG_MAP_ID,
    Document,
    DocumentType,
    TagMap,
    parse_document,
)
from opennote_data.observability import traced
from opennote_data.services.storage_service import StorageService

logger = logging.getLogger(__name__)

TAGS_UPDATED = "tagsUpdated"

# '#' at the start of text or after whitespace or '>', up to the next
# whitespace or '<'
TAG_PATTERN = re.compile(r"(?:^|(?<=[\s>]))(#[^\s<]+)")

# HTML entity leftovers (&#39; and &#34;) that look like tags
_ENTITY_PREFIXES = ("#39;", "#34;")


def extract_tags(text: Optional[str]) -> List[str]:
    """Return the lowercased hashtags in text, in order, duplicates kept."""
    if not text:
        return []
    return [
        tag.lower()
        for tag in TAG_PATTERN.findall(text)
        if not tag.startswith(_ENTITY_PREFIXES)
    ]


class TagService:
    """Keeps the ``tagMap`` document in step with note bodies.

    The map is never locked. Each update is a read-modify-write guarded by
    the store's revision check; on a conflict the same per-id delta is
    re-applied to a fresh read, which is safe because deltas for distinct
    note ids commute and re-applying one is a no-op.
    """

    def __init__(
        self,
        storage: StorageService,
        emit: Optional[Callable[[str], Any]] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        """Initialize the tag engine.

        Args:
            storage: Document store adapter.
            emit: Called with ``"tagsUpdated"`` after each map write.
            max_retries: Conflict retries per phase (defaults to config).
            retry_delay: Base back-off in seconds (defaults to config).
        """
        self.storage = storage
        self._emit = emit
        self.max_retries = (
            config.tag_index_max_retries if max_retries is None else max_retries
        )
        self.retry_delay = (
            config.conflict_retry_delay if retry_delay is None else retry_delay
        )

    def _notify(self) -> None:
        if self._emit is None:
            return
        try:
            self._emit(TAGS_UPDATED)
        except Exception as e:
            logger.warning(f"'{TAGS_UPDATED}' listener failed: {e}")

    async def _read_map(self) -> TagMap:
        try:
            return TagMap.model_validate(await self.storage.get(TAG_MAP_ID))
        except DocumentNotFoundError:
            return TagMap()

    async def _apply(self, mutate: Callable[[TagMap], bool], phase: str) -> bool:
        """Run one read-modify-write phase on the tag map.

        Returns:
            True if the map was written.

        Raises:
            DocumentConflictError: When every attempt lost the race.
        """
        attempt = 0
        while True:
            tag_map = await self._read_map()
            if not mutate(tag_map):
                return False
            try:
                await self.storage.put(tag_map.to_doc())
            except DocumentConflictError as e:
                if attempt >= self.max_retries:
                    if self.max_retries:
                        logger.error(
                            f"Tag map {phase} gave up after {attempt + 1} attempts"
                        )
                    raise DocumentConflictError(
                        TAG_MAP_ID,
                        expected_rev=e.expected_rev,
                        actual_rev=e.actual_rev,
                        message=f"Tag map {phase} kept conflicting",
                        code=ErrorCode.TAG_INDEX_CONFLICT,
                    ) from e
                attempt += 1
                delay = self.retry_delay * random.uniform(1, 2) * min(attempt, 8)
                logger.debug(f"Tag map {phase} conflicted, retry {attempt} in {delay:.3f}s")
                await asyncio.sleep(delay)
                continue
            self._notify()
            return True

    # =========================================================================
    # Note events
    # =========================================================================

    @traced("tags_save_note")
    async def save_note(self, note: Union[Dict[str, Any], Document]) -> List[str]:
        """Re-index a saved note.

        Returns:
            The tags now recorded for the note (unique, in body order).
        """
        note = parse_document(note)
        if not note.id:
            return []
        await self._apply(lambda m: m.remove_id(note.id), "removal")

        tags = list(dict.fromkeys(extract_tags(getattr(note, "body", None))))
        if tags:
            await self._apply(lambda m: m.add_id(tags, note.id), "addition")
        return tags

    @traced("tags_delete_note")
    async def delete_note(self, note: Union[Dict[str, Any], Document]) -> bool:
        """Drop a note from every tag entry.

        Returns:
            True if the map changed.
        """
        note = parse_document(note)
        if not note.id:
            return False
        return await self._apply(lambda m: m.remove_id(note.id), "removal")

    # =========================================================================
    # Folder walk
    # =========================================================================

    @traced("tags_delete_folder")
    async def delete_folder(self, folder: Union[Dict[str, Any], Document]) -> int:
        """Remove every note below folder from the tag index.

        Documents are left in place; the folder engine deletes them.
        Branches are discovered while earlier ones are still running, so
        discovery ends when a join observes no new tasks. The collected
        note ids then leave the map in a single removal phase.

        Returns:
            Number of descendant notes processed.
        """
        folder = parse_document(folder)
        if not folder.id:
            logger.debug("Tag walk skipped: folder has no id")
            return 0

        tasks: List["asyncio.Task[None]"] = []
        note_ids: Set[str] = set()

        def spawn(coro: Awaitable[None]) -> None:
            tasks.append(asyncio.ensure_future(coro))

        async def visit(folder_id: str) -> None:
            for row in await self.storage.load_folder_contents(folder_id):
                if row.type == DocumentType.NOTE.value:
                    note_ids.add(row.id)
                elif row.type == DocumentType.FOLDER.value:
                    spawn(visit(row.id))

        spawn(visit(folder.id))
        try:
            joined = 0
            while joined < len(tasks):
                batch = tasks[joined:]
                joined = len(tasks)
                await asyncio.gather(*batch)
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            raise
        logger.debug(f"Tag walk of {folder.id} visited {len(tasks)} folder(s)")

        if note_ids:
            await self._apply(lambda m: m.remove_ids(note_ids), "removal")
        return len(note_ids)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_map(self) -> Dict[str, Any]:
        """Read the tag map document.

        Raises:
            DocumentNotFoundError: If no note has been tagged yet.
        """
        return await self.storage.get(TAG_MAP_ID)

    async def get_tags(self) -> Dict[str, List[str]]:
        """Tag -> note ids; empty when the map does not exist yet."""
        return (await self._read_map()).tags

    async def find_note_ids(self, tag: str) -> List[str]:
        """Ids of notes carrying tag (``#`` optional, case-insensitive)."""
        tag = tag.lower()
        if not tag.startswith("#"):
            tag = f"#{tag}"
        return list((await self.get_tags()).get(tag, []))
