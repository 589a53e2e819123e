"""Application facade: wires the store, the engines and the event bus."""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Union

from opennote_data.config import config
from opennote_data.models.schema import Document, Folder, Note, parse_document
from opennote_data.services.folder_service import FolderService
from opennote_data.services.storage_service import StorageService
from opennote_data.services.sync_service import SyncService
from opennote_data.services.tag_service import TAGS_UPDATED, TagService
from opennote_data.storage import open_database
from opennote_data.storage.document_store import DocumentStore
from opennote_data.storage.replication import SyncOptions, SyncSession
from opennote_data.storage.settings_store import SettingsStore

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class OpenNote:
    """Entry point for the UI layer.

    Args:
        store: Local document store (defaults to the configured database).
        settings: Settings store (defaults to the configured settings file).
        sync_options: Replication options (defaults to config).
        remote_factory: Opens a replication peer from a URL.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        settings: Optional[SettingsStore] = None,
        sync_options: Optional[SyncOptions] = None,
        remote_factory: Callable[[str], Any] = open_database,
    ):
        self.store = store or DocumentStore(config.database_name)
        self.settings = settings or SettingsStore()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

        self.storage = StorageService(self.store)
        self.tags = TagService(self.storage, emit=self.emit)
        self.folders = FolderService(self.storage, tag_service=self.tags)
        self.sync = SyncService(
            self.storage,
            self.settings,
            options=sync_options,
            callback=self._wire_session,
            remote_factory=remote_factory,
        )

    # =========================================================================
    # Event bus
    # =========================================================================

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe listener to an application event (e.g. tagsUpdated)."""
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            listener(*args)

    def _notify(self, event: str) -> None:
        try:
            self.emit(event)
        except Exception as e:
            logger.warning(f"'{event}' listener failed: {e}")

    def _wire_session(self, session: SyncSession) -> None:
        # Replication events are re-published as "sync:<event>"
        for event in ("change", "active", "paused", "error", "denied", "complete"):
            session.on(event, lambda payload, name=event: self.emit(f"sync:{name}", payload))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self, start_sync: bool = True) -> Optional[SyncSession]:
        """Prepare the local store and resume syncing with a saved remote."""
        await self.storage.init()
        logger.info(f"OpenNote data layer ready ({self.store.name})")
        if start_sync:
            return await self.sync.init()
        return None

    async def destroy_database(self) -> None:
        """Wipe local data and forget the remote."""
        await self.sync.clear_remote_url()
        await self.storage.destroy_database()
        self._notify(TAGS_UPDATED)

    async def close(self) -> None:
        await self.sync.close()
        await self.store.close()
        self.settings.close()

    async def __aenter__(self) -> "OpenNote":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # Documents
    # =========================================================================

    async def save_note(self, note: Union[Dict[str, Any], Note]) -> Note:
        """Create or update a note and re-index its tags.

        Returns:
            The note with its new id and revision.
        """
        note = Note.model_validate(note) if isinstance(note, dict) else note
        result = await (self.storage.put(note) if note.id else self.storage.post(note))
        saved = note.model_copy(update={"id": result["id"], "rev": result["rev"]})
        await self.tags.save_note(saved)
        return saved

    async def delete_note(self, note: Union[Dict[str, Any], Note]) -> None:
        await self.storage.delete(note)
        await self.tags.delete_note(note)

    async def save_folder(self, folder: Union[Dict[str, Any], Folder]) -> Folder:
        folder = Folder.model_validate(folder) if isinstance(folder, dict) else folder
        result = await (self.storage.put(folder) if folder.id else self.storage.post(folder))
        return folder.model_copy(update={"id": result["id"], "rev": result["rev"]})

    async def delete_folder(self, folder: Union[Dict[str, Any], Document]) -> bool:
        return await self.folders.delete_folder_subtree(folder)

    async def load_folder(self, folder_id: Optional[str] = None) -> List[Document]:
        """Typed children of folder_id (root level when None)."""
        return [
            parse_document(row.doc)
            for row in await self.storage.load_folder_contents(folder_id)
            if self.storage.folder_filter(row) or self.storage.note_filter(row)
        ]

    async def clean_orphans(self) -> List[str]:
        return await self.folders.clean_orphans()
