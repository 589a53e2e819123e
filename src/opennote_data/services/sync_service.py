"""Replication controller: remote URL persistence and sync sessions."""

import logging
from typing import Any, Callable, Optional

from opennote_data.config import REMOTE_URL_KEY
from opennote_data.exceptions import ConfigurationError, ErrorCode
from opennote_data.services.storage_service import StorageService
from opennote_data.storage import open_database
from opennote_data.storage.replication import SyncOptions, SyncSession
from opennote_data.storage.settings_store import SettingsStore

logger = logging.getLogger(__name__)


class SyncService:
    """Owns the remote handle and the running replication session."""

    def __init__(
        self,
        storage: StorageService,
        settings: SettingsStore,
        options: Optional[SyncOptions] = None,
        callback: Optional[Callable[[SyncSession], Any]] = None,
        remote_factory: Callable[[str], Any] = open_database,
    ):
        """Initialize the replication controller.

        Args:
            storage: Adapter whose local store is replicated.
            settings: Where the remote URL is persisted.
            options: Replication options (defaults to config).
            callback: Receives each new session so the caller can wire
                its events.
            remote_factory: Opens a peer from a URL or local name.
        """
        self.storage = storage
        self.settings = settings
        self.options = options
        self.callback = callback
        self._remote_factory = remote_factory
        self._remote: Optional[Any] = None
        self._session: Optional[SyncSession] = None

    @property
    def session(self) -> Optional[SyncSession]:
        return self._session

    def remote_database(self) -> Optional[Any]:
        """The current remote handle, or None."""
        return self._remote

    def get_remote_url(self) -> Optional[str]:
        return self.settings.get_string(REMOTE_URL_KEY)

    async def init(self) -> Optional[SyncSession]:
        """Start syncing with the saved remote, if there is one."""
        url = self.get_remote_url()
        if not url:
            logger.debug("No remote configured, sync not started")
            return None
        await self._open_remote(url)
        return await self.setup_sync()

    async def set_remote_url(self, url: str) -> None:
        """Save url and open the remote. Does not start syncing."""
        if not url or not url.strip():
            raise ConfigurationError(
                "Remote URL must not be empty", config_key=REMOTE_URL_KEY
            )
        url = url.strip()
        self.settings.set_string(REMOTE_URL_KEY, url)
        await self._open_remote(url)

    async def clear_remote_url(self) -> bool:
        """Forget the remote and stop any running session.

        Returns:
            True if a remote URL was stored.
        """
        await self._stop()
        await self._close_remote()
        return self.settings.remove_key(REMOTE_URL_KEY)

    async def setup_sync(self) -> SyncSession:
        """Start a replication session with the current remote.

        Raises:
            ConfigurationError: If no remote has been opened.
        """
        if self._remote is None:
            raise ConfigurationError(
                "No remote database configured",
                config_key=REMOTE_URL_KEY,
                code=ErrorCode.SYNC_NOT_CONFIGURED,
            )
        await self._stop()
        session = self.storage.database().sync(self._remote, self.options)
        if self.callback is not None:
            self.callback(session)
        self._session = session.start()
        return session

    async def close(self) -> None:
        await self._stop()
        await self._close_remote()

    async def _open_remote(self, url: str) -> None:
        await self._stop()
        await self._close_remote()
        self._remote = self._remote_factory(url)
        logger.info(f"Remote database set to {getattr(self._remote, 'name', url)}")

    async def _stop(self) -> None:
        if self._session is not None:
            await self._session.cancel()
            self._session = None

    async def _close_remote(self) -> None:
        if self._remote is not None:
            await self._remote.close()
            self._remote = None
