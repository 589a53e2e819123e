"""Storage layer for the OpenNote data layer."""

from typing import Optional, Union

from opennote_data.storage.document_store import DocumentStore
from opennote_data.storage.remote_database import RemoteDatabase
from opennote_data.storage.replication import SyncOptions, SyncSession
from opennote_data.storage.settings_store import SettingsStore


def open_database(name: str, timeout: Optional[float] = None) -> Union[DocumentStore, RemoteDatabase]:
    """Open a database the way the UI names it.

    ``http(s)://`` URLs give a remote peer; anything else is a local store.
    """
    if name.startswith(("http://", "https://")):
        return RemoteDatabase(name, timeout=timeout)
    return DocumentStore(name)


__all__ = [
    "DocumentStore",
    "RemoteDatabase",
    "SettingsStore",
    "SyncOptions",
    "SyncSession",
    "open_database",
]
