"""Common test fixtures for the OpenNote data layer."""

import pytest

from opennote_data.app import OpenNote
from opennote_data.config import config
from opennote_data.observability import metrics
from opennote_data.services.folder_service import FolderService
from opennote_data.services.storage_service import StorageService
from opennote_data.services.tag_service import TagService
from opennote_data.storage.document_store import DocumentStore
from opennote_data.storage.replication import SyncOptions
from opennote_data.storage.settings_store import SettingsStore
from tests.fakes import RecordingEmitter


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point every path at tmp_path (auto-restored even on crash)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "data_dir", tmp_path / "db")
    monkeypatch.setattr(config, "settings_path", tmp_path / "settings.db")
    monkeypatch.setattr(config, "conflict_retry_delay", 0.0)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
async def store(test_config):
    """A file-backed document store in tmp_path."""
    db = DocumentStore(test_config.base_dir / "local.db")
    yield db
    await db.close()


@pytest.fixture
async def storage(store):
    """An initialized StorageService (index definition in place)."""
    service = StorageService(store)
    await service.init()
    yield service


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def tag_service(storage, emitter):
    return TagService(storage, emit=emitter)


@pytest.fixture
def folder_service(storage, tag_service):
    return FolderService(storage, tag_service=tag_service)


@pytest.fixture
def settings(test_config):
    store = SettingsStore()
    yield store
    store.close()


@pytest.fixture
async def app(store, settings):
    """The facade over a fresh store, with sync not started."""
    opennote = OpenNote(
        store=store,
        settings=settings,
        sync_options=SyncOptions(live=False, retry=False),
    )
    await opennote.init(start_sync=False)
    yield opennote
    await opennote.sync.close()

