"""Persistent key-value settings (the remote URL lives here)."""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from opennote_data.config import config
from opennote_data.models.db_models import DBSetting, get_session_factory, init_settings_db

logger = logging.getLogger(__name__)


class SettingsStore:
    """Small string store with a lifecycle independent of the documents.

    Reads and writes are tiny and synchronous, like browser localStorage.
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        """Initialize the settings store.

        Args:
            url: SQLite URL. Defaults to the configured settings path.
            engine: Pre-configured SQLAlchemy engine (takes precedence).
        """
        self._engine = init_settings_db(url or config.get_settings_db_url(), engine)
        self.session_factory = get_session_factory(self._engine)

    def get_string(self, key: str) -> Optional[str]:
        """Return the value stored under key, or None."""
        with self.session_factory() as session:
            setting = session.scalar(select(DBSetting).where(DBSetting.key == key))
            return setting.value if setting else None

    def set_string(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        with self.session_factory() as session:
            setting = session.get(DBSetting, key)
            if setting is None:
                session.add(DBSetting(key=key, value=value))
            else:
                setting.value = value
            session.commit()
        logger.debug(f"Setting '{key}' updated")

    def remove_key(self, key: str) -> bool:
        """Delete key.

        Returns:
            True if the key existed.
        """
        with self.session_factory() as session:
            setting = session.get(DBSetting, key)
            if setting is None:
                return False
            session.delete(setting)
            session.commit()
            return True

    def close(self) -> None:
        self._engine.dispose()
