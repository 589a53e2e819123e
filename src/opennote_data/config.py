"""Configuration module for the OpenNote data layer."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from opennote_data import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the data
_USER_ENV = Path.home() / ".opennote" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Settings key holding the replication endpoint
REMOTE_URL_KEY = "remoteURL"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class OpenNoteConfig(BaseModel):
    """Configuration for the OpenNote data layer."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("OPENNOTE_BASE_DIR", "."))
    )
    # Directory holding local databases opened by bare name
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("OPENNOTE_DATA_DIR", "data/db"))
    )
    # Name of the local document database
    database_name: str = Field(
        default_factory=lambda: os.getenv("OPENNOTE_DATABASE_NAME", "openNote")
    )
    # Key-value settings store (remote URL lives here)
    settings_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("OPENNOTE_SETTINGS_PATH", "data/settings.db")
        )
    )
    # Maximum revision ancestry kept per document
    revs_limit: int = Field(
        default_factory=lambda: int(os.getenv("OPENNOTE_REVS_LIMIT", "1000"))
    )
    # Replication
    sync_live: bool = Field(
        default_factory=lambda: _env_flag("OPENNOTE_SYNC_LIVE", "true")
    )
    sync_retry: bool = Field(
        default_factory=lambda: _env_flag("OPENNOTE_SYNC_RETRY", "true")
    )
    sync_poll_interval: float = Field(
        default_factory=lambda: float(os.getenv("OPENNOTE_SYNC_POLL_INTERVAL", "2.0"))
    )
    sync_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("OPENNOTE_SYNC_BATCH_SIZE", "100"))
    )
    sync_back_off_max: float = Field(
        default_factory=lambda: float(os.getenv("OPENNOTE_SYNC_BACK_OFF_MAX", "60.0"))
    )
    remote_timeout: float = Field(
        default_factory=lambda: float(os.getenv("OPENNOTE_REMOTE_TIMEOUT", "30.0"))
    )
    # Conflict retry budgets. 0 means a 409 aborts the operation immediately.
    tag_index_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("OPENNOTE_TAG_INDEX_MAX_RETRIES", "25"))
    )
    folder_delete_max_retries: int = Field(
        default_factory=lambda: int(
            os.getenv("OPENNOTE_FOLDER_DELETE_MAX_RETRIES", "3")
        )
    )
    # Base delay (seconds) before re-reading a document after a 409
    conflict_retry_delay: float = Field(
        default_factory=lambda: float(
            os.getenv("OPENNOTE_CONFLICT_RETRY_DELAY", "0.005")
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_limits(self) -> "OpenNoteConfig":
        """Reject retry budgets and intervals that cannot work."""
        if self.tag_index_max_retries < 0:
            raise ValueError("tag_index_max_retries must be >= 0")
        if self.folder_delete_max_retries < 0:
            raise ValueError("folder_delete_max_retries must be >= 0")
        if self.sync_poll_interval <= 0:
            raise ValueError("sync_poll_interval must be > 0")
        if self.sync_batch_size < 1:
            raise ValueError("sync_batch_size must be >= 1")
        if self.revs_limit < 1:
            raise ValueError("revs_limit must be >= 1")
        if self.tag_index_max_retries > 100:
            logger.warning(
                "tag_index_max_retries=%d is unusually high; a hot tag map "
                "may stall saves for a long time",
                self.tag_index_max_retries,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_database_path(self, name: Optional[str] = None) -> Path:
        """Resolve a bare database name to a SQLite file under data_dir."""
        db_dir = self.get_absolute_path(self.data_dir)
        db_dir.mkdir(parents=True, exist_ok=True)
        return db_dir / f"{name or self.database_name}.db"

    def get_settings_db_url(self) -> str:
        """Get the SQLite URL of the settings store."""
        settings_path = self.get_absolute_path(self.settings_path)
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{settings_path}"


# Create a global config instance
config = OpenNoteConfig()
