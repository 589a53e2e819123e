"""SQLAlchemy database models for the embedded document store."""
from typing import Optional

from sqlalchemy import (Boolean, Column, Index, Integer, String, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Document store tables
Base = declarative_base()

# Settings store tables live in their own database file
SettingsBase = declarative_base()


class DBDocument(Base):
    """Current (winning) revision of a document, or its tombstone."""
    __tablename__ = "documents"
    id = Column(String(255), primary_key=True)
    rev = Column(String(64), nullable=False)
    # JSON list of ancestor revisions, newest first, current rev included
    revisions = Column(Text, nullable=False, default="[]")
    deleted = Column(Boolean, nullable=False, default=False, index=True)
    seq = Column(Integer, nullable=False, unique=True, index=True)
    doc_type = Column(String(50), nullable=True, index=True)
    # JSON body without _id/_rev
    data = Column(Text, nullable=False, default="{}")

    def __repr__(self) -> str:
        """Return string representation of document."""
        return f"<Document(id='{self.id}', rev='{self.rev}', deleted={self.deleted})>"


class DBConflict(Base):
    """A losing leaf revision kept after a replication conflict."""
    __tablename__ = "conflicts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    doc_id = Column(String(255), nullable=False, index=True)
    rev = Column(String(64), nullable=False)
    revisions = Column(Text, nullable=False, default="[]")
    data = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        UniqueConstraint("doc_id", "rev", name="unique_conflict_rev"),
    )

    def __repr__(self) -> str:
        return f"<Conflict(doc_id='{self.doc_id}', rev='{self.rev}')>"


class DBViewEntry(Base):
    """One emitted (key, doc) pair of a declarative view."""
    __tablename__ = "view_entries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    view = Column(String(255), nullable=False)
    # JSON-encoded emitted key ("null" for root documents)
    key = Column(Text, nullable=False)
    doc_id = Column(String(255), nullable=False, index=True)

    __table_args__ = (
        Index("ix_view_entries_view_key", "view", "key"),
    )


class DBSetting(SettingsBase):
    """A persisted string setting."""
    __tablename__ = "settings"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)


def create_sqlite_engine(url: str) -> Engine:
    """Create an engine with the SQLite pragmas the store relies on.

    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)
    - In-memory databases share one connection across threads
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def init_db(url: str, engine: Optional[Engine] = None) -> Engine:
    """Initialize the document store schema and return its engine."""
    engine = engine or create_sqlite_engine(url)
    Base.metadata.create_all(engine)
    return engine


def init_settings_db(url: str, engine: Optional[Engine] = None) -> Engine:
    """Initialize the settings store schema and return its engine."""
    engine = engine or create_sqlite_engine(url)
    SettingsBase.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
