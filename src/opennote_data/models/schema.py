"""Data models for the OpenNote data layer.

Documents travel through the store as plain JSON dicts. These pydantic
models give the engines typed access to them while keeping every key the
UI may have added (``extra="allow"``); ``to_doc()`` turns a model back
into the wire form the store accepts.
"""

import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from opennote_data.exceptions import InvalidDocumentError

# Reserved ids
TAG_MAP_ID = "tagMap"
DESIGN_PREFIX = "_design/"
PARENT_FOLDER_INDEX = "parentFolderID"


class DocumentType(str, Enum):
    """Discriminator values of the ``type`` field."""

    NOTE = "note"
    FOLDER = "folder"


# Thread-safe counter for uniqueness within one process
_id_lock = threading.Lock()
_counter = (os.getpid() * 7) % 0xFFFF


def generate_id() -> str:
    """Generate a store-assigned document id.

    Returns a 32 character lowercase hex string: 16 random bytes with the
    last two bytes replaced by a per-process counter, so ids minted in a
    tight loop never collide even if the random source repeats.
    """
    global _counter

    with _id_lock:
        _counter = (_counter + 1) % 0x10000
        return os.urandom(14).hex() + f"{_counter:04x}"


class Document(BaseModel):
    """A stored document: the fields every note and folder share."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, alias="_id")
    rev: Optional[str] = Field(default=None, alias="_rev")
    type: Optional[str] = None
    parent_folder_id: Optional[str] = Field(default=None, alias="parentFolderID")

    def to_doc(self) -> Dict[str, Any]:
        """Dump to the JSON shape the store expects."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def is_root(self) -> bool:
        """True when the document has no parent folder."""
        return not self.parent_folder_id


class Note(Document):
    """A note; its body may contain hashtags."""

    type: Literal["note"] = DocumentType.NOTE.value
    body: Optional[str] = Field(default=None, alias="note")
    title: Optional[str] = None


class Folder(Document):
    """A folder grouping notes and other folders."""

    type: Literal["folder"] = DocumentType.FOLDER.value
    name: Optional[str] = Field(default=None, alias="title")


AnyDocument = Union[Note, Folder, Document]


def parse_document(doc: Union[Dict[str, Any], Document]) -> AnyDocument:
    """Build the typed model for a raw document dict.

    Notes and folders get their variant; everything else (the tag map,
    design documents, documents of unknown type) stays a plain Document.
    """
    if isinstance(doc, Document):
        return doc
    if not isinstance(doc, dict):
        raise InvalidDocumentError(f"Expected a JSON object, got {type(doc).__name__}")
    doc_type = doc.get("type")
    if doc_type == DocumentType.NOTE.value:
        return Note.model_validate(doc)
    if doc_type == DocumentType.FOLDER.value:
        return Folder.model_validate(doc)
    return Document.model_validate(doc)


def as_doc(doc: Union[Dict[str, Any], Document]) -> Dict[str, Any]:
    """Return the raw dict form of a model or dict."""
    if isinstance(doc, Document):
        return doc.to_doc()
    return doc


class TagMap(BaseModel):
    """The singleton inverted index: lowercase hashtag -> note ids."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default=TAG_MAP_ID, alias="_id")
    rev: Optional[str] = Field(default=None, alias="_rev")
    tags: Dict[str, List[str]] = Field(default_factory=dict)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def remove_id(self, note_id: str) -> bool:
        """Drop note_id from every entry, pruning entries left empty.

        Returns:
            True if the map changed.
        """
        return self.remove_ids({note_id})

    def remove_ids(self, note_ids: Set[str]) -> bool:
        """Drop every occurrence of each id in note_ids from every entry.

        Maps written by other clients may list an id more than once under
        the same tag; all copies go.

        Returns:
            True if the map changed.
        """
        changed = False
        for tag in list(self.tags):
            ids = self.tags[tag]
            kept = [i for i in ids if i not in note_ids]
            if len(kept) == len(ids):
                continue
            changed = True
            if kept:
                self.tags[tag] = kept
            else:
                del self.tags[tag]
        return changed

    def add_id(self, tags: List[str], note_id: str) -> bool:
        """Append note_id under each tag, at most once per tag.

        Returns:
            True if the map changed.
        """
        changed = False
        for tag in tags:
            ids = self.tags.setdefault(tag, [])
            if note_id not in ids:
                ids.append(note_id)
                changed = True
        return changed


@dataclass
class Row:
    """One entry of an all_docs or view query result."""

    id: str
    rev: str
    doc: Optional[Dict[str, Any]] = None
    key: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """PouchDB-style row, the shape export files use."""
        row: Dict[str, Any] = {
            "id": self.id,
            "key": self.key,
            "value": {"rev": self.rev},
        }
        if self.doc is not None:
            row["doc"] = self.doc
        return row

    @property
    def type(self) -> Optional[str]:
        return self.doc.get("type") if self.doc else None


class ImportErrorKind(str, Enum):
    """Why a single document failed to import."""

    CONFLICT = "conflict"
    INVALID = "invalid"
    UNEXPECTED = "unexpected"


@dataclass
class ImportOutcome:
    """Result of replaying one backup entry through put."""

    id: Optional[str]
    succeeded: bool
    error_kind: Optional[ImportErrorKind] = None
    message: Optional[str] = None
    rev: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "succeeded": self.succeeded,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "rev": self.rev,
        }

