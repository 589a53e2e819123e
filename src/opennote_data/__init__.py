"""
OpenNote data layer - documents, folders and tags for a note-taking client.
This package stores notes and folders as JSON documents in an embedded,
replicable document store, maintains an inverted hashtag index over note
bodies, and keeps the local store in sync with an optional remote replica.

All store and engine operations are coroutines.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("opennote-data")
except PackageNotFoundError:
    __version__ = "0.3.0"
