"""Bidirectional replication between two document databases.

Both peers expose ``changes``, ``revs_diff``, ``get(..., rev=, revs=True)``
and ``bulk_docs``; a peer is either a local ``DocumentStore`` or a
``RemoteDatabase``. Only the winning revision of each document travels,
and both sides pick conflict winners deterministically, so two replicas
converge on the same winner.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from opennote_data.config import config
from opennote_data.exceptions import DocumentNotFoundError, ErrorCode, OpenNoteError

logger = logging.getLogger(__name__)

SYNC_EVENTS = ("change", "active", "paused", "error", "denied", "complete")

PUSH = "push"
PULL = "pull"


@dataclass
class SyncOptions:
    """Replication options.

    Attributes:
        live: Keep replicating until cancelled instead of a single pass.
        retry: In live mode, back off and retry after errors.
        poll_interval: Seconds between rounds once caught up.
        batch_size: Changes read per request.
        back_off_max: Upper bound of the retry back-off in seconds.
    """

    live: bool = True
    retry: bool = True
    poll_interval: float = 2.0
    batch_size: int = 100
    back_off_max: float = 60.0

    @classmethod
    def from_config(cls) -> "SyncOptions":
        return cls(
            live=config.sync_live,
            retry=config.sync_retry,
            poll_interval=config.sync_poll_interval,
            batch_size=config.sync_batch_size,
            back_off_max=config.sync_back_off_max,
        )


class SyncSession:
    """A replication session between a local store and a peer.

    Register handlers with ``on(event, handler)`` before ``start()``.
    Events: ``change``, ``active``, ``paused``, ``error``, ``denied``,
    ``complete``. Handler failures are logged and never stop replication.
    """

    _INITIAL_BACK_OFF = 0.5

    def __init__(self, local: Any, remote: Any, options: Optional[SyncOptions] = None):
        self.local = local
        self.remote = remote
        self.options = options or SyncOptions.from_config()
        self._handlers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._checkpoints: Dict[str, Any] = {PUSH: 0, PULL: 0}
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._paused = False
        self.docs_written: Dict[str, int] = {PUSH: 0, PULL: 0}
        self.last_error: Optional[Exception] = None
        self.last_sync_time: Optional[datetime] = None

    def on(self, event: str, handler: Callable[[Any], Any]) -> "SyncSession":
        """Subscribe handler to event; returns the session for chaining."""
        if event not in SYNC_EVENTS:
            raise ValueError(f"Unknown sync event '{event}'")
        self._handlers[event].append(handler)
        return self

    def _emit(self, event: str, payload: Any = None) -> None:
        for handler in self._handlers.get(event, []):
            try:
                handler(payload)
            except Exception as e:
                logger.warning(f"Sync '{event}' handler failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Get replication status information."""
        return {
            "local": getattr(self.local, "name", repr(self.local)),
            "remote": getattr(self.remote, "name", repr(self.remote)),
            "live": self.options.live,
            "running": self.is_running,
            "paused": self._paused,
            "checkpoints": dict(self._checkpoints),
            "docs_written": dict(self.docs_written),
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "last_error": str(self.last_error) if self.last_error else None,
        }

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # One replication pass
    # =========================================================================

    async def replicate_once(self, direction: str) -> int:
        """Copy everything the target is missing from the source.

        Returns:
            Number of documents written to the target.
        """
        source, target = (
            (self.local, self.remote) if direction == PUSH else (self.remote, self.local)
        )
        since = self._checkpoints[direction]
        written = 0

        while True:
            changes, last_seq = await source.changes(
                since=since, limit=self.options.batch_size
            )
            if not changes:
                break

            diff = await target.revs_diff({c["id"]: [c["rev"]] for c in changes})
            docs = []
            for change in changes:
                if change["id"] not in diff:
                    continue
                try:
                    docs.append(
                        await source.get(change["id"], rev=change["rev"], revs=True)
                    )
                except DocumentNotFoundError:
                    # Superseded since the changes read; a later pass carries it
                    logger.debug(f"Skipping vanished revision of {change['id']}")
            if docs:
                await target.bulk_docs(docs)
                written += len(docs)

            since = last_seq
            self._checkpoints[direction] = since
            if len(changes) < self.options.batch_size:
                break

        if written:
            self.docs_written[direction] += written
            self._emit(
                "change",
                {"direction": direction, "docs_written": written, "last_seq": since},
            )
        return written

    # =========================================================================
    # Session loop
    # =========================================================================

    async def _prepare(self) -> None:
        ensure_exists = getattr(self.remote, "ensure_exists", None)
        if ensure_exists is not None:
            await ensure_exists()

    async def _loop(self) -> None:
        back_off = min(self._INITIAL_BACK_OFF, self.options.back_off_max)
        self._emit("active")
        try:
            while not self._cancelled:
                try:
                    await self._prepare()
                    written = await self.replicate_once(PUSH)
                    written += await self.replicate_once(PULL)
                except OpenNoteError as e:
                    self.last_error = e
                    if e.code == ErrorCode.SYNC_DENIED:
                        self._emit("denied", e)
                    self._emit("error", e)
                    if not (self.options.live and self.options.retry):
                        raise
                    logger.warning(f"Sync failed, retrying in {back_off:.1f}s: {e}")
                    await asyncio.sleep(back_off)
                    back_off = min(back_off * 2, self.options.back_off_max)
                    continue

                back_off = min(self._INITIAL_BACK_OFF, self.options.back_off_max)
                self.last_sync_time = datetime.now(timezone.utc)
                if not self.options.live:
                    break
                if written and self._paused:
                    self._paused = False
                    self._emit("active")
                elif not written and not self._paused:
                    self._paused = True
                    self._emit("paused")
                await asyncio.sleep(self.options.poll_interval)
        except asyncio.CancelledError:
            self._emit("complete", {"status": "cancelled"})
            raise
        self._emit("complete", {"status": "cancelled" if self._cancelled else "complete"})

    def start(self) -> "SyncSession":
        """Schedule the session on the running event loop."""
        if self.is_running:
            return self
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            f"Sync started: {self.get_status()['local']} <-> {self.get_status()['remote']}"
            f" (live={self.options.live})"
        )
        return self

    async def wait(self) -> None:
        """Wait for the session to finish.

        Raises:
            OpenNoteError: The error that stopped a non-retrying session.
        """
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise

    async def cancel(self) -> None:
        """Stop replicating; fires ``complete`` with status ``cancelled``."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await self.wait()
        logger.info("Sync cancelled")
