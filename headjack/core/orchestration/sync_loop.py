"""
Sync Loop Controller

Drives the continuous sync cycle against the protocol client and turns each
response into a stream of normalized events.

Delivery is at-least-once: the cursor is only advanced and persisted after
every event of a batch has been handed to the consumer, so an interrupted
batch is delivered again after a restart.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterator, Optional

from ...exceptions import (
    FatalSyncError,
    SessionTerminatedError,
    TransientSyncError,
)
from ...integrations.base import ProtocolClient, SyncBatch
from ..events import NormalizedEvent, normalize
from ..persistence import StateStore
from ..session import Session
from .backoff import ExponentialBackoff

logger = logging.getLogger(__name__)


class SyncLoopController:
    """Owns the sync cursor of one session."""

    def __init__(
        self,
        client: ProtocolClient,
        session: Session,
        store: Optional[StateStore] = None,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self.client = client
        self.session = session
        self.store = store
        self.backoff = backoff or ExponentialBackoff()
        self._cancelled = asyncio.Event()
        self.cycles = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop at the next suspension point. The in-flight request is allowed to finish."""
        if not self._cancelled.is_set():
            logger.info("SyncLoop: Cancellation requested")
        self._cancelled.set()

    async def events(self) -> AsyncIterator[NormalizedEvent]:
        """Yield normalized events forever, until cancelled or a fatal error occurs."""
        logger.info(f"SyncLoop: Starting from cursor {self.session.cursor}")
        while not self.cancelled:
            batch = await self._next_batch()
            if batch is None:
                continue
            if self.cancelled:
                logger.debug("SyncLoop: Discarding batch received after cancellation")
                break

            for event in self._normalize(batch):
                yield event

            await self._commit(batch.next_cursor)

        logger.info("SyncLoop: Stopped")

    async def catch_up(
        self, apply: Optional[Callable[[NormalizedEvent], Awaitable[None]]] = None
    ) -> None:
        """
        Advance the cursor to 'now' without emitting any events.

        If given, apply is awaited for every event of the batch so state can
        still be built from the backlog.
        """
        while not self.cancelled:
            batch = await self._next_batch()
            if batch is None:
                continue
            if self.cancelled:
                return
            if apply is not None:
                for event in self._normalize(batch):
                    await apply(event)
            logger.info(f"SyncLoop: Caught up, skipped {len(batch.events)} backlog events")
            await self._commit(batch.next_cursor)
            return

    def _normalize(self, batch: SyncBatch) -> Iterator[NormalizedEvent]:
        for raw in batch.events:
            try:
                event = normalize(raw)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"SyncLoop: Dropping malformed event in {raw.room_id}: {e}")
                continue
            if event is not None:
                yield event

    async def _next_batch(self) -> Optional[SyncBatch]:
        """One request. Returns None when the caller should loop again."""
        try:
            batch = await self.client.sync(self.session.cursor)
        except FatalSyncError as e:
            logger.error(f"SyncLoop: Fatal sync error, terminating: {e}")
            raise SessionTerminatedError("sync", self.session.cursor, e) from e
        except asyncio.CancelledError:
            raise
        except TransientSyncError as e:
            await self._back_off(e)
            return None
        except Exception as e:
            logger.exception(f"SyncLoop: Unexpected sync failure, treating as transient: {e}")
            await self._back_off(e)
            return None

        self.backoff.reset()
        self.cycles += 1
        return batch

    async def _back_off(self, error: Exception) -> None:
        delay = self.backoff.next_delay()
        logger.warning(
            f"SyncLoop: Sync failed (attempt {self.backoff.attempts}): {error}. "
            f"Retrying in {delay:.2f}s"
        )
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _commit(self, cursor: str) -> None:
        self.session.cursor = cursor
        if self.store is None:
            return
        try:
            await self.store.save_cursor(self.session.user_id, cursor)
        except Exception as e:
            logger.error(f"SyncLoop: Failed to persist cursor {cursor}: {e}")
