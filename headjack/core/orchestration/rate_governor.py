"""
Outbound Rate Governor

Serializes outgoing actions per room so server-side rate limits are honoured
and handlers get backpressure instead of throttling themselves.

- One FIFO queue and one worker task per room; rooms run concurrently
- A rate-limit response pauses only that room for the server's retry-after
  and the same action is retried, never dropped
- A rejected action fails its caller and is not retried
- Actions can be cancelled until their worker dispatches them
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ...exceptions import (
    ActionRejectedError,
    QueueFullError,
    RateLimitedError,
    TransientError,
)
from ...integrations.base import ProtocolClient
from ...utils.markdown_utils import format_for_matrix
from .backoff import ExponentialBackoff

logger = logging.getLogger(__name__)


class OutboundAction(ABC):
    """Something the bot does to a room."""

    kind = "action"
    # Messages into encrypted rooms need device bookkeeping first
    carries_content = False

    @abstractmethod
    async def perform(self, client: ProtocolClient, room_id: str) -> Any:
        pass


@dataclass(frozen=True)
class MessageAction(OutboundAction):
    """Send a room event (m.room.message unless stated otherwise)."""

    content: Dict[str, Any]
    event_type: str = "m.room.message"

    kind = "message"
    carries_content = True

    @classmethod
    def text(
        cls,
        body: str,
        markdown: bool = True,
        reply_to: Optional[str] = None,
        msgtype: str = "m.text",
    ) -> "MessageAction":
        """Build a text message, rendering markdown to Matrix HTML."""
        if markdown:
            formatted = format_for_matrix(body)
            content = {
                "msgtype": msgtype,
                "body": formatted["plain"],
                "format": "org.matrix.custom.html",
                "formatted_body": formatted["html"],
            }
        else:
            content = {"msgtype": msgtype, "body": body}
        if reply_to:
            content["m.relates_to"] = {"m.in_reply_to": {"event_id": reply_to}}
        return cls(content=content)

    async def perform(self, client: ProtocolClient, room_id: str) -> str:
        return await client.send(room_id, self.event_type, self.content)


@dataclass(frozen=True)
class ReactionAction(OutboundAction):
    """Annotate an event with a reaction key (usually an emoji)."""

    event_id: str
    key: str

    kind = "reaction"
    carries_content = True

    async def perform(self, client: ProtocolClient, room_id: str) -> str:
        content = {
            "m.relates_to": {
                "rel_type": "m.annotation",
                "event_id": self.event_id,
                "key": self.key,
            }
        }
        return await client.send(room_id, "m.reaction", content)


@dataclass(frozen=True)
class JoinAction(OutboundAction):
    kind = "join"

    async def perform(self, client: ProtocolClient, room_id: str) -> str:
        return await client.join(room_id)


@dataclass(frozen=True)
class LeaveAction(OutboundAction):
    kind = "leave"

    async def perform(self, client: ProtocolClient, room_id: str) -> None:
        await client.leave(room_id)


class PendingAction:
    """
    A queued action and its completion signal.

    Awaiting a PendingAction returns the action's result (the event id for
    sends) or raises the reason it failed.
    """

    def __init__(self, room_id: str, action: OutboundAction, future: asyncio.Future):
        self.room_id = room_id
        self.action = action
        self.submitted_at = time.time()
        self.dispatched = False
        self._future = future

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._future.cancelled()

    def cancel(self) -> bool:
        """Cancel the action. Only possible before it has been dispatched."""
        if self.dispatched or self._future.done():
            return False
        return self._future.cancel()

    def _resolve(self, result: Any) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def _fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def __await__(self):
        return asyncio.shield(self._future).__await__()

    def __repr__(self) -> str:
        return f"PendingAction({self.action.kind} -> {self.room_id}, dispatched={self.dispatched})"


class OutboundRateGovernor:
    """Per-room FIFO send queues in front of the protocol client."""

    def __init__(
        self,
        client: ProtocolClient,
        queue_depth: int = 100,
        max_retries: int = 5,
        backoff_factory: Callable[[], ExponentialBackoff] = ExponentialBackoff,
        before_send: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.client = client
        self.queue_depth = queue_depth
        self.max_retries = max_retries
        self.backoff_factory = backoff_factory
        self.before_send = before_send
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._paused_until: Dict[str, float] = {}
        # Rooms with an action in flight, and rooms to drop once their queue empties
        self._active: Set[str] = set()
        self._releasing: Set[str] = set()
        self._closed = False

    def enqueue(self, room_id: str, action: OutboundAction) -> PendingAction:
        """
        Queue an action for a room.

        Raises:
            QueueFullError: the room already has queue_depth actions waiting
        """
        if self._closed:
            raise RuntimeError("OutboundRateGovernor is closed")
        self._releasing.discard(room_id)

        queue = self._queues.get(room_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_depth)
            self._queues[room_id] = queue
            self._workers[room_id] = asyncio.create_task(
                self._worker(room_id, queue), name=f"governor:{room_id}"
            )

        pending = PendingAction(room_id, action, asyncio.get_running_loop().create_future())
        try:
            queue.put_nowait(pending)
        except asyncio.QueueFull:
            raise QueueFullError(room_id, self.queue_depth) from None

        logger.debug(f"RateGovernor: Queued {action.kind} for {room_id} ({queue.qsize()} waiting)")
        return pending

    def pending_count(self, room_id: str) -> int:
        queue = self._queues.get(room_id)
        return queue.qsize() if queue else 0

    def is_paused(self, room_id: str) -> bool:
        return self._paused_until.get(room_id, 0.0) > time.monotonic()

    async def _worker(self, room_id: str, queue: asyncio.Queue) -> None:
        while True:
            pending: PendingAction = await queue.get()
            try:
                if pending.cancelled:
                    logger.debug(f"RateGovernor: Skipping cancelled {pending.action.kind} for {room_id}")
                else:
                    pending.dispatched = True
                    self._active.add(room_id)
                    await self._execute(room_id, pending)
            except asyncio.CancelledError:
                pending._future.cancel()
                raise
            finally:
                self._active.discard(room_id)
                queue.task_done()
            if room_id in self._releasing and queue.empty():
                self._forget(room_id)
                return

    def release(self, room_id: str) -> None:
        """
        Drop a room's queue and worker, e.g. after the bot left the room.

        Actions still waiting are sent first; the worker exits once the
        queue is empty. Enqueueing again before that keeps the worker.
        """
        queue = self._queues.get(room_id)
        if queue is None:
            return
        if queue.empty() and room_id not in self._active:
            self._forget(room_id).cancel()
        else:
            self._releasing.add(room_id)

    def _forget(self, room_id: str) -> asyncio.Task:
        self._queues.pop(room_id, None)
        self._paused_until.pop(room_id, None)
        self._releasing.discard(room_id)
        logger.debug(f"RateGovernor: Released worker for {room_id}")
        return self._workers.pop(room_id)

    async def _execute(self, room_id: str, pending: PendingAction) -> None:
        backoff = self.backoff_factory()
        transient_failures = 0
        while True:
            try:
                if self.before_send is not None and pending.action.carries_content:
                    await self.before_send(room_id)
                result = await pending.action.perform(self.client, room_id)
            except RateLimitedError as e:
                self._paused_until[room_id] = time.monotonic() + e.retry_after
                logger.warning(
                    f"RateGovernor: Rate limited in {room_id}, pausing for {e.retry_after:.3f}s"
                )
                await asyncio.sleep(e.retry_after)
                continue
            except ActionRejectedError as e:
                logger.error(f"RateGovernor: {pending.action.kind} to {room_id} rejected: {e.reason}")
                pending._fail(e)
                return
            except TransientError as e:
                transient_failures += 1
                if transient_failures > self.max_retries:
                    logger.error(
                        f"RateGovernor: Giving up on {pending.action.kind} to {room_id} "
                        f"after {transient_failures} attempts: {e}"
                    )
                    pending._fail(e)
                    return
                delay = backoff.next_delay()
                logger.warning(
                    f"RateGovernor: Transient failure sending to {room_id}: {e}. Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                logger.exception(f"RateGovernor: Unexpected error sending to {room_id}: {e}")
                pending._fail(e)
                return

            pending._resolve(result)
            return

    async def drain(self) -> None:
        """Wait until every queued action has been sent or failed."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def close(self) -> None:
        """Stop all workers. Queued actions that never ran are cancelled."""
        self._closed = True
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        for queue in self._queues.values():
            while not queue.empty():
                pending = queue.get_nowait()
                pending._future.cancel()
        self._workers.clear()
        self._queues.clear()
        logger.info("RateGovernor: Closed")
