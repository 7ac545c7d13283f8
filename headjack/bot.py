"""
Bot

Wires the engine together for one session:

    sync loop -> normalizer -> state tracker -> command router -> handlers
                                                              -> rate governor

The sync task only applies state and hands messages to per-room dispatch
workers, so a slow handler never stalls event intake while messages of one
room are still handled in server order.
"""

import asyncio
import inspect
import logging
import re
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .config import BotConfig
from .core.context import CommandContext
from .core.events import MessageEvent, NormalizedEvent, VerificationEvent
from .core.orchestration.backoff import ExponentialBackoff
from .core.orchestration.rate_governor import (
    JoinAction,
    LeaveAction,
    MessageAction,
    OutboundRateGovernor,
    PendingAction,
)
from .core.orchestration.sync_loop import SyncLoopController
from .core.persistence import MemoryStateStore, StateStore
from .core.router import CommandPattern, CommandRouter, Handler, PrefixCommand
from .core.session import Session
from .core.state import Membership, MembershipChange, SessionStateTracker
from .core.verification import VerificationCoordinator
from .exceptions import DuplicateEventError
from .integrations.base import ProtocolClient

logger = logging.getLogger(__name__)

Hook = Callable[..., Union[Any, Awaitable[Any]]]


class Bot:
    """A chat bot bound to one protocol client session."""

    # First delay between auto-join attempts; doubled after every failure
    join_retry_delay = 2.0

    def __init__(
        self,
        client: ProtocolClient,
        config: Optional[BotConfig] = None,
        store: Optional[StateStore] = None,
        session: Optional[Session] = None,
        shutdown_timeout: float = 10.0,
    ):
        self.client = client
        self.config = config or BotConfig()
        self.store = store or MemoryStateStore()
        self.session = session or Session(user_id=client.user_id, device_id=client.device_id)
        self.shutdown_timeout = shutdown_timeout

        self.tracker = SessionStateTracker(self.session)
        self.router = CommandRouter()
        self.verification = VerificationCoordinator(client, self.tracker, self.store)
        self.sync_loop = SyncLoopController(
            client, self.session, self.store, backoff=self._new_backoff()
        )
        self.governor = OutboundRateGovernor(
            client,
            queue_depth=self.config.rate_limit_queue_depth,
            max_retries=self.config.send_max_retries,
            backoff_factory=self._new_backoff,
            before_send=self.verification.prepare_room,
        )

        self.command_prefix = self.config.resolved_command_prefix()
        self._allow_list = re.compile(self.config.allow_list) if self.config.allow_list else None
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._dispatch_queues: Dict[str, asyncio.Queue] = {}
        self._dispatch_workers: Dict[str, asyncio.Task] = {}
        # Dispatch workers of rooms the bot left, finishing their queued messages
        self._retiring: Set[asyncio.Task] = set()
        self._join_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._invite_hooks: List[Hook] = []
        self._joined_hooks: List[Hook] = []
        self._running = False

        if self.config.enable_help:
            self.register_command("help", self._help_command, short_help="Show this message")

    def _new_backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            initial=self.config.initial_backoff,
            maximum=self.config.max_backoff,
            multiplier=self.config.backoff_multiplier,
            jitter=self.config.backoff_jitter,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_command(
        self,
        pattern: Union[str, CommandPattern],
        handler: Handler,
        args: Optional[str] = None,
        short_help: Optional[str] = None,
    ):
        """
        Register a handler. A plain string is a command name used with the
        configured prefix, so "ping" answers to "!ping", or to "!bot ping"
        with the prefix "!bot".
        """
        if isinstance(pattern, str):
            pattern = PrefixCommand(self.command_prefix, pattern)
        return self.router.register(pattern, handler, args=args, short_help=short_help)

    def command(self, name: str, args: Optional[str] = None, short_help: Optional[str] = None):
        """Decorator form of register_command."""
        def decorator(func: Handler) -> Handler:
            self.register_command(name, func, args=args, short_help=short_help)
            return func
        return decorator

    def register_text_handler(self, handler: Handler) -> Handler:
        """Call handler for every message that is not a command."""
        prefix = self.command_prefix

        async def text_handler(context: CommandContext):
            if prefix and context.body.lstrip().startswith(prefix):
                return None
            result = handler(context)
            if inspect.isawaitable(result):
                result = await result
            return result

        self.router.register_text_handler(text_handler)
        return handler

    def on_invite(self, hook: Hook) -> Hook:
        """Called with (room_id, inviter) for every invite the bot receives."""
        self._invite_hooks.append(hook)
        return hook

    def on_room_joined(self, hook: Hook) -> Hook:
        """Called with (room_id) whenever the bot ends up in a room."""
        self._joined_hooks.append(hook)
        return hook

    def on_command_error(self, hook: Hook) -> Hook:
        """Called with (context, HandlerError) when a handler raises."""
        self.router.on_error = hook
        return hook

    async def _help_command(self, context: CommandContext):
        prefix = self.command_prefix
        return await context.send(self.router.help_text(title=f"`{prefix}help`\n"))

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------

    def send_message(self, room_id: str, text: str, markdown: bool = True) -> PendingAction:
        return self.governor.enqueue(room_id, MessageAction.text(text, markdown=markdown))

    def join(self, room_id: str) -> PendingAction:
        return self.governor.enqueue(room_id, JoinAction())

    def leave(self, room_id: str) -> PendingAction:
        return self.governor.enqueue(room_id, LeaveAction())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """
        Run until stop() is called.

        Raises:
            SessionTerminatedError: the session became unusable
        """
        if self._running:
            raise RuntimeError("Bot is already running")
        self._running = True
        self.router.freeze()
        logger.info(f"Bot: Starting {self.config.name} as {self.session.user_id}")
        if self._allow_list is None:
            logger.warning("Bot: No allow_list configured, every command and invite will be ignored")

        try:
            await self._restore()
            if self.session.cursor is None and self.config.skip_initial_backlog:
                await self.sync_loop.catch_up(apply=self._apply_backlog_event)
            async for event in self.sync_loop.events():
                await self.process_event(event)
        finally:
            await self._shutdown()
            self._running = False
            logger.info(f"Bot: {self.config.name} stopped")

    def stop(self) -> None:
        """Ask the bot to stop at the next suspension point."""
        self.sync_loop.cancel()

    async def _restore(self) -> None:
        if self.session.cursor is None:
            cursor = await self.store.load_cursor(self.session.user_id)
            if cursor:
                logger.info(f"Bot: Resuming from stored cursor {cursor}")
                self.session.cursor = cursor
        records = await self.store.load_trust_records()
        self.tracker.restore_devices(records)
        if records:
            logger.info(f"Bot: Restored {len(records)} device trust records")

    async def _shutdown(self) -> None:
        for task in list(self._join_tasks.values()) + list(self._background):
            task.cancel()
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *(q.join() for q in self._dispatch_queues.values()),
                    *(asyncio.shield(task) for task in self._retiring),
                ),
                timeout=self.shutdown_timeout,
            )
            await asyncio.wait_for(self.governor.drain(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Bot: Timed out waiting for pending work during shutdown")

        workers = list(self._dispatch_workers.values()) + list(self._retiring)
        for task in workers:
            task.cancel()
        await asyncio.gather(
            *workers, *self._join_tasks.values(), *self._background, return_exceptions=True
        )
        self._dispatch_workers.clear()
        self._dispatch_queues.clear()
        self._retiring.clear()
        self._join_tasks.clear()
        self._background.clear()

        await self.verification.close()
        await self.governor.close()

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    async def process_event(self, event: NormalizedEvent, dispatch: bool = True) -> None:
        """Apply one event to state and, for messages, queue it for dispatch."""
        # Stripped state ids repeat whenever the same invite is sent again;
        # the state tracker already ignores replays of those
        if event.has_server_id:
            try:
                self._remember(event.event_id)
            except DuplicateEventError as e:
                logger.debug(f"Bot: {e}")
                return

        change = self.tracker.apply(event)
        if change is not None:
            await self._on_membership_change(change)

        if isinstance(event, VerificationEvent):
            await self.verification.handle_event(event)
        elif dispatch and isinstance(event, MessageEvent) and self._should_dispatch(event):
            self._queue_dispatch(event)

    async def _apply_backlog_event(self, event: NormalizedEvent) -> None:
        await self.process_event(event, dispatch=False)

    def _remember(self, event_id: str) -> None:
        if event_id in self._seen:
            raise DuplicateEventError(event_id)
        self._seen[event_id] = None
        while len(self._seen) > self.config.dedupe_window:
            self._seen.popitem(last=False)

    def is_allowed(self, sender: str) -> bool:
        """
        Whether a user may trigger handlers or invite the bot. The bot itself
        never may, and without an allow list nobody may.
        """
        if sender == self.session.user_id or self._allow_list is None:
            return False
        return self._allow_list.search(sender) is not None

    def _should_dispatch(self, event: MessageEvent) -> bool:
        if event.section != "join" or not self.session.is_joined(event.room_id):
            return False
        if event.msgtype != "m.text" or event.is_edit:
            return False
        if not self.is_allowed(event.sender):
            logger.debug(f"Bot: Ignoring message from {event.sender}")
            return False
        return True

    def _queue_dispatch(self, event: MessageEvent) -> None:
        queue = self._dispatch_queues.get(event.room_id)
        if queue is None:
            queue = asyncio.Queue()
            self._dispatch_queues[event.room_id] = queue
            self._dispatch_workers[event.room_id] = asyncio.create_task(
                self._dispatch_worker(event.room_id, queue), name=f"dispatch:{event.room_id}"
            )
        queue.put_nowait(event)

    def _release_room(self, room_id: str) -> None:
        """Drop the per-room workers of a room the bot left."""
        queue = self._dispatch_queues.pop(room_id, None)
        worker = self._dispatch_workers.pop(room_id, None)
        if queue is None or worker is None:
            self.governor.release(room_id)
            return
        # Messages already queued are handled first; their replies may
        # still need the outbound worker
        queue.put_nowait(None)
        self._retiring.add(worker)
        worker.add_done_callback(self._retiring.discard)
        worker.add_done_callback(lambda _: self._release_outbound(room_id))

    def _release_outbound(self, room_id: str) -> None:
        if not self.session.is_joined(room_id):
            self.governor.release(room_id)

    async def _dispatch_worker(self, room_id: str, queue: asyncio.Queue) -> None:
        while True:
            event: Optional[MessageEvent] = await queue.get()
            try:
                if event is None:
                    return
                context = CommandContext(event, self.tracker, self.governor)
                result = await self.router.dispatch(event, context)
                if result is not None and not result.success:
                    logger.debug(f"Bot: Handler failed for {event.event_id} in {room_id}")
            except Exception as e:
                logger.exception(f"Bot: Error dispatching {event.event_id} in {room_id}: {e}")
            finally:
                queue.task_done()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def _on_membership_change(self, change: MembershipChange) -> None:
        room_id = change.room_id
        if change.current == Membership.INVITED:
            if change.inviter and not self.is_allowed(change.inviter):
                logger.info(f"Bot: Ignoring invite to {room_id} from {change.inviter}")
                return
            logger.info(f"Bot: Invited to {room_id} by {change.inviter}")
            for hook in self._invite_hooks:
                self._spawn(hook, room_id, change.inviter)
            if self.config.auto_join and room_id not in self._join_tasks:
                self._join_tasks[room_id] = asyncio.create_task(
                    self._join_with_retry(room_id), name=f"join:{room_id}"
                )

        elif change.current == Membership.JOINED:
            self._cancel_join(room_id)
            if await self._too_large(room_id):
                logger.warning(f"Bot: Room {room_id} has too many members, leaving")
                self._spawn(self.leave, room_id)
                return
            for hook in self._joined_hooks:
                self._spawn(hook, room_id)

        elif change.current == Membership.LEFT:
            self._cancel_join(room_id)
            self._release_room(room_id)
            if change.forced:
                logger.warning(f"Bot: Removed from {room_id}: {change.reason or 'no reason given'}")

    def _cancel_join(self, room_id: str) -> None:
        task = self._join_tasks.pop(room_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _too_large(self, room_id: str) -> bool:
        limit = self.config.room_size_limit
        if not limit:
            return False
        try:
            count = await self.client.room_member_count(room_id)
        except Exception as e:
            logger.warning(f"Bot: Could not get member count for {room_id}: {e}")
            return False
        return count is not None and count > limit

    async def _join_with_retry(self, room_id: str) -> None:
        delay = self.join_retry_delay
        while True:
            try:
                await self.join(room_id)
                logger.info(f"Bot: Joined {room_id}")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if delay > self.config.join_retry_limit:
                    logger.error(f"Bot: Can't join room {room_id}: {e}")
                    self._join_tasks.pop(room_id, None)
                    return
                # Invites can arrive before the server lets the invitee join
                logger.warning(f"Bot: Failed to join {room_id} ({e}), retrying in {delay}s")
                await asyncio.sleep(delay)
                delay *= 2

    def _spawn(self, hook: Hook, *args) -> None:
        task = asyncio.create_task(self._run_hook(hook, *args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_hook(self, hook: Hook, *args) -> None:
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Bot: Hook {getattr(hook, '__name__', hook)} failed: {e}", exc_info=True)
