"""
Command Context

What a handler receives: the triggering message, the matched invocation,
read-only state snapshots and helpers that queue replies through the
outbound rate governor.
"""

from typing import FrozenSet, Optional, Tuple

from .events import MessageEvent
from .orchestration.rate_governor import (
    MessageAction,
    OutboundRateGovernor,
    PendingAction,
    ReactionAction,
)
from .router import Invocation
from .state import DeviceTrustRecord, RoomState, SessionStateTracker
from ..utils.tags import RoomTags


class CommandContext:
    """Per-message handle given to command and text handlers."""

    def __init__(
        self,
        event: MessageEvent,
        tracker: SessionStateTracker,
        governor: OutboundRateGovernor,
        invocation: Optional[Invocation] = None,
    ):
        self.event = event
        self.tracker = tracker
        self.governor = governor
        self.invocation = invocation

    def for_invocation(self, invocation: Optional[Invocation]) -> "CommandContext":
        return CommandContext(self.event, self.tracker, self.governor, invocation)

    @property
    def room_id(self) -> str:
        return self.event.room_id

    @property
    def sender(self) -> str:
        return self.event.sender

    @property
    def body(self) -> str:
        return self.event.body

    @property
    def args(self) -> Tuple[str, ...]:
        return self.invocation.args if self.invocation else ()

    @property
    def room(self) -> Optional[RoomState]:
        """Snapshot of the room the message came from."""
        return self.tracker.snapshot_room(self.event.room_id)

    def joined_rooms(self) -> FrozenSet[str]:
        return self.tracker.joined_rooms()

    def device(self, user_id: str, device_id: str) -> Optional[DeviceTrustRecord]:
        return self.tracker.snapshot_device(user_id, device_id)

    async def tags(self, namespace: str) -> RoomTags:
        """The current room's tags in a namespace, e.g. "org.example.bot"."""
        return await RoomTags.load(self.governor.client, self.room_id, namespace)

    def send(self, text: str, markdown: bool = True) -> PendingAction:
        """Queue a message to the current room. Await the result to wait for delivery."""
        return self.governor.enqueue(self.room_id, MessageAction.text(text, markdown=markdown))

    def reply(self, text: str, markdown: bool = True) -> PendingAction:
        """Queue a message that replies to the triggering event."""
        action = MessageAction.text(text, markdown=markdown, reply_to=self.event.event_id)
        return self.governor.enqueue(self.room_id, action)

    def notice(self, text: str, markdown: bool = True) -> PendingAction:
        """Queue an m.notice, which other bots conventionally do not answer."""
        action = MessageAction.text(text, markdown=markdown, msgtype="m.notice")
        return self.governor.enqueue(self.room_id, action)

    def react(self, key: str) -> PendingAction:
        """Queue a reaction to the triggering event."""
        return self.governor.enqueue(self.room_id, ReactionAction(self.event.event_id, key))

    def send_to(self, room_id: str, text: str, markdown: bool = True) -> PendingAction:
        """Queue a message to another room."""
        return self.governor.enqueue(room_id, MessageAction.text(text, markdown=markdown))

    def __repr__(self) -> str:
        name = self.invocation.name if self.invocation else None
        return f"CommandContext(room={self.room_id}, sender={self.sender}, command={name})"
