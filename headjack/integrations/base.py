"""
Protocol Client Interface

Defines the capability interface the bot engine consumes. The engine never
talks to an SDK directly: it only calls the methods below, so any protocol
implementation (or a test double) can be plugged in.

Error contract:
- sync() raises TransientSyncError or FatalSyncError
- send()/join()/leave() and the room tag writers raise RateLimitedError,
  ActionRejectedError or TransientSendError
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class VerificationOutcome(Enum):
    """Result of a device verification handshake."""
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RawEvent:
    """
    An event as delivered by the protocol client, before normalization.

    Attributes:
        source: The event JSON as sent by the homeserver
        room_id: Room the event belongs to (None for to-device events)
        section: Where the event appeared in the sync response
                 ('join', 'invite', 'leave' or 'to_device')
    """
    source: Dict[str, Any]
    room_id: Optional[str] = None
    section: str = "join"


@dataclass(frozen=True)
class SyncBatch:
    """One sync response: the cursor to resume from and its events in server order."""
    next_cursor: str
    events: List[RawEvent] = field(default_factory=list)


class VerificationHandle:
    """
    Tracks one in-flight verification handshake.

    The protocol client resolves the handle when the handshake completes;
    the engine awaits it.
    """

    def __init__(self, user_id: str, device_id: str, transaction_id: Optional[str] = None):
        self.user_id = user_id
        self.device_id = device_id
        self.transaction_id = transaction_id
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, outcome: VerificationOutcome) -> None:
        """Report the handshake result. Later calls are ignored."""
        if not self._future.done():
            self._future.set_result(outcome)

    async def wait(self) -> VerificationOutcome:
        return await asyncio.shield(self._future)

    def __repr__(self) -> str:
        return (
            f"VerificationHandle({self.user_id}/{self.device_id}, "
            f"tx={self.transaction_id}, done={self.done})"
        )


class ProtocolClient(ABC):
    """Capability interface over the underlying chat SDK."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """The bot's own user id."""
        pass

    @property
    @abstractmethod
    def device_id(self) -> Optional[str]:
        """The bot's own device id."""
        pass

    @abstractmethod
    async def sync(self, cursor: Optional[str]) -> SyncBatch:
        """
        Fetch the next batch of events after the given cursor.

        Raises:
            TransientSyncError: the request may succeed if retried
            FatalSyncError: the session is unusable
        """
        pass

    @abstractmethod
    async def send(self, room_id: str, event_type: str, content: Dict[str, Any]) -> str:
        """Send a room event and return its event id."""
        pass

    @abstractmethod
    async def join(self, room_id: str) -> str:
        """Join a room and return the joined room id."""
        pass

    @abstractmethod
    async def leave(self, room_id: str) -> None:
        """Leave a room."""
        pass

    @abstractmethod
    async def room_devices(self, room_id: str) -> List[Tuple[str, str]]:
        """Return (user_id, device_id) pairs for every device in an encrypted room."""
        pass

    @abstractmethod
    async def begin_verification(self, user_id: str, device_id: str) -> VerificationHandle:
        """Start the verification handshake with a remote device."""
        pass

    @abstractmethod
    async def set_device_trust(self, user_id: str, device_id: str, trusted: bool) -> None:
        """Tell the SDK whether key material may be shared with a device."""
        pass

    @abstractmethod
    async def room_tags(self, room_id: str) -> Dict[str, Dict[str, Any]]:
        """The bot's tags on a room, mapped to their tag info (e.g. {"order": 0.5})."""
        pass

    @abstractmethod
    async def set_room_tag(self, room_id: str, tag: str, info: Optional[Dict[str, Any]] = None) -> None:
        """Add or update one of the bot's tags on a room."""
        pass

    @abstractmethod
    async def remove_room_tag(self, room_id: str, tag: str) -> None:
        """Remove one of the bot's tags from a room. Missing tags are not an error."""
        pass

    def verification_handle(self, transaction_id: Optional[str]) -> Optional[VerificationHandle]:
        """Handle for a handshake a remote device started, if the client tracks one."""
        return None

    async def room_member_count(self, room_id: str) -> Optional[int]:
        """Number of members in a room, if known."""
        return None

    async def close(self) -> None:
        """Release SDK resources."""
        return None
