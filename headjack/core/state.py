"""
Session State Tracker

Maintains the authoritative room and device records the engine needs to
decide whether a room is encrypted, which rooms the bot occupies and which
remote devices may receive key material.

Rooms and devices live in two separate arenas keyed by stable ids. A device
record references the rooms it was seen in by room id only.

All updates are idempotent: an event id that was already applied to a room
is ignored, and an event older than the last one applied to its room never
overwrites newer state.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .events import EncryptionEvent, MembershipEvent, NormalizedEvent
from .session import Session

logger = logging.getLogger(__name__)

APPLIED_IDS_PER_ROOM = 256


class Membership(Enum):
    """The bot's membership in a room."""
    UNSEEN = "unseen"
    INVITED = "invited"
    JOINED = "joined"
    LEFT = "left"


class TrustState(Enum):
    """Verification status of a remote device."""
    UNKNOWN = "unknown"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


TERMINAL_TRUST_STATES = (TrustState.VERIFIED, TrustState.REJECTED)


@dataclass(frozen=True)
class RoomState:
    """Immutable snapshot of one room."""

    room_id: str
    membership: Membership = Membership.UNSEEN
    encrypted: bool = False
    last_event_id: Optional[str] = None
    last_timestamp: Optional[int] = None
    members: FrozenSet[str] = frozenset()
    inviter: Optional[str] = None


@dataclass(frozen=True)
class DeviceTrustRecord:
    """Immutable snapshot of one remote device's trust status."""

    user_id: str
    device_id: str
    state: TrustState = TrustState.UNKNOWN
    rooms: FrozenSet[str] = frozenset()
    transaction_id: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.device_id)


@dataclass(frozen=True)
class MembershipChange:
    """Reported by apply() whenever the bot's own membership in a room changes."""

    room_id: str
    previous: Membership
    current: Membership
    forced: bool = False
    inviter: Optional[str] = None
    reason: Optional[str] = None


class SessionStateTracker:
    """Owns the room and device arenas for one session."""

    def __init__(self, session: Session):
        self.session = session
        self._lock = threading.RLock()
        self._rooms: Dict[str, RoomState] = {}
        self._devices: Dict[Tuple[str, str], DeviceTrustRecord] = {}
        self._applied: Dict[str, "OrderedDict[str, None]"] = {}
        # Timestamp of the leave event for rooms the bot left
        self._departed: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Room state
    # ------------------------------------------------------------------

    def apply(self, event: NormalizedEvent) -> Optional[MembershipChange]:
        """
        Apply a normalized event to the room arena.

        Returns a MembershipChange when the bot's own membership changed,
        otherwise None.
        """
        if event.room_id is None:
            return None

        with self._lock:
            if self._is_stale(event):
                logger.debug(
                    f"StateTracker: Skipping stale or replayed event {event.event_id} "
                    f"in {event.room_id}"
                )
                return None

            if isinstance(event, MembershipEvent):
                change = self._apply_membership(event)
            elif isinstance(event, EncryptionEvent):
                change = self._apply_encryption(event)
            else:
                change = self._apply_activity(event)

            if event.room_id in self._rooms:
                self._remember(event)
            return change

    def _is_stale(self, event: NormalizedEvent) -> bool:
        applied = self._applied.get(event.room_id)
        if applied is not None and event.event_id in applied:
            return True
        if event.timestamp is None:
            return False
        room = self._rooms.get(event.room_id)
        if room is None:
            departed_at = self._departed.get(event.room_id)
            return departed_at is not None and event.timestamp <= departed_at
        return room.last_timestamp is not None and event.timestamp < room.last_timestamp

    def _remember(self, event: NormalizedEvent) -> None:
        applied = self._applied.setdefault(event.room_id, OrderedDict())
        applied[event.event_id] = None
        while len(applied) > APPLIED_IDS_PER_ROOM:
            applied.popitem(last=False)

        room = self._rooms[event.room_id]
        if event.timestamp is not None and (
            room.last_timestamp is None or event.timestamp >= room.last_timestamp
        ):
            self._rooms[event.room_id] = replace(
                room, last_event_id=event.event_id, last_timestamp=event.timestamp
            )

    def _room_for_update(self, room_id: str) -> RoomState:
        room = self._rooms.get(room_id)
        if room is None:
            room = RoomState(room_id=room_id)
            self._rooms[room_id] = room
        return room

    def _apply_membership(self, event: MembershipEvent) -> Optional[MembershipChange]:
        if event.target != self.session.user_id:
            if event.section == "leave":
                return None
            room = self._room_for_update(event.room_id)
            members = set(room.members)
            if event.membership in ("join", "invite"):
                members.add(event.target)
            else:
                members.discard(event.target)
            self._rooms[event.room_id] = replace(room, members=frozenset(members))
            return None

        room = self._rooms.get(event.room_id)
        previous = room.membership if room else Membership.UNSEEN

        if event.membership == "invite":
            if previous not in (Membership.UNSEEN, Membership.LEFT):
                return None
            room = self._room_for_update(event.room_id)
            self._rooms[event.room_id] = replace(
                room, membership=Membership.INVITED, inviter=event.sender
            )
            return MembershipChange(
                event.room_id, previous, Membership.INVITED, inviter=event.sender
            )

        if event.membership == "join":
            if previous == Membership.JOINED:
                return None
            return self._mark_joined(event.room_id, previous)

        if event.membership in ("leave", "ban"):
            return self._mark_left(event, previous)

        return None

    def _mark_joined(self, room_id: str, previous: Membership) -> MembershipChange:
        room = self._room_for_update(room_id)
        self._rooms[room_id] = replace(room, membership=Membership.JOINED)
        self.session.joined_rooms.add(room_id)
        self._departed.pop(room_id, None)
        logger.info(f"StateTracker: Joined room {room_id}")
        return MembershipChange(room_id, previous, Membership.JOINED)

    def _mark_left(self, event: MembershipEvent, previous: Membership) -> Optional[MembershipChange]:
        room_id = event.room_id
        self._rooms.pop(room_id, None)
        self._applied.pop(room_id, None)
        self.session.joined_rooms.discard(room_id)
        departed_at = event.timestamp if event.timestamp is not None else 0
        self._departed[room_id] = max(self._departed.get(room_id, departed_at), departed_at)
        if previous == Membership.UNSEEN:
            return None
        logger.info(
            f"StateTracker: Left room {room_id}"
            + (f" (removed by {event.sender})" if event.is_forced else "")
        )
        return MembershipChange(
            room_id, previous, Membership.LEFT, forced=event.is_forced, reason=event.reason
        )

    def _apply_encryption(self, event: EncryptionEvent) -> Optional[MembershipChange]:
        if event.section == "leave":
            return None
        room = self._room_for_update(event.room_id)
        if not room.encrypted:
            logger.info(f"StateTracker: Room {event.room_id} is now encrypted ({event.algorithm})")
            self._rooms[event.room_id] = replace(room, encrypted=True)
        return self._implicit_join(event)

    def _apply_activity(self, event: NormalizedEvent) -> Optional[MembershipChange]:
        if event.section == "leave":
            return None
        self._room_for_update(event.room_id)
        return self._implicit_join(event)

    def _implicit_join(self, event: NormalizedEvent) -> Optional[MembershipChange]:
        """Events in the sync 'join' section prove we are in the room."""
        room = self._rooms[event.room_id]
        if event.section == "join" and room.membership in (Membership.UNSEEN, Membership.INVITED):
            return self._mark_joined(event.room_id, room.membership)
        return None

    def snapshot_room(self, room_id: str) -> Optional[RoomState]:
        """Consistent, immutable view of a room."""
        with self._lock:
            return self._rooms.get(room_id)

    def rooms(self) -> List[RoomState]:
        with self._lock:
            return list(self._rooms.values())

    def joined_rooms(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self.session.joined_rooms)

    def is_encrypted(self, room_id: str) -> bool:
        room = self.snapshot_room(room_id)
        return bool(room and room.encrypted)

    # ------------------------------------------------------------------
    # Device trust
    # ------------------------------------------------------------------

    def observe_device(self, user_id: str, device_id: str, room_id: Optional[str] = None) -> DeviceTrustRecord:
        """Record that a device was seen, optionally in a given room."""
        with self._lock:
            key = (user_id, device_id)
            record = self._devices.get(key)
            if record is None:
                record = DeviceTrustRecord(
                    user_id=user_id,
                    device_id=device_id,
                    rooms=frozenset([room_id]) if room_id else frozenset(),
                )
                logger.debug(f"StateTracker: New device {user_id}/{device_id}")
            elif room_id and room_id not in record.rooms:
                record = replace(record, rooms=record.rooms | {room_id})
            else:
                return record
            self._devices[key] = record
            return record

    def begin_verification(
        self,
        user_id: str,
        device_id: str,
        transaction_id: Optional[str] = None,
        reinitiate: bool = False,
    ) -> DeviceTrustRecord:
        """
        Move a device to PENDING.

        Terminal records (VERIFIED/REJECTED) are only re-opened when
        reinitiate is True; otherwise they are returned unchanged.
        """
        with self._lock:
            record = self.observe_device(user_id, device_id)
            if record.state in TERMINAL_TRUST_STATES and not reinitiate:
                return record
            if record.state == TrustState.PENDING and record.transaction_id == transaction_id:
                return record
            record = replace(
                record,
                state=TrustState.PENDING,
                transaction_id=transaction_id,
                updated_at=time.time(),
            )
            self._devices[record.key] = record
            logger.info(f"StateTracker: Verification pending for {user_id}/{device_id}")
            return record

    def complete_verification(
        self,
        user_id: str,
        device_id: str,
        verified: bool,
        transaction_id: Optional[str] = None,
    ) -> DeviceTrustRecord:
        """
        Resolve a PENDING record.

        Records that are not pending, or whose transaction does not match,
        are returned unchanged.
        """
        with self._lock:
            record = self.observe_device(user_id, device_id)
            if record.state != TrustState.PENDING:
                return record
            if transaction_id and record.transaction_id and transaction_id != record.transaction_id:
                return record
            record = replace(
                record,
                state=TrustState.VERIFIED if verified else TrustState.REJECTED,
                updated_at=time.time(),
            )
            self._devices[record.key] = record
            logger.info(f"StateTracker: Device {user_id}/{device_id} is now {record.state.value}")
            return record

    def distrust(self, user_id: str, device_id: str) -> DeviceTrustRecord:
        """Explicitly mark a device as rejected."""
        with self._lock:
            record = replace(
                self.observe_device(user_id, device_id),
                state=TrustState.REJECTED,
                updated_at=time.time(),
            )
            self._devices[record.key] = record
            logger.warning(f"StateTracker: Device {user_id}/{device_id} distrusted")
            return record

    def restore_devices(self, records: Iterable[DeviceTrustRecord]) -> None:
        """Load persisted trust records, e.g. at startup."""
        with self._lock:
            for record in records:
                self._devices[record.key] = record

    def snapshot_device(self, user_id: str, device_id: str) -> Optional[DeviceTrustRecord]:
        with self._lock:
            return self._devices.get((user_id, device_id))

    def devices(self) -> List[DeviceTrustRecord]:
        with self._lock:
            return list(self._devices.values())

    def devices_in_room(self, room_id: str) -> List[DeviceTrustRecord]:
        with self._lock:
            return [record for record in self._devices.values() if room_id in record.rooms]

    def device_for_transaction(self, transaction_id: str) -> Optional[DeviceTrustRecord]:
        with self._lock:
            for record in self._devices.values():
                if record.state == TrustState.PENDING and record.transaction_id == transaction_id:
                    return record
            return None
