"""
Event Normalizer

Converts raw protocol events into the framework's uniform event types.
Downstream components (state tracker, router) only ever see these
dataclasses, never the wire format.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..integrations.base import RawEvent

logger = logging.getLogger(__name__)

VERIFICATION_PREFIX = "m.key.verification."
STRIPPED_PREFIX = "stripped:"


@dataclass(frozen=True)
class NormalizedEvent:
    """Common fields shared by every normalized event."""

    event_id: str
    event_type: str
    sender: str
    room_id: Optional[str]
    timestamp: Optional[int]  # server timestamp in ms, None for stripped/to-device events
    section: str = "join"
    source: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_server_id(self) -> bool:
        """False for stripped state, whose id is derived from its content."""
        return not self.event_id.startswith(STRIPPED_PREFIX)


@dataclass(frozen=True)
class MessageEvent(NormalizedEvent):
    """A room message (m.room.message)."""

    body: str = ""
    msgtype: str = "m.text"
    formatted_body: Optional[str] = None
    reply_to: Optional[str] = None
    is_edit: bool = False


@dataclass(frozen=True)
class MembershipEvent(NormalizedEvent):
    """A membership change (m.room.member)."""

    target: str = ""
    membership: str = "leave"
    reason: Optional[str] = None

    @property
    def is_forced(self) -> bool:
        """True for kicks and bans: someone else removed the target."""
        return self.membership == "ban" or (
            self.membership == "leave" and self.sender != self.target
        )


@dataclass(frozen=True)
class EncryptionEvent(NormalizedEvent):
    """Encryption was enabled for a room (m.room.encryption)."""

    algorithm: str = ""


@dataclass(frozen=True)
class EncryptedEvent(NormalizedEvent):
    """An event the SDK could not decrypt."""

    session_id: Optional[str] = None
    sender_device: Optional[str] = None


@dataclass(frozen=True)
class VerificationEvent(NormalizedEvent):
    """A step of a device verification handshake (m.key.verification.*)."""

    phase: str = "request"
    transaction_id: Optional[str] = None
    from_device: Optional[str] = None
    reason: Optional[str] = None


def normalize(raw: RawEvent) -> Optional[NormalizedEvent]:
    """
    Convert a raw protocol event into a normalized event.

    Returns None for event types the engine does not act on.

    Raises:
        ValueError: the event is missing fields required for its type
    """
    source = raw.source
    event_type = source.get("type")
    if not event_type:
        raise ValueError("event has no type")

    content = source.get("content") or {}
    sender = source.get("sender", "")
    base = dict(
        event_id=_event_id(raw),
        event_type=event_type,
        sender=sender,
        room_id=raw.room_id,
        timestamp=source.get("origin_server_ts"),
        section=raw.section,
        source=source,
    )

    if event_type == "m.room.message":
        msgtype = content.get("msgtype", "m.text")
        if msgtype == "m.key.verification.request":
            return VerificationEvent(
                **base,
                phase="request",
                transaction_id=base["event_id"],
                from_device=content.get("from_device"),
            )
        relates_to = content.get("m.relates_to") or {}
        is_edit = relates_to.get("rel_type") == "m.replace"
        body = content.get("body", "")
        if is_edit and isinstance(content.get("m.new_content"), dict):
            body = content["m.new_content"].get("body", body)
        return MessageEvent(
            **base,
            body=body if isinstance(body, str) else str(body),
            msgtype=msgtype,
            formatted_body=content.get("formatted_body"),
            reply_to=(relates_to.get("m.in_reply_to") or {}).get("event_id"),
            is_edit=is_edit,
        )

    if event_type == "m.room.member":
        target = source.get("state_key")
        if target is None:
            raise ValueError("membership event has no state_key")
        return MembershipEvent(
            **base,
            target=target,
            membership=content.get("membership", "leave"),
            reason=content.get("reason"),
        )

    if event_type == "m.room.encryption":
        return EncryptionEvent(**base, algorithm=content.get("algorithm", ""))

    if event_type == "m.room.encrypted":
        return EncryptedEvent(
            **base,
            session_id=content.get("session_id"),
            sender_device=content.get("device_id"),
        )

    if event_type.startswith(VERIFICATION_PREFIX):
        relates_to = content.get("m.relates_to") or {}
        return VerificationEvent(
            **base,
            phase=event_type[len(VERIFICATION_PREFIX):],
            transaction_id=content.get("transaction_id") or relates_to.get("event_id"),
            from_device=content.get("from_device"),
            reason=content.get("reason"),
        )

    logger.debug(f"EventNormalizer: Ignoring event type {event_type}")
    return None


def _event_id(raw: RawEvent) -> str:
    """Server event id, or a stable synthetic id for events that carry none."""
    source = raw.source
    if source.get("event_id"):
        return source["event_id"]
    content = source.get("content") or {}
    if raw.section == "to_device":
        return f"to_device:{source.get('type')}:{source.get('sender', '')}:{content.get('transaction_id', '')}"
    return (
        f"{STRIPPED_PREFIX}{raw.room_id}:{source.get('type')}:"
        f"{source.get('state_key', '')}:{content.get('membership', '')}:{source.get('sender', '')}"
    )
