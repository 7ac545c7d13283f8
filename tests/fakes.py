"""Test doubles shared across the test suite."""

import asyncio
import itertools
import time
from typing import Any, Dict, List, Optional, Tuple

from headjack.integrations.base import ProtocolClient, SyncBatch, VerificationHandle

from tests.factories import BOT_USER


class FakeProtocolClient(ProtocolClient):
    """
    Scripted protocol client.

    sync() returns the scripted batches (or raises the scripted exceptions)
    in order; once the script is exhausted it idles like a long poll.
    """

    def __init__(self, user_id: str = BOT_USER, device_id: str = "BOTDEVICE"):
        self._user_id = user_id
        self._device_id = device_id
        self.sync_script: List[Any] = []
        self.sync_calls: List[Optional[str]] = []
        self.idle_delay = 0.01

        self.sent: List[Tuple[str, str, Dict[str, Any], float]] = []
        self.send_failures: Dict[str, List[Exception]] = {}
        self.joined: List[str] = []
        self.join_failures: List[Exception] = []
        self.left: List[str] = []

        self.devices: Dict[str, List[Tuple[str, str]]] = {}
        self.member_counts: Dict[str, int] = {}
        self.handles: Dict[str, VerificationHandle] = {}
        self.verification_requests: List[Tuple[str, str]] = []
        self.trust_calls: List[Tuple[str, str, bool]] = []
        self.tags: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.tag_writes: List[Tuple[str, str, str]] = []
        self.closed = False
        self._tx = itertools.count(1)
        self._event_ids = itertools.count(1)

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    def script(self, *items: Any) -> None:
        self.sync_script.extend(items)

    async def sync(self, cursor: Optional[str]) -> SyncBatch:
        self.sync_calls.append(cursor)
        if self.sync_script:
            item = self.sync_script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        await asyncio.sleep(self.idle_delay)
        return SyncBatch(next_cursor=cursor or "idle", events=[])

    async def send(self, room_id: str, event_type: str, content: Dict[str, Any]) -> str:
        failures = self.send_failures.get(room_id)
        if failures:
            raise failures.pop(0)
        self.sent.append((room_id, event_type, content, time.monotonic()))
        return f"$sent{next(self._event_ids)}"

    async def join(self, room_id: str) -> str:
        if self.join_failures:
            raise self.join_failures.pop(0)
        self.joined.append(room_id)
        return room_id

    async def leave(self, room_id: str) -> None:
        self.left.append(room_id)

    async def room_devices(self, room_id: str) -> List[Tuple[str, str]]:
        return list(self.devices.get(room_id, []))

    async def begin_verification(self, user_id: str, device_id: str) -> VerificationHandle:
        self.verification_requests.append((user_id, device_id))
        handle = VerificationHandle(user_id, device_id, f"tx{next(self._tx)}")
        self.handles[handle.transaction_id] = handle
        return handle

    def verification_handle(self, transaction_id: Optional[str]) -> Optional[VerificationHandle]:
        return self.handles.get(transaction_id)

    async def set_device_trust(self, user_id: str, device_id: str, trusted: bool) -> None:
        self.trust_calls.append((user_id, device_id, trusted))

    async def room_tags(self, room_id: str) -> Dict[str, Dict[str, Any]]:
        return {tag: dict(info) for tag, info in self.tags.get(room_id, {}).items()}

    async def set_room_tag(self, room_id: str, tag: str, info: Optional[Dict[str, Any]] = None) -> None:
        self.tag_writes.append(("set", room_id, tag))
        self.tags.setdefault(room_id, {})[tag] = dict(info or {})

    async def remove_room_tag(self, room_id: str, tag: str) -> None:
        self.tag_writes.append(("remove", room_id, tag))
        self.tags.get(room_id, {}).pop(tag, None)

    async def room_member_count(self, room_id: str) -> Optional[int]:
        return self.member_counts.get(room_id)

    async def close(self) -> None:
        self.closed = True

    def bodies(self, room_id: Optional[str] = None) -> List[str]:
        return [
            content.get("body")
            for sent_room, _, content, _ in self.sent
            if room_id is None or sent_room == room_id
        ]


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
