"""
Verification Coordinator

Drives the device trust state machine kept by the SessionStateTracker:

- Before sending into an encrypted room, every device in the room is
  observed; devices without a trust decision get a verification handshake
  started, and rejected devices are excluded from key sharing.
- Handshakes complete in background tasks. Their outcome is applied to the
  tracker, pushed to the SDK and persisted.
- Incoming verification events (a peer starting or cancelling a handshake)
  are routed here by the Bot.
"""

import asyncio
import logging
from typing import Dict, FrozenSet, Optional, Set, Tuple

from ..integrations.base import ProtocolClient, VerificationHandle, VerificationOutcome
from .events import VerificationEvent
from .persistence import StateStore
from .state import DeviceTrustRecord, SessionStateTracker, TrustState

logger = logging.getLogger(__name__)

DeviceKey = Tuple[str, str]


class VerificationCoordinator:
    """Starts, tracks and resolves device verification handshakes."""

    def __init__(
        self,
        client: ProtocolClient,
        tracker: SessionStateTracker,
        store: Optional[StateStore] = None,
    ):
        self.client = client
        self.tracker = tracker
        self.store = store
        self._tasks: Dict[DeviceKey, asyncio.Task] = {}
        # Devices the SDK has already been told to exclude
        self._blocked: Set[DeviceKey] = set()

    async def prepare_room(self, room_id: str) -> FrozenSet[DeviceKey]:
        """
        Make the room's devices known before content is sent into it.

        Returns the devices that are blocked from receiving key material.
        """
        if not self.tracker.is_encrypted(room_id):
            return frozenset()

        devices = await self.client.room_devices(room_id)
        blocked = set()
        for user_id, device_id in devices:
            if user_id == self.client.user_id and device_id == self.client.device_id:
                continue
            record = self.tracker.observe_device(user_id, device_id, room_id)
            if record.state == TrustState.UNKNOWN or (
                record.state == TrustState.PENDING and not self._watching(record.key)
            ):
                # Pending records restored from storage have no handshake running
                await self.begin(user_id, device_id)
            elif record.state == TrustState.REJECTED:
                blocked.add(record.key)

        for key in blocked - self._blocked:
            await self._push_trust(key[0], key[1], trusted=False)
        if blocked:
            logger.debug(f"Verification: {len(blocked)} blocked device(s) in {room_id}")
        return frozenset(blocked)

    async def begin(self, user_id: str, device_id: str, reinitiate: bool = False) -> DeviceTrustRecord:
        """
        Start a handshake with a device.

        Devices that already have a trust decision are left alone unless
        reinitiate is True.
        """
        key = (user_id, device_id)
        record = self.tracker.observe_device(user_id, device_id)
        if record.state in (TrustState.VERIFIED, TrustState.REJECTED) and not reinitiate:
            return record
        if self._watching(key):
            if not reinitiate:
                return record
            self._tasks[key].cancel()

        try:
            handle = await self.client.begin_verification(user_id, device_id)
        except Exception as e:
            # The device keeps its state and is retried before the next send
            logger.warning(f"Verification: Could not start handshake with {user_id}/{device_id}: {e}")
            return record

        record = self.tracker.begin_verification(
            user_id, device_id, handle.transaction_id, reinitiate=reinitiate
        )
        await self._persist(record)
        self._watch(handle)
        return record

    async def reverify(self, user_id: str, device_id: str) -> DeviceTrustRecord:
        """Re-open a terminal trust decision with a fresh handshake."""
        self._blocked.discard((user_id, device_id))
        return await self.begin(user_id, device_id, reinitiate=True)

    async def distrust(self, user_id: str, device_id: str) -> DeviceTrustRecord:
        """Reject a device regardless of its current state."""
        task = self._tasks.pop((user_id, device_id), None)
        if task is not None:
            task.cancel()
        record = self.tracker.distrust(user_id, device_id)
        await self._push_trust(user_id, device_id, trusted=False)
        await self._persist(record)
        return record

    async def handle_event(self, event: VerificationEvent) -> Optional[DeviceTrustRecord]:
        """Apply a verification event received through sync."""
        if event.phase in ("request", "start"):
            if not event.from_device:
                return None
            record = self.tracker.begin_verification(
                event.sender, event.from_device, event.transaction_id
            )
            if record.state == TrustState.PENDING and record.transaction_id == event.transaction_id:
                await self._persist(record)
                handle = self.client.verification_handle(event.transaction_id)
                if handle is not None:
                    self._watch(handle)
            return record

        if event.phase == "cancel" and event.transaction_id:
            record = self.tracker.device_for_transaction(event.transaction_id)
            if record is None:
                return None
            logger.info(
                f"Verification: {record.user_id}/{record.device_id} cancelled "
                f"transaction {event.transaction_id}: {event.reason}"
            )
            task = self._tasks.pop(record.key, None)
            if task is not None:
                task.cancel()
            return await self._resolve(
                record.user_id, record.device_id, VerificationOutcome.REJECTED, event.transaction_id
            )

        return None

    def _watching(self, key: DeviceKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def _watch(self, handle: VerificationHandle) -> None:
        key = (handle.user_id, handle.device_id)
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
        self._tasks[key] = asyncio.create_task(
            self._await_outcome(handle), name=f"verification:{handle.user_id}/{handle.device_id}"
        )

    async def _await_outcome(self, handle: VerificationHandle) -> None:
        outcome = await handle.wait()
        await self._resolve(handle.user_id, handle.device_id, outcome, handle.transaction_id)
        key = (handle.user_id, handle.device_id)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]

    async def _resolve(
        self,
        user_id: str,
        device_id: str,
        outcome: VerificationOutcome,
        transaction_id: Optional[str],
    ) -> DeviceTrustRecord:
        verified = outcome == VerificationOutcome.VERIFIED
        before = self.tracker.snapshot_device(user_id, device_id)
        record = self.tracker.complete_verification(user_id, device_id, verified, transaction_id)
        if before is not None and before.state == TrustState.PENDING and record.state != TrustState.PENDING:
            await self._push_trust(user_id, device_id, trusted=verified)
            await self._persist(record)
        return record

    async def _push_trust(self, user_id: str, device_id: str, trusted: bool) -> None:
        try:
            await self.client.set_device_trust(user_id, device_id, trusted)
        except Exception as e:
            logger.error(f"Verification: Failed to update SDK trust for {user_id}/{device_id}: {e}")
            return
        if trusted:
            self._blocked.discard((user_id, device_id))
        else:
            self._blocked.add((user_id, device_id))

    async def _persist(self, record: DeviceTrustRecord) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_trust_record(record)
        except Exception as e:
            logger.error(f"Verification: Failed to persist trust record {record.key}: {e}")

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def close(self) -> None:
        """Abandon in-flight handshakes. Their devices stay PENDING until the next prepare_room."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
