"""
Matrix Protocol Client

Implements the ProtocolClient interface on top of matrix-nio's AsyncClient.
nio keeps ownership of the wire protocol and the Olm/Megolm machinery; this
adapter only translates between nio's response objects and the engine's
error taxonomy and event shapes.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp
from nio import (
    AsyncClient,
    AsyncClientConfig,
    JoinResponse,
    KeyVerificationCancel,
    KeyVerificationEvent,
    KeyVerificationKey,
    KeyVerificationStart,
    RoomLeaveResponse,
    RoomSendResponse,
    SyncResponse,
)
from nio.api import MATRIX_API_PATH_V3
from nio.crypto import ENCRYPTION_ENABLED
from nio.exceptions import LocalProtocolError

from ...exceptions import (
    ActionRejectedError,
    FatalSyncError,
    RateLimitedError,
    TransientSendError,
    TransientSyncError,
)
from ..base import ProtocolClient, RawEvent, SyncBatch, VerificationHandle, VerificationOutcome

logger = logging.getLogger(__name__)

# Error codes after which the access token can no longer be used
FATAL_ERRCODES = {"M_UNKNOWN_TOKEN", "M_MISSING_TOKEN", "M_USER_DEACTIVATED"}

# Only load members that are relevant; speeds up the initial sync a lot
LAZY_LOADING_FILTER = {"room": {"state": {"lazy_load_members": True}}}

DEFAULT_RETRY_AFTER_MS = 1000


def create_async_client(
    homeserver: str,
    user_id: str,
    device_id: Optional[str] = None,
    store_path: Optional[str] = None,
    encryption: bool = True,
) -> AsyncClient:
    """
    Build an AsyncClient whose own retry loops are switched off.

    Rate limits and timeouts are returned to the caller so the sync loop and
    the rate governor can apply their own policy.
    """
    config = AsyncClientConfig(
        max_limit_exceeded=0,
        max_timeouts=0,
        store_sync_tokens=False,
        encryption_enabled=encryption and bool(store_path) and ENCRYPTION_ENABLED,
    )
    return AsyncClient(
        homeserver,
        user_id,
        device_id=device_id,
        store_path=store_path or "",
        config=config,
    )


def _http_status(response: Any) -> Optional[int]:
    transport = getattr(response, "transport_response", None)
    return getattr(transport, "status", None)


class NioProtocolClient(ProtocolClient):
    """ProtocolClient backed by an authenticated nio AsyncClient."""

    def __init__(
        self,
        client: AsyncClient,
        sync_timeout_ms: int = 30000,
        ignore_unverified_devices: bool = True,
        auto_confirm_sas: bool = False,
    ):
        self.client = client
        self.sync_timeout_ms = sync_timeout_ms
        self.ignore_unverified_devices = ignore_unverified_devices
        self.auto_confirm_sas = auto_confirm_sas
        self._handles: Dict[str, VerificationHandle] = {}
        self._full_state_pending = True

        self.client.add_to_device_callback(self._on_key_verification, (KeyVerificationEvent,))

    @property
    def user_id(self) -> str:
        return self.client.user_id

    @property
    def device_id(self) -> Optional[str]:
        return self.client.device_id

    @property
    def encryption_enabled(self) -> bool:
        return self.client.olm is not None

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, cursor: Optional[str]) -> SyncBatch:
        try:
            response = await self.client.sync(
                timeout=self.sync_timeout_ms,
                since=cursor,
                sync_filter=LAZY_LOADING_FILTER,
                # Room state is not persisted across restarts, so the first
                # sync of a run always asks for it
                full_state=self._full_state_pending,
            )
        except LocalProtocolError as e:
            raise FatalSyncError(f"Client not usable: {e}") from e
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            raise TransientSyncError(f"Sync request failed: {e}") from e

        if not isinstance(response, SyncResponse):
            code = getattr(response, "status_code", None)
            status = _http_status(response)
            message = getattr(response, "message", str(response))
            if code in FATAL_ERRCODES or status == 401:
                raise FatalSyncError(f"{code}: {message}")
            raise TransientSyncError(f"{code or status}: {message}")

        self._full_state_pending = False
        await self._run_key_maintenance()
        return SyncBatch(next_cursor=response.next_batch, events=self._flatten(response))

    def _flatten(self, response: SyncResponse) -> List[RawEvent]:
        """Sync sections in the order their events should be applied."""
        events: List[RawEvent] = []
        for room_id, info in response.rooms.invite.items():
            for event in info.invite_state:
                events.append(RawEvent(self._source(event), room_id, "invite"))
        for room_id, info in response.rooms.join.items():
            for event in list(getattr(info, "state", [])) + list(info.timeline.events):
                events.append(RawEvent(self._source(event), room_id, "join"))
        for room_id, info in response.rooms.leave.items():
            for event in list(getattr(info, "state", [])) + list(info.timeline.events):
                events.append(RawEvent(self._source(event), room_id, "leave"))
        for event in response.to_device_events:
            events.append(RawEvent(self._source(event), None, "to_device"))
        return events

    @staticmethod
    def _source(event: Any) -> Dict[str, Any]:
        # nio keeps the (decrypted) event JSON on every event object
        return getattr(event, "source", None) or {}

    async def _run_key_maintenance(self) -> None:
        """The key housekeeping nio's sync_forever would otherwise do."""
        if self.client.olm is None:
            return
        try:
            if self.client.should_upload_keys:
                await self.client.keys_upload()
            if self.client.should_query_keys:
                await self.client.keys_query()
            if self.client.should_claim_keys:
                await self.client.keys_claim(self.client.get_users_for_key_claiming())
            await self.client.send_to_device_messages()
        except (LocalProtocolError, asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.warning(f"NioProtocolClient: Key maintenance failed: {e}")

    # ------------------------------------------------------------------
    # Room actions
    # ------------------------------------------------------------------

    def _action_error(self, response: Any, action: str) -> Exception:
        code = getattr(response, "status_code", None)
        status = _http_status(response)
        message = getattr(response, "message", str(response))
        if code == "M_LIMIT_EXCEEDED" or status == 429:
            retry_after_ms = getattr(response, "retry_after_ms", None) or DEFAULT_RETRY_AFTER_MS
            return RateLimitedError(retry_after_ms / 1000.0)
        if (status is not None and status >= 500) or (code is None and status is None):
            return TransientSendError(f"{action} failed: {message}")
        return ActionRejectedError(f"{code}: {message}")

    async def send(self, room_id: str, event_type: str, content: Dict[str, Any]) -> str:
        try:
            response = await self.client.room_send(
                room_id=room_id,
                message_type=event_type,
                content=content,
                ignore_unverified_devices=self.ignore_unverified_devices,
            )
        except LocalProtocolError as e:
            # e.g. "No such room", or devices pending verification
            raise ActionRejectedError(str(e)) from e
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            raise TransientSendError(f"Send to {room_id} failed: {e}") from e

        if isinstance(response, RoomSendResponse):
            return response.event_id
        raise self._action_error(response, f"Send to {room_id}")

    async def join(self, room_id: str) -> str:
        try:
            response = await self.client.join(room_id)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            raise TransientSendError(f"Join {room_id} failed: {e}") from e
        if isinstance(response, JoinResponse):
            return response.room_id
        raise self._action_error(response, f"Join {room_id}")

    async def leave(self, room_id: str) -> None:
        try:
            response = await self.client.room_leave(room_id)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            raise TransientSendError(f"Leave {room_id} failed: {e}") from e
        if not isinstance(response, RoomLeaveResponse):
            raise self._action_error(response, f"Leave {room_id}")

    # ------------------------------------------------------------------
    # Room tags
    # ------------------------------------------------------------------

    async def room_tags(self, room_id: str) -> Dict[str, Dict[str, Any]]:
        # nio keeps room.tags current from the m.tag account data in each sync
        room = self.client.rooms.get(room_id)
        if room is None:
            return {}
        return {tag: dict(info or {}) for tag, info in room.tags.items()}

    async def set_room_tag(self, room_id: str, tag: str, info: Optional[Dict[str, Any]] = None) -> None:
        await self._tag_request("PUT", room_id, tag, info or {})
        room = self.client.rooms.get(room_id)
        if room is not None:
            room.tags[tag] = dict(info or {})

    async def remove_room_tag(self, room_id: str, tag: str) -> None:
        await self._tag_request("DELETE", room_id, tag)
        room = self.client.rooms.get(room_id)
        if room is not None:
            room.tags.pop(tag, None)

    def _tag_path(self, room_id: str, tag: str) -> str:
        parts = ["user", self.user_id, "rooms", room_id, "tags", tag]
        return MATRIX_API_PATH_V3 + "/" + "/".join(quote(part, safe="") for part in parts)

    async def _tag_request(
        self, method: str, room_id: str, tag: str, body: Optional[Dict[str, Any]] = None
    ) -> None:
        """nio has no room tag API, so the request goes through its HTTP session."""
        action = f"{'Set' if method == 'PUT' else 'Remove'} tag {tag} on {room_id}"
        headers = {
            "Authorization": f"Bearer {self.client.access_token}",
            "Content-Type": "application/json",
        }
        data = json.dumps(body) if body is not None else None
        if self.client.client_session is None:
            raise TransientSendError(f"{action} failed: client has no HTTP session yet")
        try:
            response = await self.client.send(method, self._tag_path(room_id, tag), data, headers)
            async with response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            raise TransientSendError(f"{action} failed: {e}") from e

        if status == 200:
            logger.debug(f"NioProtocolClient: {action} done")
            return
        if not isinstance(payload, dict):
            payload = {}
        code = payload.get("errcode")
        message = payload.get("error", f"HTTP {status}")
        if code == "M_LIMIT_EXCEEDED" or status == 429:
            retry_after_ms = payload.get("retry_after_ms") or DEFAULT_RETRY_AFTER_MS
            raise RateLimitedError(retry_after_ms / 1000.0)
        if status >= 500:
            raise TransientSendError(f"{action} failed: {message}")
        raise ActionRejectedError(f"{code}: {message}")

    async def room_member_count(self, room_id: str) -> Optional[int]:
        room = self.client.rooms.get(room_id)
        if room is None:
            return None
        return room.member_count

    # ------------------------------------------------------------------
    # Devices and verification
    # ------------------------------------------------------------------

    async def room_devices(self, room_id: str) -> List[Tuple[str, str]]:
        if self.client.olm is None or room_id not in self.client.rooms:
            return []
        devices = self.client.room_devices(room_id)
        return [
            (user_id, device_id)
            for user_id, user_devices in devices.items()
            for device_id in user_devices
        ]

    def _olm_device(self, user_id: str, device_id: str):
        if self.client.olm is None:
            raise LocalProtocolError("Encryption is not enabled")
        try:
            return self.client.device_store[user_id][device_id]
        except KeyError:
            raise LocalProtocolError(f"Unknown device {user_id}/{device_id}") from None

    async def begin_verification(self, user_id: str, device_id: str) -> VerificationHandle:
        device = self._olm_device(user_id, device_id)
        response = await self.client.start_key_verification(device)
        if getattr(response, "status_code", None):
            raise TransientSendError(f"Could not start verification: {response}")

        transaction_id = None
        for tx, sas in self.client.key_verifications.items():
            other = sas.other_olm_device
            if other.user_id == user_id and other.id == device_id and not sas.canceled:
                transaction_id = tx

        handle = VerificationHandle(user_id, device_id, transaction_id)
        if transaction_id:
            self._handles[transaction_id] = handle
        logger.info(f"NioProtocolClient: Started verification with {user_id}/{device_id} ({transaction_id})")
        return handle

    def verification_handle(self, transaction_id: Optional[str]) -> Optional[VerificationHandle]:
        if transaction_id is None:
            return None
        return self._handles.get(transaction_id)

    async def set_device_trust(self, user_id: str, device_id: str, trusted: bool) -> None:
        device = self._olm_device(user_id, device_id)
        if trusted:
            self.client.unblacklist_device(device)
            self.client.verify_device(device)
        else:
            self.client.unverify_device(device)
            self.client.blacklist_device(device)

    async def confirm_verification(self, transaction_id: str) -> None:
        """Confirm that the short auth strings matched."""
        await self.client.confirm_short_auth_string(transaction_id)
        self._check_verification(transaction_id)

    async def _on_key_verification(self, event: KeyVerificationEvent) -> None:
        tx = event.transaction_id
        sas = self.client.key_verifications.get(tx)

        if isinstance(event, KeyVerificationStart):
            if tx not in self._handles:
                self._handles[tx] = VerificationHandle(event.sender, event.from_device, tx)
            if self.auto_confirm_sas:
                await self.client.accept_key_verification(tx)

        elif isinstance(event, KeyVerificationKey) and sas is not None:
            logger.info(
                f"NioProtocolClient: Short auth string for {event.sender} ({tx}): "
                + " ".join(emoji for emoji, _ in sas.get_emoji())
            )
            if self.auto_confirm_sas:
                await self.client.confirm_short_auth_string(tx)

        elif isinstance(event, KeyVerificationCancel):
            logger.info(f"NioProtocolClient: Verification {tx} cancelled: {event.reason}")
            handle = self._handles.pop(tx, None)
            if handle is not None:
                handle.resolve(VerificationOutcome.REJECTED)
            return

        self._check_verification(tx)

    def _check_verification(self, transaction_id: str) -> None:
        sas = self.client.key_verifications.get(transaction_id)
        handle = self._handles.get(transaction_id)
        if sas is None or handle is None:
            return
        if sas.verified:
            handle.resolve(VerificationOutcome.VERIFIED)
            del self._handles[transaction_id]
        elif sas.canceled:
            handle.resolve(VerificationOutcome.REJECTED)
            del self._handles[transaction_id]

    async def close(self) -> None:
        for handle in self._handles.values():
            handle.resolve(VerificationOutcome.REJECTED)
        self._handles.clear()
        await self.client.close()
