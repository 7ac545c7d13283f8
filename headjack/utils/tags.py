"""
Namespaced room tags.

Room tags are private to the bot's account, which makes them a cheap place
to keep per-room settings. Tags are namespaced to the application in the
form `tld.domain.tag`, and this module only ever touches tags inside the
namespace it is given.

RoomTags keeps a local copy that is only written back on sync(), or when
used as an async context manager, on exit:

    async with await RoomTags.load(client, room_id, "org.example.bot") as tags:
        tags.replace_kv("language", "de")
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..integrations.base import ProtocolClient

logger = logging.getLogger(__name__)


def _full_tag(namespace: str, tag: str) -> str:
    return f"{namespace}.{tag}" if namespace else tag


async def get_tags(client: ProtocolClient, room_id: str, namespace: str) -> List[str]:
    """Tags of a room inside the namespace, with the namespace stripped."""
    tags = await client.room_tags(room_id)
    if not namespace:
        return list(tags)
    prefix = f"{namespace}."
    return [tag[len(prefix):] for tag in tags if tag.startswith(prefix)]


async def add_tag(client: ProtocolClient, room_id: str, namespace: str, tag: str) -> None:
    await client.set_room_tag(room_id, _full_tag(namespace, tag))


async def remove_tag(client: ProtocolClient, room_id: str, namespace: str, tag: str) -> None:
    await client.remove_room_tag(room_id, _full_tag(namespace, tag))


async def replace_tags(client: ProtocolClient, room_id: str, namespace: str, tags: Iterable[str]) -> None:
    """
    Make the namespace hold exactly the given tags.

    Only the difference is written: tags already present are left alone.
    """
    wanted = list(dict.fromkeys(tags))
    existing = await get_tags(client, room_id, namespace)
    for tag in wanted:
        if tag not in existing:
            await add_tag(client, room_id, namespace, tag)
    for tag in existing:
        if tag not in wanted:
            await remove_tag(client, room_id, namespace, tag)


class RoomTags:
    """
    Local, editable view of a room's tags in one namespace.

    Plain tags and key-value tags (stored as `key=value`) can be mixed.
    Changes mark the view dirty; nothing reaches the server until sync().
    """

    def __init__(self, client: ProtocolClient, room_id: str, namespace: str, tags: Optional[List[str]] = None):
        self.client = client
        self.room_id = room_id
        self.namespace = namespace
        self._tags: List[str] = list(tags or [])
        self._dirty = False

    @classmethod
    async def load(cls, client: ProtocolClient, room_id: str, namespace: str) -> "RoomTags":
        return cls(client, room_id, namespace, await get_tags(client, room_id, namespace))

    @property
    def tags(self) -> List[str]:
        return list(self._tags)

    @property
    def dirty(self) -> bool:
        """Whether there are local changes not yet synced."""
        return self._dirty

    def add(self, tag: str) -> None:
        self._tags.append(tag)
        self._dirty = True

    def remove(self, tag: str) -> None:
        """Remove a plain tag. Does nothing if it is not there."""
        self._tags = [t for t in self._tags if t != tag]
        self._dirty = True

    def get_value(self, key: str) -> Optional[str]:
        for tag in self._tags:
            name, sep, value = tag.partition("=")
            if sep and name == key:
                return value
        return None

    def add_kv(self, key: str, value: str) -> None:
        """Add a key-value tag. An existing value for the key is kept as well."""
        self._tags.append(f"{key}={value}")
        self._dirty = True

    def replace_kv(self, key: str, value: str) -> None:
        self.remove_kv(key)
        self.add_kv(key, value)

    def remove_kv(self, key: str) -> None:
        prefix = f"{key}="
        self._tags = [t for t in self._tags if not t.startswith(prefix)]
        self._dirty = True

    def get_kvs(self) -> Dict[str, str]:
        kvs = {}
        for tag in self._tags:
            key, sep, value = tag.partition("=")
            if sep:
                kvs[key] = value
        return kvs

    async def sync(self) -> None:
        """Write local changes to the server."""
        await replace_tags(self.client, self.room_id, self.namespace, self._tags)
        self._dirty = False
        logger.debug(f"RoomTags: Synced {len(self._tags)} tag(s) in {self.namespace} for {self.room_id}")

    async def __aenter__(self) -> "RoomTags":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._dirty:
            await self.sync()

    def __repr__(self) -> str:
        return f"RoomTags({self.room_id}, {self.namespace!r}, tags={self._tags}, dirty={self._dirty})"
