"""
Bot Session

One authenticated bot identity. The session is created after the
credential exchange and handed explicitly to the components that need it;
there is no process-wide session object.
"""

from dataclasses import dataclass, field
from typing import Optional, Set


@dataclass
class Session:
    """
    Attributes:
        user_id: Fully qualified id of the bot user
        device_id: Device the bot logged in with
        cursor: Sync cursor up to which events have been processed
        joined_rooms: Rooms the bot currently occupies
    """

    user_id: str
    device_id: Optional[str] = None
    cursor: Optional[str] = None
    joined_rooms: Set[str] = field(default_factory=set)

    def is_joined(self, room_id: str) -> bool:
        return room_id in self.joined_rooms
