"""In-memory room registry: room_id -> participants (at most two)."""
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

CAPACITY = 2


class RoomFull(Exception):
    def __init__(self, room_id: str):
        super().__init__(f'room {room_id!r} is full')
        self.room_id = room_id


@dataclass(frozen=True)
class JoinResult:
    alone: bool
    peer: Optional[str] = None


class RoomRegistry:
    """Owns every live room for one relay process.

    Rooms are created on first join and deleted the moment they empty.
    All methods are synchronous, so on a single event loop each call is
    atomic with respect to every other join/leave.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}
        self._where: Dict[str, str] = {}  # participant -> room_id

    def join(self, room_id: str, participant_id: str) -> JoinResult:
        if not room_id:
            raise ValueError('room id must be a non-empty string')
        current = self._where.get(participant_id)
        if current is not None:
            raise ValueError(f'{participant_id} is already in room {current!r}')

        members = self._rooms.get(room_id)
        if members is None:
            self._rooms[room_id] = {participant_id}
            self._where[participant_id] = room_id
            return JoinResult(alone=True)
        if len(members) >= CAPACITY:
            raise RoomFull(room_id)

        (peer,) = members
        members.add(participant_id)
        self._where[participant_id] = room_id
        return JoinResult(alone=False, peer=peer)

    def leave(self, participant_id: str) -> Optional[Tuple[str, Optional[str]]]:
        """Remove a participant from its room.

        Returns ``(room_id, peer_id)`` where ``peer_id`` is the occupant left
        behind (``None`` if the room emptied and was deleted), or ``None`` when
        the participant was not in any room.
        """
        room_id = self._where.pop(participant_id, None)
        if room_id is None:
            return None
        members = self._rooms[room_id]
        members.discard(participant_id)
        if not members:
            del self._rooms[room_id]
            return room_id, None
        (peer,) = members
        return room_id, peer

    def peer_of(self, participant_id: str) -> Optional[str]:
        room_id = self._where.get(participant_id)
        if room_id is None:
            return None
        for member in self._rooms[room_id]:
            if member != participant_id:
                return member
        return None

    def is_full(self, room_id: str) -> bool:
        return len(self._rooms.get(room_id, ())) >= CAPACITY

    def room_of(self, participant_id: str) -> Optional[str]:
        return self._where.get(participant_id)

    def members(self, room_id: str) -> frozenset:
        return frozenset(self._rooms.get(room_id, ()))

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
