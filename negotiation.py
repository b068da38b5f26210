"""Client-side offer/answer/candidate state machine, one per remote peer.

The machine performs no I/O. ``handle(event)`` takes one typed event and
returns the commands the driver must execute, in order. Results of async
work (a generated local description, a gathered candidate, a peer
connection state change) come back in as events.

Roles are fixed at pairing time: whoever receives ``other-user`` arrived
second and is the only side that ever creates an offer.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import protocol

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = 'idle'
    AWAITING_PEER = 'awaiting-peer'
    OFFERING = 'offering'
    ANSWERING = 'answering'
    NEGOTIATING = 'negotiating'
    CONNECTED = 'connected'
    FAILED = 'failed'
    CLOSED = 'closed'


TERMINAL = frozenset({Phase.FAILED, Phase.CLOSED})


class Role(enum.Enum):
    INITIATOR = 'initiator'
    RESPONDER = 'responder'


# ============ EVENTS ============

@dataclass(frozen=True)
class MediaAcquired:
    pass


@dataclass(frozen=True)
class MediaDenied:
    reason: str = ''


@dataclass(frozen=True)
class RoomFullEvent:
    room: str = ''


@dataclass(frozen=True)
class OtherUser:
    peer: str


@dataclass(frozen=True)
class UserJoined:
    peer: str


@dataclass(frozen=True)
class UserDisconnected:
    peer: str


@dataclass(frozen=True)
class RemoteOffer:
    sdp: Any
    sender: str


@dataclass(frozen=True)
class RemoteAnswer:
    sdp: Any
    sender: str


@dataclass(frozen=True)
class RemoteCandidate:
    candidate: Any
    sender: str


@dataclass(frozen=True)
class LocalDescription:
    sdp: Any


@dataclass(frozen=True)
class LocalCandidate:
    candidate: Any


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str


@dataclass(frozen=True)
class HangUp:
    pass


PEER_EVENTS = {
    protocol.OTHER_USER: OtherUser,
    protocol.USER_JOINED: UserJoined,
    protocol.USER_DISCONNECTED: UserDisconnected,
}

REMOTE_EVENTS = {
    protocol.OFFER: (RemoteOffer, 'sdp'),
    protocol.ANSWER: (RemoteAnswer, 'sdp'),
    protocol.ICE_CANDIDATE: (RemoteCandidate, 'candidate'),
}


def event_from_message(msg: dict):
    """Map a decoded relay frame to an event.

    Returns ``None`` for frames the machine ignores and for frames missing
    the identity they must carry.
    """
    msg_type = msg.get('type')
    if msg_type == protocol.ROOM_FULL:
        return RoomFullEvent(msg.get('room', ''))

    if msg_type in PEER_EVENTS:
        peer = msg.get('peer')
        if not isinstance(peer, str) or not peer:
            logger.warning('dropping %s without peer id', msg_type)
            return None
        return PEER_EVENTS[msg_type](peer)

    if msg_type in REMOTE_EVENTS:
        sender = msg.get('sender')
        if not isinstance(sender, str) or not sender:
            logger.warning('dropping %s without sender', msg_type)
            return None
        event_type, field_name = REMOTE_EVENTS[msg_type]
        return event_type(msg.get(field_name), sender)
    return None


# ============ COMMANDS ============

@dataclass(frozen=True)
class AcquireMedia:
    video: bool = True
    audio: bool = True


@dataclass(frozen=True)
class Send:
    type: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OpenPeerConnection:
    """Create the peer connection and attach local tracks."""


@dataclass(frozen=True)
class CreateOffer:
    """Generate an offer and set it as the local description."""


@dataclass(frozen=True)
class AcceptOffer:
    """Set the remote offer, generate an answer, set it as local description."""
    sdp: Any


@dataclass(frozen=True)
class AcceptAnswer:
    sdp: Any


@dataclass(frozen=True)
class AddCandidate:
    candidate: Any


@dataclass(frozen=True)
class ClosePeerConnection:
    """Close the peer connection and stop this session's track handles."""


@dataclass(frozen=True)
class Notify:
    """Status surfaced to the local application."""
    status: str
    detail: Any = None


# ============ STATE MACHINE ============

class Negotiation:
    def __init__(self, room_id: str, joined: bool = False):
        self.room_id = room_id
        self.phase = Phase.AWAITING_PEER if joined else Phase.IDLE
        self.peer_id: Optional[str] = None
        self.role: Optional[Role] = None
        self.pc_open = False
        self.remote_set = False
        self.pending: List[Tuple[str, Any]] = []  # (sender, candidate) before remote description

    @property
    def closed(self) -> bool:
        return self.phase in TERMINAL

    def start(self) -> list:
        if self.phase is not Phase.IDLE:
            return []
        return [AcquireMedia()]

    def handle(self, event) -> list:
        if self.closed:
            logger.debug('ignoring %s in %s', type(event).__name__, self.phase.value)
            return []

        if isinstance(event, MediaAcquired):
            return self._on_media(event)
        if isinstance(event, MediaDenied):
            return self._on_media_denied(event)
        if isinstance(event, RoomFullEvent):
            return self._close(Notify('room-full', event.room or self.room_id))
        if isinstance(event, OtherUser):
            return self._on_other_user(event)
        if isinstance(event, UserJoined):
            return self._on_user_joined(event)
        if isinstance(event, RemoteOffer):
            return self._on_offer(event)
        if isinstance(event, RemoteAnswer):
            return self._on_answer(event)
        if isinstance(event, RemoteCandidate):
            return self._on_remote_candidate(event)
        if isinstance(event, LocalDescription):
            return self._on_local_description(event)
        if isinstance(event, LocalCandidate):
            return self._on_local_candidate(event)
        if isinstance(event, ConnectionStateChanged):
            return self._on_connection_state(event)
        if isinstance(event, UserDisconnected):
            if event.peer != self.peer_id:
                return []
            return self._close(Notify('peer-left', event.peer))
        if isinstance(event, HangUp):
            return self._close(Notify('closed'))
        raise TypeError(f'unknown event {event!r}')

    # ---- transitions ----

    def _on_media(self, event) -> list:
        if self.phase is not Phase.IDLE:
            return []
        self.phase = Phase.AWAITING_PEER
        return [Send(protocol.JOIN_ROOM, {'room': self.room_id})]

    def _on_media_denied(self, event) -> list:
        if self.phase is not Phase.IDLE:
            return []
        self.phase = Phase.FAILED
        return [Notify('media-denied', event.reason)]

    def _on_other_user(self, event) -> list:
        if self.phase is not Phase.AWAITING_PEER:
            return []
        self._pair(event.peer, Role.INITIATOR)
        self.phase = Phase.OFFERING
        self.pc_open = True
        return [OpenPeerConnection(), CreateOffer()]

    def _on_user_joined(self, event) -> list:
        if self.phase is not Phase.AWAITING_PEER:
            return []
        self._pair(event.peer, Role.RESPONDER)
        self.phase = Phase.ANSWERING
        self.pc_open = True
        return [OpenPeerConnection()]

    def _on_offer(self, event) -> list:
        if self.role is Role.INITIATOR:
            logger.warning('offer from %s while initiating; ignored', event.sender)
            return []
        if self.phase not in (Phase.AWAITING_PEER, Phase.ANSWERING):
            return []
        if self.peer_id is not None and event.sender != self.peer_id:
            return []

        commands = []
        if self.peer_id is None:
            self._pair(event.sender, Role.RESPONDER)
        if not self.pc_open:
            self.pc_open = True
            commands.append(OpenPeerConnection())
        self.phase = Phase.ANSWERING
        commands.append(AcceptOffer(event.sdp))
        self.remote_set = True
        return commands + self._flush()

    def _on_answer(self, event) -> list:
        if self.phase is not Phase.OFFERING or event.sender != self.peer_id:
            return []
        self.phase = Phase.NEGOTIATING
        self.remote_set = True
        return [AcceptAnswer(event.sdp)] + self._flush()

    def _on_local_description(self, event) -> list:
        if self.peer_id is None:
            return []
        if self.phase is Phase.OFFERING:
            return [Send(protocol.OFFER, {'target': self.peer_id, 'sdp': event.sdp})]
        if self.phase is Phase.ANSWERING:
            self.phase = Phase.NEGOTIATING
            return [Send(protocol.ANSWER, {'target': self.peer_id, 'sdp': event.sdp})]
        return []

    def _on_remote_candidate(self, event) -> list:
        if self.peer_id is not None and event.sender != self.peer_id:
            return []
        if not self.remote_set:
            self.pending.append((event.sender, event.candidate))
            return []
        return [AddCandidate(event.candidate)]

    def _on_local_candidate(self, event) -> list:
        if self.peer_id is None:
            return []
        return [Send(protocol.ICE_CANDIDATE, {'target': self.peer_id, 'candidate': event.candidate})]

    def _on_connection_state(self, event) -> list:
        if event.state == 'connected':
            if self.phase is Phase.CONNECTED:
                return []
            self.phase = Phase.CONNECTED
            return [Notify('connected', self.peer_id)]
        if event.state == 'disconnected':
            return [Notify('disconnected', self.peer_id)]
        if event.state in ('failed', 'closed'):
            return self._close(Notify('disconnected', self.peer_id))
        return []

    # ---- helpers ----

    def _pair(self, peer_id: str, role: Role):
        self.peer_id = peer_id
        self.role = role
        logger.info('paired with %s as %s in room %s', peer_id, role.value, self.room_id)

    def _flush(self) -> list:
        queued, self.pending = self.pending, []
        return [AddCandidate(c) for sender, c in queued if sender == self.peer_id]

    def _close(self, notice: Notify) -> list:
        commands = []
        if self.pc_open:
            self.pc_open = False
            commands.append(ClosePeerConnection())
        self.phase = Phase.CLOSED
        self.pending = []
        commands.append(notice)
        return commands
