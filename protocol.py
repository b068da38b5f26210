"""Wire vocabulary shared by the relay and the headless client.

Every signaling message is a JSON object in one websocket text frame.
The ``type`` field names the event; the payload sits beside it.
"""
import json

# client -> relay
JOIN_ROOM = 'join-room'
LEAVE_ROOM = 'leave-room'

# relay -> client
WELCOME = 'welcome'
ROOM_FULL = 'room-full'
OTHER_USER = 'other-user'
USER_JOINED = 'user-joined'
USER_DISCONNECTED = 'user-disconnected'
ERROR = 'error'

# both directions, relay rewrites target -> sender
OFFER = 'offer'
ANSWER = 'answer'
ICE_CANDIDATE = 'ice-candidate'

# field carrying the opaque blob for each forwarded kind
FORWARDED = {
    OFFER: 'sdp',
    ANSWER: 'sdp',
    ICE_CANDIDATE: 'candidate',
}


class ProtocolError(ValueError):
    """Raised when a frame is not a JSON object with a string ``type``."""


def encode(msg_type: str, **payload) -> str:
    return json.dumps({'type': msg_type, **payload})


def decode(raw) -> dict:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode()
        except UnicodeDecodeError as e:
            raise ProtocolError('frame is not utf-8') from e
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f'invalid json: {e.msg}') from e
    if not isinstance(msg, dict):
        raise ProtocolError('frame must be a json object')
    if not isinstance(msg.get('type'), str):
        raise ProtocolError('missing message type')
    return msg
