#!/usr/bin/env python3
"""WebSocket signaling relay for two-party calls.

Pairs two participants per room and forwards offer/answer/ice-candidate
frames 1:1 between them. Media never passes through here.
"""
import argparse
import asyncio
import http
import logging
import uuid
from typing import Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

import config
import protocol
from rooms import RoomFull, RoomRegistry

logger = logging.getLogger(__name__)


class Lifecycle:
    """Live connections by participant id, plus room cleanup on departure."""

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.connections: Dict[str, object] = {}

    def connect(self, ws) -> str:
        participant_id = uuid.uuid4().hex
        self.connections[participant_id] = ws
        logger.info('%s connected (%d online)', participant_id, len(self.connections))
        return participant_id

    async def send(self, participant_id: str, frame: str) -> bool:
        """Unicast one frame. An absent or closing target is dropped silently."""
        ws = self.connections.get(participant_id)
        if ws is None:
            logger.debug('drop frame for %s: not connected', participant_id)
            return False
        try:
            await ws.send(frame)
        except ConnectionClosed:
            logger.debug('drop frame for %s: connection closed', participant_id)
            return False
        return True

    async def leave(self, participant_id: str) -> Optional[str]:
        left = self.registry.leave(participant_id)
        if left is None:
            return None
        room_id, peer_id = left
        logger.info('%s left room %s', participant_id, room_id)
        if peer_id is not None:
            await self.send(peer_id, protocol.encode(protocol.USER_DISCONNECTED, peer=participant_id))
        return peer_id

    async def disconnect(self, participant_id: str):
        if self.connections.pop(participant_id, None) is None:
            return
        logger.info('%s disconnected', participant_id)
        await self.leave(participant_id)


class SignalingRouter:
    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry if registry is not None else RoomRegistry()
        self.lifecycle = Lifecycle(self.registry)

    async def handle(self, ws):
        """Serve one websocket connection until it closes."""
        participant_id = self.lifecycle.connect(ws)
        try:
            await self.lifecycle.send(participant_id, protocol.encode(protocol.WELCOME, id=participant_id))
            async for raw in ws:
                await self.dispatch(participant_id, raw)
        except ConnectionClosed as e:
            logger.info('%s closed abnormally: %s', participant_id, e)
        finally:
            await self.lifecycle.disconnect(participant_id)

    async def dispatch(self, sender: str, raw):
        try:
            msg = protocol.decode(raw)
        except protocol.ProtocolError as e:
            await self._error(sender, str(e))
            return

        msg_type = msg['type']
        if msg_type == protocol.JOIN_ROOM:
            await self.join(sender, msg.get('room'))
        elif msg_type == protocol.LEAVE_ROOM:
            await self.lifecycle.leave(sender)
        elif msg_type in protocol.FORWARDED:
            await self.forward(sender, msg_type, msg)
        else:
            await self._error(sender, f'unknown message type {msg_type!r}')

    async def join(self, sender: str, room_id):
        if not isinstance(room_id, str) or not room_id:
            await self._error(sender, 'missing room')
            return
        current = self.registry.room_of(sender)
        if current != room_id and self.registry.is_full(room_id):
            await self._room_full(sender, room_id)
            return
        # the move below cannot be rejected: room_id has a free seat or holds sender
        if current is not None:
            await self.lifecycle.leave(sender)

        try:
            result = self.registry.join(room_id, sender)
        except RoomFull:
            await self._room_full(sender, room_id)
            return

        logger.info('%s joined room %s (%d/2)', sender, room_id, len(self.registry.members(room_id)))
        if result.alone:
            return
        await self.lifecycle.send(sender, protocol.encode(protocol.OTHER_USER, peer=result.peer))
        await self.lifecycle.send(result.peer, protocol.encode(protocol.USER_JOINED, peer=sender))

    async def forward(self, sender: str, msg_type: str, msg: dict):
        target = msg.get('target')
        if not target or self.registry.peer_of(sender) != target:
            logger.debug('drop %s from %s: %s is not its peer', msg_type, sender, target)
            return
        field = protocol.FORWARDED[msg_type]
        logger.debug('%s %s -> %s', msg_type, sender, target)
        frame = protocol.encode(msg_type, **{field: msg.get(field), 'sender': sender})
        await self.lifecycle.send(target, frame)

    async def _room_full(self, sender: str, room_id: str):
        logger.info('%s rejected: room %s is full', sender, room_id)
        await self.lifecycle.send(sender, protocol.encode(protocol.ROOM_FULL, room=room_id))

    async def _error(self, participant_id: str, error: str):
        logger.warning('rejecting frame from %s: %s', participant_id, error)
        await self.lifecycle.send(participant_id, protocol.encode(protocol.ERROR, error=error))


def health_check(connection, request):
    if request.path == '/healthz':
        return connection.respond(http.HTTPStatus.OK, 'OK\n')
    return None


async def serve(host: str, port: int):
    router = SignalingRouter()
    async with websockets.serve(router.handle, host, port, process_request=health_check):
        logger.info('signaling relay on ws://%s:%d', host, port)
        await asyncio.Future()  # run forever


def main(argv=None):
    p = argparse.ArgumentParser(description='Two-party WebRTC signaling relay')
    p.add_argument('--host', default=config.relay_host())
    p.add_argument('--port', type=int, default=config.relay_port())
    p.add_argument('--log-level', default=config.log_level())
    args = p.parse_args(argv)

    logging.basicConfig(level=args.log_level, format=config.LOG_FORMAT)
    try:
        asyncio.run(serve(args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
