"""Headless call client: no browser needed.

Joins a room on the signaling relay, captures local media, and drives a
``Negotiation`` per remote peer with an aiortc peer connection.

Usage:
    async with CallClient('ws://localhost:3001', 'room123') as client:
        await client.join()            # raises MediaPermissionDenied
        await client.wait_connected()  # blocks until media path is up
        status = await client.next_status()
"""
import asyncio
import logging
from collections import deque
from typing import Optional

import av
import websockets
from aiortc import (
    AudioStreamTrack, RTCConfiguration, RTCPeerConnection,
    RTCSessionDescription, VideoStreamTrack,
)
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp
from websockets.exceptions import ConnectionClosed

import config
import protocol
from negotiation import (
    AcceptAnswer, AcceptOffer, AcquireMedia, AddCandidate, ClosePeerConnection,
    ConnectionStateChanged, CreateOffer, HangUp, LocalDescription,
    MediaAcquired, MediaDenied, Negotiation, Notify, OpenPeerConnection,
    Phase, Send, event_from_message,
)

logger = logging.getLogger(__name__)

# stand-ins sent while a kind is muted: silence and blank frames
PLACEHOLDERS = {'audio': AudioStreamTrack, 'video': VideoStreamTrack}


class MediaPermissionDenied(Exception):
    """Local media could not be opened; the call attempt is over."""


def description_to_json(desc) -> dict:
    return {'type': desc.type, 'sdp': desc.sdp}


def description_from_json(blob) -> RTCSessionDescription:
    if not isinstance(blob, dict) or 'sdp' not in blob or 'type' not in blob:
        raise ValueError(f'not a session description: {blob!r}')
    return RTCSessionDescription(sdp=blob['sdp'], type=blob['type'])


def candidate_from_json(blob):
    """Browser RTCIceCandidate JSON -> aiortc candidate; ``None`` for end-of-candidates."""
    if isinstance(blob, str):
        blob = {'candidate': blob}
    line = (blob or {}).get('candidate') or ''
    if not line:
        return None
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = blob.get('sdpMid')
    candidate.sdpMLineIndex = blob.get('sdpMLineIndex')
    return candidate


class CallClient:
    def __init__(self, relay_url: str, room_id: str, play: Optional[str] = None,
                 play_format: Optional[str] = None, record: Optional[str] = None,
                 rtc_config: Optional[RTCConfiguration] = None):
        self.relay_url = relay_url
        self.room_id = room_id
        self.play = play
        self.play_format = play_format
        self.record = record
        self.rtc_config = rtc_config if rtc_config is not None else config.rtc_configuration()
        self.my_id: Optional[str] = None
        self.negotiation = Negotiation(room_id)
        self.pc: Optional[RTCPeerConnection] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._player: Optional[MediaPlayer] = None
        self._relay = MediaRelay()
        self._sources: list = []       # tracks owned by the call
        self._local_tracks: list = []  # relayed handles owned by the current session
        self._muted: set = set()
        self._recorder = None
        self._lock = asyncio.Lock()
        self._statuses: asyncio.Queue = asyncio.Queue()
        self._connected = asyncio.Event()
        self._done = asyncio.Event()
        self._closing = False
        self._last_denial: Optional[str] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ============ PUBLIC API ============

    async def join(self):
        """Open media, connect to the relay and ask to join the room."""
        self._ws = await websockets.connect(self.relay_url)
        welcome = protocol.decode(await self._ws.recv())
        if welcome['type'] == protocol.WELCOME:
            self.my_id = welcome.get('id')
        logger.info('connected to %s as %s', self.relay_url, self.my_id)
        self._reader = asyncio.create_task(self._read_loop())

        await self.feed(commands=self.negotiation.start())
        if self.negotiation.phase is Phase.FAILED:
            reason = self._last_denial or 'media unavailable'
            await self.close()
            raise MediaPermissionDenied(reason)

    async def feed(self, event=None, commands=None):
        """Run one event (or a batch of commands) and any follow-up events."""
        async with self._lock:
            pending = deque([event] if event is not None else [])
            batch = list(commands or [])
            while True:
                for cmd in batch:
                    follow = await self._execute(cmd)
                    if follow is not None:
                        pending.append(follow)
                if not pending:
                    break
                batch = self.negotiation.handle(pending.popleft())

    async def wait_connected(self, timeout: float = 15.0):
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def wait_done(self, timeout: float = None):
        await asyncio.wait_for(self._done.wait(), timeout)

    async def next_status(self, timeout: float = None) -> Notify:
        """Next status notice. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._statuses.get(), timeout)
        return await self._statuses.get()

    def set_muted(self, kind: str, muted: bool = True):
        """Send silence (audio) or blank frames (video) instead of local media.

        Takes effect on the live connection and on any connection opened later.
        """
        if kind not in PLACEHOLDERS:
            raise ValueError(f'unknown track kind {kind!r}')
        if muted == (kind in self._muted):
            return
        if muted:
            self._muted.add(kind)
        else:
            self._muted.discard(kind)
        logger.info('%s %s', kind, 'muted' if muted else 'unmuted')
        if self.pc is None:
            return

        for sender in self.pc.getSenders():
            old = sender.track
            if old is None or old.kind != kind:
                continue
            source = next((s for s in self._sources if s.kind == kind), None)
            if source is None:
                continue
            sender.replaceTrack(self._local_track(source))
            old.stop()
            if old in self._local_tracks:
                self._local_tracks.remove(old)

    def is_muted(self, kind: str) -> bool:
        return kind in self._muted

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def close(self):
        """Hang up and release everything. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        try:
            await self.feed(HangUp())
        finally:
            self._stop_sources()
            if self._reader is not None and self._reader is not asyncio.current_task():
                self._reader.cancel()
                try:
                    await self._reader
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception('relay reader failed')
            if self._ws is not None:
                await self._ws.close()
            self._done.set()

    # ============ INTERNALS ============

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                try:
                    msg = protocol.decode(raw)
                except protocol.ProtocolError as e:
                    logger.warning('bad frame from relay: %s', e)
                    continue
                if msg['type'] == protocol.ERROR:
                    logger.warning('relay error: %s', msg.get('error'))
                    continue
                event = event_from_message(msg)
                if event is not None:
                    await self.feed(event)
        except ConnectionClosed as e:
            logger.warning('relay connection lost: %s', e)
        if not self._closing:
            logger.info('relay closed the connection')
            self._done.set()

    async def _execute(self, cmd):
        if isinstance(cmd, AcquireMedia):
            try:
                self._open_media()
            except MediaPermissionDenied as e:
                self._last_denial = str(e)
                return MediaDenied(str(e))
            return MediaAcquired()
        if isinstance(cmd, Send):
            await self._send(cmd)
            return None
        if isinstance(cmd, OpenPeerConnection):
            self._open_pc()
            return None
        if isinstance(cmd, (CreateOffer, AcceptOffer, AcceptAnswer)):
            try:
                return await self._describe(cmd)
            except (ValueError, InvalidStateError, InvalidAccessError) as e:
                logger.error('negotiation failed: %s', e)
                return ConnectionStateChanged('failed')
        if isinstance(cmd, AddCandidate):
            await self._add_candidate(cmd.candidate)
            return None
        if isinstance(cmd, ClosePeerConnection):
            await self._close_pc()
            return None
        if isinstance(cmd, Notify):
            self._notify(cmd)
            return None
        raise TypeError(f'unknown command {cmd!r}')

    def _open_media(self):
        if self._sources:
            return
        if self.play:
            try:
                self._player = MediaPlayer(self.play, format=self.play_format)
            except (OSError, av.error.FFmpegError) as e:
                raise MediaPermissionDenied(f'cannot open {self.play}: {e}') from e
            self._sources = [t for t in (self._player.audio, self._player.video) if t is not None]
            if not self._sources:
                raise MediaPermissionDenied(f'{self.play} has no audio or video')
        else:
            self._sources = [AudioStreamTrack(), VideoStreamTrack()]
        logger.info('local media: %s', ', '.join(t.kind for t in self._sources))

    def _stop_sources(self):
        for track in self._sources:
            track.stop()
        self._sources = []
        self._player = None

    async def _send(self, cmd: Send):
        if self._ws is None:
            return
        try:
            await self._ws.send(protocol.encode(cmd.type, **cmd.payload))
        except ConnectionClosed:
            logger.warning('relay gone, could not send %s', cmd.type)
            self._done.set()

    def _open_pc(self):
        pc = RTCPeerConnection(self.rtc_config)
        session = self.negotiation
        self.pc = pc
        self._recorder = MediaRecorder(self.record) if self.record else MediaBlackhole()
        for source in self._sources:
            pc.addTrack(self._local_track(source))

        @pc.on('track')
        def on_track(track):
            logger.info('remote %s track from %s', track.kind, session.peer_id)
            if self._recorder is not None:
                self._recorder.addTrack(track)
            self._statuses.put_nowait(Notify('remote-track', track.kind))

        @pc.on('connectionstatechange')
        async def on_state():
            logger.info('connection: %s', pc.connectionState)
            if self.negotiation is session and self.pc is pc:
                await self.feed(ConnectionStateChanged(pc.connectionState))

    def _local_track(self, source):
        if source.kind in self._muted:
            track = PLACEHOLDERS[source.kind]()
        else:
            track = self._relay.subscribe(source)
        self._local_tracks.append(track)
        return track

    async def _describe(self, cmd):
        pc = self.pc
        if isinstance(cmd, AcceptAnswer):
            await pc.setRemoteDescription(description_from_json(cmd.sdp))
            await self._recorder.start()
            return None
        if isinstance(cmd, AcceptOffer):
            await pc.setRemoteDescription(description_from_json(cmd.sdp))
            await self._recorder.start()
            local = await pc.createAnswer()
        else:
            local = await pc.createOffer()
        # aiortc gathers candidates here and embeds them in the description
        await pc.setLocalDescription(local)
        return LocalDescription(description_to_json(pc.localDescription))

    async def _add_candidate(self, blob):
        try:
            candidate = candidate_from_json(blob)
            if candidate is None:
                return
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            # redundant candidates are expected to fail now and then
            logger.warning('ignoring ICE candidate %r: %s', blob, e)

    async def _close_pc(self):
        pc, self.pc = self.pc, None
        if pc is not None:
            await pc.close()
        for track in self._local_tracks:
            track.stop()
        self._local_tracks = []
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await recorder.stop()

    def _notify(self, notice: Notify):
        logger.info('status: %s %s', notice.status, notice.detail or '')
        self._statuses.put_nowait(notice)
        if notice.status == 'connected':
            self._connected.set()
        elif notice.status in ('disconnected', 'peer-left', 'closed', 'room-full'):
            self._connected.clear()

        if notice.status == 'peer-left' and not self._closing:
            # stay in the room and answer whoever arrives next
            self.negotiation = Negotiation(self.room_id, joined=True)
        elif self.negotiation.closed:
            self._done.set()
