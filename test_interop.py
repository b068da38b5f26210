"""End-to-end signaling over a real websockets relay on an ephemeral port.

Raw websocket clients stand in for browsers; the last tests put the
headless CallClient on one side of the room.
"""
import asyncio
import json

import pytest
import websockets
from aiortc import RTCConfiguration

import protocol
from call_client import CallClient, MediaPermissionDenied
from relay import SignalingRouter, health_check


@pytest.fixture
async def relay():
    router = SignalingRouter()
    async with websockets.serve(router.handle, '127.0.0.1', 0, process_request=health_check) as server:
        port = server.sockets[0].getsockname()[1]
        yield router, f'ws://127.0.0.1:{port}'


class Peer:
    """Browser stand-in: a raw websocket speaking the relay protocol."""

    def __init__(self, ws, my_id):
        self.ws = ws
        self.id = my_id

    @classmethod
    async def connect(cls, url):
        ws = await websockets.connect(url)
        welcome = json.loads(await ws.recv())
        assert welcome['type'] == 'welcome'
        return cls(ws, welcome['id'])

    async def send(self, msg_type, **payload):
        await self.ws.send(protocol.encode(msg_type, **payload))

    async def recv(self, timeout=5.0):
        return json.loads(await asyncio.wait_for(self.ws.recv(), timeout))

    async def nothing(self, timeout=0.2):
        with pytest.raises(asyncio.TimeoutError):
            await self.recv(timeout)

    async def close(self):
        await self.ws.close()


async def test_two_party_scenario(relay):
    router, url = relay
    a = await Peer.connect(url)
    b = await Peer.connect(url)

    # A alone in r1
    await a.send('join-room', room='r1')
    await a.nothing()

    # B pairs with A
    await b.send('join-room', room='r1')
    assert await b.recv() == {'type': 'other-user', 'peer': a.id}
    assert await a.recv() == {'type': 'user-joined', 'peer': b.id}

    # offer / answer rewritten target -> sender
    await b.send('offer', target=a.id, sdp='X')
    assert await a.recv() == {'type': 'offer', 'sdp': 'X', 'sender': b.id}
    await a.send('answer', target=b.id, sdp='Y')
    assert await b.recv() == {'type': 'answer', 'sdp': 'Y', 'sender': a.id}
    await a.send('ice-candidate', target=b.id, candidate={'candidate': 'c'})
    assert await b.recv() == {'type': 'ice-candidate', 'candidate': {'candidate': 'c'}, 'sender': a.id}

    # C is turned away
    c = await Peer.connect(url)
    await c.send('join-room', room='r1')
    assert await c.recv() == {'type': 'room-full', 'room': 'r1'}
    assert router.registry.members('r1') == {a.id, b.id}

    # A drops, B is told once, D takes the seat
    await a.close()
    assert await b.recv() == {'type': 'user-disconnected', 'peer': a.id}
    assert router.registry.members('r1') == {b.id}

    d = await Peer.connect(url)
    await d.send('join-room', room='r1')
    assert await d.recv() == {'type': 'other-user', 'peer': b.id}
    assert await b.recv() == {'type': 'user-joined', 'peer': d.id}
    await b.nothing()

    for p in (b, c, d):
        await p.close()


async def test_rooms_do_not_leak(relay):
    _, url = relay
    a, b, x, y = [await Peer.connect(url) for _ in range(4)]
    await a.send('join-room', room='left')
    await b.send('join-room', room='left')
    await x.send('join-room', room='right')
    await y.send('join-room', room='right')
    await b.recv(), await a.recv(), await y.recv(), await x.recv()

    await a.send('offer', target=x.id, sdp='stray')
    await a.send('offer', target=b.id, sdp='meant')
    assert await b.recv() == {'type': 'offer', 'sdp': 'meant', 'sender': a.id}
    await x.nothing()
    await y.nothing()

    for p in (a, b, x, y):
        await p.close()


async def test_error_frames_keep_connection_open(relay):
    _, url = relay
    a = await Peer.connect(url)
    await a.ws.send('{{{')
    assert (await a.recv())['type'] == 'error'
    await a.send('join-room', room='still-here')
    await a.nothing()
    await a.close()


async def test_health_endpoint(relay):
    _, url = relay
    host_port = url[len('ws://'):]
    reader, writer = await asyncio.open_connection(*host_port.split(':'))
    writer.write(f'GET /healthz HTTP/1.1\r\nHost: {host_port}\r\n\r\n'.encode())
    await writer.drain()
    status_line = await asyncio.wait_for(reader.readline(), 5)
    assert b'200' in status_line
    writer.close()


async def test_call_client_offers_to_waiting_browser(relay):
    _, url = relay
    browser = await Peer.connect(url)
    await browser.send('join-room', room='call')

    async with CallClient(url, 'call', rtc_config=RTCConfiguration(iceServers=[])) as bot:
        await bot.join()
        assert await browser.recv() == {'type': 'user-joined', 'peer': bot.my_id}

        offer = await browser.recv(timeout=15)
        assert offer['type'] == 'offer'
        assert offer['sender'] == bot.my_id
        assert offer['sdp']['type'] == 'offer'
        assert 'm=audio' in offer['sdp']['sdp']
        assert 'm=video' in offer['sdp']['sdp']

        await browser.close()
        notice = await bot.next_status(timeout=5)
        while notice.status != 'peer-left':
            notice = await bot.next_status(timeout=5)
        assert notice.detail == browser.id
        assert not bot.done

    assert bot.done


async def test_call_client_room_full(relay):
    _, url = relay
    a = await Peer.connect(url)
    b = await Peer.connect(url)
    await a.send('join-room', room='busy')
    await b.send('join-room', room='busy')
    await b.recv()

    async with CallClient(url, 'busy', rtc_config=RTCConfiguration(iceServers=[])) as bot:
        await bot.join()
        await bot.wait_done(timeout=5)
        notice = await bot.next_status(timeout=1)
        assert (notice.status, notice.detail) == ('room-full', 'busy')

    await a.close()
    await b.close()


async def test_call_client_without_media_never_joins(relay):
    router, url = relay
    bot = CallClient(url, 'nomedia', play='/nonexistent/cam.mp4',
                     rtc_config=RTCConfiguration(iceServers=[]))
    with pytest.raises(MediaPermissionDenied):
        await bot.join()
    assert 'nomedia' not in router.registry
    assert bot.done
