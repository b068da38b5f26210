#!/usr/bin/env python3
"""Call bot: headless participant that joins a room and takes the call.

Sends synthetic test audio/video (or a media file) to whoever pairs with it
and optionally records what the peer sends back.

  python3 call_bot.py --room room123
  python3 call_bot.py --room room123 --play clip.mp4 --record peer.mp4
  python3 call_bot.py --room room123 --duration 60
  python3 call_bot.py --room room123 --mute-video
"""
import argparse
import asyncio
import logging
import sys

import config
from call_client import CallClient, MediaPermissionDenied

logger = logging.getLogger(__name__)

MESSAGES = {
    'remote-track': 'receiving {} from peer',
    'connected': 'connected to {}',
    'disconnected': 'media path to {} lost',
    'peer-left': '{} left the room, waiting for the next peer',
    'room-full': 'room {} is full (maximum 2 participants)',
    'closed': 'call ended',
}


async def take_call(args) -> int:
    client = CallClient(args.relay, args.room, play=args.play,
                        play_format=args.play_format, record=args.record)
    if args.mute_audio:
        client.set_muted('audio')
    if args.mute_video:
        client.set_muted('video')
    async with client:
        try:
            await client.join()
        except MediaPermissionDenied as e:
            print(f'[bot] cannot start call: {e}')
            return 1
        except OSError as e:
            print(f'[bot] cannot reach relay {args.relay}: {e}')
            return 1
        print(f'[bot] in room {args.room} as {client.my_id}, waiting for a peer...')

        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.duration if args.duration else None
        exit_code = 0
        while not client.done:
            timeout = None
            if deadline is not None:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    break
            done_waiter = asyncio.ensure_future(client.wait_done())
            status_waiter = asyncio.ensure_future(client.next_status())
            finished, _ = await asyncio.wait(
                {done_waiter, status_waiter}, timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED)
            done_waiter.cancel()
            if status_waiter in finished:
                notice = status_waiter.result()
                template = MESSAGES.get(notice.status, notice.status + ' {}')
                print(f'[bot] {template.format(notice.detail or "")}')
                if notice.status == 'room-full':
                    exit_code = 2
            else:
                status_waiter.cancel()
            if not finished:
                break
    print('[bot] hung up')
    return exit_code


def main(argv=None):
    p = argparse.ArgumentParser(description='Headless two-party call participant')
    p.add_argument('--relay', default=f'ws://localhost:{config.relay_port()}',
                   help='signaling relay websocket URL')
    p.add_argument('--room', required=True, help='room to join')
    p.add_argument('--play', help='media file or device to send (default: test pattern + tone)')
    p.add_argument('--play-format', help='input format for --play, e.g. v4l2 or avfoundation')
    p.add_argument('--record', help='file to record the peer into')
    p.add_argument('--mute-audio', action='store_true', help='send silence instead of audio')
    p.add_argument('--mute-video', action='store_true', help='send blank frames instead of video')
    p.add_argument('--duration', type=float, help='hang up after this many seconds')
    p.add_argument('--log-level', default=config.log_level())
    args = p.parse_args(argv)

    logging.basicConfig(level=args.log_level, format=config.LOG_FORMAT)
    try:
        return asyncio.run(take_call(args))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
