"""Static configuration read from the environment.

ICE servers are never negotiated; both peers are started with the same
STUN/TURN list.
"""
import os
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer

DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 3001
DEFAULT_STUN_URLS = 'stun:stun.relay.metered.ca:80'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def relay_host() -> str:
    return os.environ.get('DUOCALL_HOST', DEFAULT_HOST)


def relay_port() -> int:
    return int(os.environ.get('PORT', DEFAULT_PORT))


def log_level() -> str:
    return os.environ.get('DUOCALL_LOG_LEVEL', 'INFO').upper()


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def ice_servers(environ=None) -> List[RTCIceServer]:
    """Build the ICE server list from DUOCALL_STUN_URLS / DUOCALL_TURN_*."""
    env = os.environ if environ is None else environ
    servers = []
    stun = _split(env.get('DUOCALL_STUN_URLS', DEFAULT_STUN_URLS))
    if stun:
        servers.append(RTCIceServer(urls=stun))
    turn = _split(env.get('DUOCALL_TURN_URLS'))
    if turn:
        servers.append(RTCIceServer(
            urls=turn,
            username=env.get('DUOCALL_TURN_USERNAME'),
            credential=env.get('DUOCALL_TURN_CREDENTIAL'),
        ))
    return servers


def rtc_configuration(environ=None) -> RTCConfiguration:
    return RTCConfiguration(iceServers=ice_servers(environ))
