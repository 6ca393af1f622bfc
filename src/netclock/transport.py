"""
Datagram transports for NTP exchanges.

A transport sends one client request to a server and returns the three
timestamps the association cannot record itself. The default UDPTransport uses
asyncio datagram endpoints and ntplib's packet codec.
"""

import asyncio
import logging
import socket
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import ntplib

logger = logging.getLogger(__name__)

NTP_PACKET_SIZE = 48
MODE_CLIENT = 3
MODE_SERVER = 4
MAX_STRATUM = 15

# Byte ranges of the originate and transmit timestamps in an NTP packet
_ORIGINATE = slice(24, 32)
_TRANSMIT = slice(40, 48)


class TransportError(Exception):
    """An exchange failed: no reply, unusable reply, or a socket error."""


class ServerReply(NamedTuple):
    """Timestamps returned by one exchange"""
    t2: float                    # Server receive time (seconds since 1970)
    t3: float                    # Server transmit time (seconds since 1970)
    t4: float                    # Local receive time (seconds since 1970)
    t1: Optional[float] = None   # Send time actually stamped on the request, if restamped


class Transport(ABC):
    """Sends NTP requests; single-shot and safe to call concurrently."""

    @abstractmethod
    async def send_request(self, server: str, t1: float) -> ServerReply:
        """
        Send a request stamped with ``t1`` to ``server`` and await the reply.

        A transport that does setup work first (name resolution, socket
        creation) restamps the request when it actually goes out and returns
        that time as ``ServerReply.t1``. Raises TransportError on any failure.
        Cancelling the call abandons the exchange.
        """

    def close(self) -> None:
        """Release cached resources. The default implementation holds none."""


def split_address(server: str, default_port: int = 123) -> Tuple[str, int]:
    """
    Split ``host``, ``host:port`` or ``[v6addr]:port`` into ``(host, port)``.

    A bare IPv6 address without brackets is returned with the default port.
    """
    if server.startswith('['):
        host, _, rest = server[1:].partition(']')
        if rest.startswith(':'):
            return host, int(rest[1:])
        return host, default_port

    if server.count(':') == 1:
        host, port_str = server.rsplit(':', 1)
        return host, int(port_str)

    return server, default_port


def build_request(t1: float, version: int = 3) -> bytes:
    """Create a client-mode request carrying ``t1`` as its transmit timestamp."""
    packet = ntplib.NTPPacket(version=version, mode=MODE_CLIENT,
                              tx_timestamp=ntplib.system_to_ntp_time(t1))
    return packet.to_data()


def parse_reply(request: bytes, data: bytes, t4: float, t1: Optional[float] = None) -> ServerReply:
    """
    Validate a server reply to ``request`` and extract its timestamps.

    Only the fields needed for offset/delay math and simple quality filtering
    are checked: mode, stratum and the originate timestamp echo.
    """
    if len(data) < NTP_PACKET_SIZE:
        raise TransportError(f"short NTP packet ({len(data)} bytes)")

    packet = ntplib.NTPPacket()
    try:
        packet.from_data(data)
    except ntplib.NTPException as e:
        raise TransportError(f"invalid NTP packet: {e}") from e

    if packet.mode != MODE_SERVER:
        raise TransportError(f"unexpected NTP mode {packet.mode}")
    if packet.stratum == 0:
        raise TransportError("kiss-of-death reply (stratum 0)")
    if packet.stratum > MAX_STRATUM:
        raise TransportError(f"server unsynchronised (stratum {packet.stratum})")
    if data[_ORIGINATE] != request[_TRANSMIT]:
        raise TransportError("originate timestamp does not match request")

    return ServerReply(
        t2=ntplib.ntp_to_system_time(packet.recv_timestamp),
        t3=ntplib.ntp_to_system_time(packet.tx_timestamp),
        t4=t4,
        t1=t1,
    )


class _ExchangeProtocol(asyncio.DatagramProtocol):
    """Stamps and sends one request on connect and resolves with the first datagram."""

    def __init__(self, version: int, time_source: Callable[[], float],
                 reply: "asyncio.Future[Tuple[bytes, float]]"):
        self.version = version
        self.time_source = time_source
        self.reply = reply
        self.request: Optional[bytes] = None
        self.t1: Optional[float] = None

    def connection_made(self, transport):
        self.t1 = self.time_source()
        self.request = build_request(self.t1, self.version)
        transport.sendto(self.request)

    def datagram_received(self, data, addr):
        t4 = self.time_source()
        if not self.reply.done():
            self.reply.set_result((data, t4))

    def error_received(self, exc):
        if not self.reply.done():
            self.reply.set_exception(TransportError(f"socket error: {exc}"))

    def connection_lost(self, exc):
        if not self.reply.done():
            self.reply.set_exception(TransportError(f"connection lost: {exc}"))


class UDPTransport(Transport):
    """
    NTP over UDP using asyncio datagram endpoints.

    The request is stamped only once the socket is connected, so name
    resolution and endpoint setup never count towards the measured delay.
    Server addresses are cached; the cache entry is dropped after a failure so
    pool names can rotate to a different host.
    """

    def __init__(self, port: int = 123, version: int = 3,
                 time_source: Callable[[], float] = time.time):
        self.port = port
        self.version = version
        self.time_source = time_source
        self._addresses: Dict[str, Tuple] = {}

    async def _resolve(self, server: str) -> Tuple[int, Tuple]:
        cached = self._addresses.get(server)
        if cached is not None:
            return cached

        host, port = split_address(server, self.port)
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportError(f"cannot resolve {server}: {e}") from e
        if not infos:
            raise TransportError(f"no address for {server}")

        family, _, _, _, sockaddr = infos[0]
        self._addresses[server] = (family, sockaddr)
        logger.debug(f"[TRANSPORT] Resolved {server} -> {sockaddr[0]}:{sockaddr[1]}")
        return family, sockaddr

    async def send_request(self, server: str, t1: float) -> ServerReply:
        family, sockaddr = await self._resolve(server)
        loop = asyncio.get_running_loop()
        reply: "asyncio.Future[Tuple[bytes, float]]" = loop.create_future()

        transport: Optional[asyncio.DatagramTransport] = None
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _ExchangeProtocol(self.version, self.time_source, reply),
                remote_addr=sockaddr,
                family=family,
            )
            data, t4 = await reply
            return parse_reply(protocol.request, data, t4, t1=protocol.t1)
        except OSError as e:
            self._addresses.pop(server, None)
            raise TransportError(f"socket error for {server}: {e}") from e
        except TransportError:
            self._addresses.pop(server, None)
            raise
        finally:
            if transport is not None:
                transport.close()

    def close(self) -> None:
        self._addresses.clear()
