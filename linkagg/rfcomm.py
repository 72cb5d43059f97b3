"""Bluetooth RFCOMM transport."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass

from linkagg.netutil import Direction

log = logging.getLogger(__name__)

NAME = "rfcomm"
ANY_ADDRESS: tuple[str, int] = ("00:00:00:00:00:00", 0)

RfcommAddress = tuple[str, int]


def _format_address(addr: RfcommAddress) -> str:
    return f"[{addr[0]}]:{addr[1]}"


def _rfcomm_socket() -> socket.socket:
    if not (hasattr(socket, "AF_BLUETOOTH") and hasattr(socket, "BTPROTO_RFCOMM")):
        raise OSError(errno.EAFNOSUPPORT, "Bluetooth RFCOMM sockets are not supported on this platform")
    return socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)


@dataclass(frozen=True, order=True)
class RfcommLinkTag:
    """Link tag for a Bluetooth RFCOMM link."""

    local: RfcommAddress
    remote: RfcommAddress
    direction: Direction

    def __str__(self) -> str:
        return f"{_format_address(self.local)} {self.direction.arrow} {_format_address(self.remote)}"

    def transport_name(self) -> str:
        """Name of the transport that produced this tag."""
        return NAME

    def user_data(self) -> bytes:
        """Data sent to the remote side with this link (none for RFCOMM)."""
        return b""


class RfcommConnector:
    """RFCOMM transport for outgoing connections; establishes one link to ``remote``."""

    name = NAME

    def __init__(self, remote: RfcommAddress) -> None:
        self.local: RfcommAddress = ANY_ADDRESS
        self.remote: RfcommAddress = tuple(remote)

    def __repr__(self) -> str:
        return f"RfcommConnector(local={self.local!r}, remote={self.remote!r})"

    def bind(self, local: RfcommAddress) -> None:
        """Bind outgoing sockets to the given local Bluetooth address."""
        self.local = tuple(local)

    def link_tags(self) -> frozenset[RfcommLinkTag]:
        """The single tag this connector offers."""
        return frozenset({RfcommLinkTag(self.local, self.remote, Direction.OUTGOING)})

    async def connect(self, tag: RfcommLinkTag) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the link described by ``tag`` and return its stream pair."""
        if not isinstance(tag, RfcommLinkTag):
            raise TypeError(f"expected RfcommLinkTag, got {type(tag).__name__}")

        loop = asyncio.get_running_loop()
        sock = _rfcomm_socket()
        try:
            sock.bind(tag.local)
            sock.setblocking(False)
            await loop.sock_connect(sock, tag.remote)
            return await asyncio.open_connection(sock=sock)
        except BaseException:
            sock.close()
            raise


class RfcommAcceptor:
    """RFCOMM transport accepting incoming connections on ``addr``."""

    name = NAME

    def __init__(self, addr: RfcommAddress) -> None:
        sock = _rfcomm_socket()
        try:
            sock.bind(tuple(addr))
            sock.listen()
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        self._sock = sock

    def __enter__(self) -> RfcommAcceptor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def address(self) -> RfcommAddress:
        """The local address the acceptor listens on."""
        return tuple(self._sock.getsockname())

    async def listen(self, queue: asyncio.Queue) -> None:
        """Accept connections forever, putting ``(tag, reader, writer)`` on ``queue``."""
        loop = asyncio.get_running_loop()
        while True:
            conn, remote = await loop.sock_accept(self._sock)
            try:
                local = conn.getsockname()
                reader, writer = await asyncio.open_connection(sock=conn)
            except BaseException:
                conn.close()
                raise
            tag = RfcommLinkTag(tuple(local), tuple(remote), Direction.INCOMING)
            log.debug("accepted RFCOMM connection from %s on %s",
                      _format_address(tag.remote), _format_address(tag.local))
            await queue.put((tag, reader, writer))

    def close(self) -> None:
        """Stop listening."""
        self._sock.close()