"""WebSocket transport: link tags, outgoing connector and incoming acceptor."""

from __future__ import annotations

import asyncio
import functools
import ipaddress
import logging
import socket
import ssl
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from websockets.asyncio.client import connect as ws_connect
from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.frames import CloseCode

from linkagg.netutil import (
    Direction,
    IpAddress,
    IpVersion,
    NetworkInterface,
    SocketAddress,
    bind_socket_to_interface,
    interface_names_for_target,
    local_interfaces,
    resolve_hosts,
    use_proper_ipv4,
)

log = logging.getLogger(__name__)

NAME = "websocket"
_DEFAULT_PORTS = {"ws": 80, "wss": 443}
_IS_ANDROID = hasattr(sys, "getandroidapilevel")


def _parse_ip(value: Any) -> IpAddress:
    if isinstance(value, ipaddress.IPv6Address) and value.scope_id:
        return ipaddress.IPv6Address(int(value))
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(str(value).split("%", 1)[0])


def _socket_address(addr: tuple) -> SocketAddress:
    return _parse_ip(addr[0]), int(addr[1])


def _format_address(addr: SocketAddress) -> str:
    ip, port = addr
    return f"[{ip}]:{port}" if ip.version == 6 else f"{ip}:{port}"


def _family(ip: IpAddress) -> socket.AddressFamily:
    return socket.AF_INET6 if ip.version == 6 else socket.AF_INET


def _addr_key(addr: SocketAddress) -> tuple[int, int, int]:
    ip, port = addr
    return ip.version, int(ip), port


def _normalize_url(text: str) -> str:
    """Validate a WebSocket URL and return it in normal form."""
    try:
        parts = urlsplit(str(text).strip())
        host = parts.hostname
        parts.port  # raises for an invalid port
    except ValueError as err:
        raise ValueError(f"invalid URL {text!r}: {err}") from err
    if not host:
        raise ValueError("URL must have a host")
    if parts.scheme not in _DEFAULT_PORTS:
        raise ValueError("URL must have scheme ws or wss")
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", parts.query, parts.fragment))


def _endpoint(url: str) -> str:
    """The ``host:port`` string a URL connects to."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    port = parts.port if parts.port is not None else _DEFAULT_PORTS[parts.scheme]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


@functools.total_ordering
@dataclass(frozen=True)
class OutgoingWebSocketLinkTag:
    """Link tag for an outgoing WebSocket link."""

    interface: Optional[str]
    remote: SocketAddress
    url: str
    tls: bool

    def __post_init__(self) -> None:
        object.__setattr__(self, "remote", _socket_address(self.remote))

    def _key(self) -> tuple:
        return (
            self.interface is not None,
            self.interface or "",
            _addr_key(self.remote),
            self.url,
            self.tls,
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, OutgoingWebSocketLinkTag):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        return f"{self.interface or ''} -> {_format_address(self.remote)} ({self.url})"

    @property
    def direction(self) -> Direction:
        """Link direction."""
        return Direction.OUTGOING

    def transport_name(self) -> str:
        """Name of the transport that produced this tag."""
        return NAME

    def user_data(self) -> bytes:
        """Data sent to the remote side: the local interface name."""
        return (self.interface or "").encode()


@functools.total_ordering
@dataclass(frozen=True)
class IncomingWebSocketLinkTag:
    """Link tag for an incoming WebSocket link."""

    local: SocketAddress
    remote: SocketAddress
    protocol: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "local", _socket_address(self.local))
        object.__setattr__(self, "remote", _socket_address(self.remote))

    def _key(self) -> tuple:
        return (
            _addr_key(self.local),
            _addr_key(self.remote),
            self.protocol is not None,
            self.protocol or "",
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, IncomingWebSocketLinkTag):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        suffix = f" ({self.protocol})" if self.protocol is not None else ""
        return f"{_format_address(self.local)} <- {_format_address(self.remote)}{suffix}"

    @property
    def direction(self) -> Direction:
        """Link direction."""
        return Direction.INCOMING

    def transport_name(self) -> str:
        """Name of the transport that produced this tag."""
        return NAME

    def user_data(self) -> bytes:
        """Data sent to the remote side: the octets of the local IP address."""
        return self.local[0].packed


class _MessageReader:
    """Byte-stream reader over the binary messages of a WebSocket connection."""

    def __init__(self, connection: Any) -> None:
        self._conn = connection
        self._buffer = bytearray()
        self._eof = False

    async def _fill(self) -> bool:
        """Receive the next non-empty binary message; ``False`` at end of stream."""
        while not self._eof:
            try:
                msg = await self._conn.recv()
            except ConnectionClosedOK:
                self._eof = True
                return False
            except ConnectionClosed as err:
                raise ConnectionResetError(str(err)) from err
            if isinstance(msg, (bytes, bytearray, memoryview)) and len(msg):
                self._buffer.extend(msg)
                return True
        return False

    def at_eof(self) -> bool:
        """Whether the stream has ended and all data was consumed."""
        return self._eof and not self._buffer

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes, or everything until the end if ``n`` is negative."""
        if n == 0:
            return b""
        if n < 0:
            while await self._fill():
                pass
            data = bytes(self._buffer)
            self._buffer.clear()
            return data
        if not self._buffer:
            await self._fill()
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def readexactly(self, n: int) -> bytes:
        """Read exactly ``n`` bytes."""
        while len(self._buffer) < n:
            if not await self._fill():
                partial = bytes(self._buffer)
                self._buffer.clear()
                raise asyncio.IncompleteReadError(partial, n)
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data


class _MessageWriter:
    """Byte-stream writer sending buffered data as binary WebSocket messages."""

    def __init__(self, connection: Any) -> None:
        self._conn = connection
        self._pending = bytearray()
        self._closing: Optional[asyncio.Future] = None

    def is_closing(self) -> bool:
        """Whether :meth:`close` was called."""
        return self._closing is not None

    def write(self, data: bytes) -> None:
        """Queue data; it is sent by :meth:`drain`."""
        if self._closing is not None:
            raise BrokenPipeError("writer is closed")
        self._pending.extend(data)

    async def drain(self) -> None:
        """Send queued data as one binary message."""
        if not self._pending:
            return
        data = bytes(self._pending)
        self._pending.clear()
        try:
            await self._conn.send(data)
        except ConnectionClosed as err:
            raise ConnectionResetError(str(err)) from err

    async def _close(self) -> None:
        try:
            await self.drain()
        except ConnectionResetError:
            pass
        await self._conn.close()

    def close(self) -> None:
        """Flush queued data and close the connection."""
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._close())

    async def wait_closed(self) -> None:
        """Wait until the connection is closed."""
        if self._closing is not None:
            await self._closing
        await self._conn.wait_closed()


def _accept_all(_iface: NetworkInterface) -> bool:
    return True


@dataclass
class WebSocketConnector:
    """WebSocket transport for outgoing connections.

    ``ssl_context`` controls TLS for ``wss`` URLs; ``connect_options`` are
    passed on to the WebSocket client (for example ``max_size``).
    """

    urls: list[str]
    ip_version: IpVersion = IpVersion.BOTH
    resolve_interval: float = 10.0
    ssl_context: Optional[ssl.SSLContext] = field(default=None, repr=False)
    connect_options: dict[str, Any] = field(default_factory=dict)
    multi_interface: bool = not _IS_ANDROID
    interface_filter: Callable[[NetworkInterface], bool] = field(default=_accept_all, repr=False)

    name = NAME

    def __str__(self) -> str:
        if len(self.urls) > 1:
            return f"[{', '.join(self.urls)}]"
        return self.urls[0]

    @classmethod
    async def create(cls, urls: Iterable[str]) -> WebSocketConnector:
        """Build a connector and check that at least one URL resolves."""
        this = cls.unresolved(urls)
        resolved = await this.resolve()
        if all(not addrs for addrs in resolved.values()):
            raise OSError("cannot resolve IP address of any URL")
        log.info(
            "URLs initially resolved: %s",
            {url: [_format_address(a) for a in addrs] for url, addrs in resolved.items()},
        )
        return this

    @classmethod
    def unresolved(cls, urls: Iterable[str]) -> WebSocketConnector:
        """Build a connector without resolving; URLs must be ``ws`` or ``wss`` with a host."""
        entries = [_normalize_url(url) for url in urls]
        if not entries:
            raise ValueError("at least one URL is required")
        return cls(urls=entries)

    async def resolve(self) -> dict[str, list[SocketAddress]]:
        """Resolve every URL to its socket addresses."""
        return {url: await resolve_hosts([_endpoint(url)], self.ip_version) for url in self.urls}

    async def current_tags(self) -> frozenset[OutgoingWebSocketLinkTag]:
        """The link tags available right now."""
        interfaces = None
        if self.multi_interface:
            interfaces = [iface for iface in local_interfaces() if self.interface_filter(iface)]

        tags: set[OutgoingWebSocketLinkTag] = set()
        for url, addrs in (await self.resolve()).items():
            tls = urlsplit(url).scheme == "wss"
            for addr in addrs:
                if interfaces is None:
                    tags.add(OutgoingWebSocketLinkTag(None, addr, url, tls))
                else:
                    tags.update(
                        OutgoingWebSocketLinkTag(name, addr, url, tls)
                        for name in interface_names_for_target(interfaces, addr)
                    )
        return frozenset(tags)

    async def link_tags(self, publish: Callable[[frozenset[OutgoingWebSocketLinkTag]], Any]) -> None:
        """Periodically recompute the tags, calling ``publish`` whenever they change."""
        last: frozenset[OutgoingWebSocketLinkTag] = frozenset()
        while True:
            tags = await self.current_tags()
            if tags != last:
                last = tags
                publish(tags)
            await asyncio.sleep(self.resolve_interval)

    async def connect(self, tag: OutgoingWebSocketLinkTag) -> tuple[_MessageReader, _MessageWriter]:
        """Open the link described by ``tag`` and return a reader and writer for it."""
        if not isinstance(tag, OutgoingWebSocketLinkTag):
            raise TypeError(f"expected OutgoingWebSocketLinkTag, got {type(tag).__name__}")

        ip, port = tag.remote
        loop = asyncio.get_running_loop()
        sock = socket.socket(_family(ip), socket.SOCK_STREAM)
        try:
            if tag.interface is not None:
                bind_socket_to_interface(sock, tag.interface, ip)
            sock.setblocking(False)
            target = (str(ip), port, 0, 0) if ip.version == 6 else (str(ip), port)
            await loop.sock_connect(sock, target)
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass

            options = dict(self.connect_options)
            if tag.tls and self.ssl_context is not None:
                options["ssl"] = self.ssl_context
            try:
                connection = await ws_connect(tag.url, sock=sock, **options)
            except (WebSocketException, OSError, asyncio.TimeoutError) as err:
                raise ConnectionRefusedError(f"WebSocket connection to {tag.url} failed: {err}") from err
        except BaseException:
            sock.close()
            raise

        return _MessageReader(connection), _MessageWriter(connection)

    def link_filter(self, new: Any, existing: Iterable[Any]) -> bool:
        """Whether the new link should be kept given the existing links.

        A link is redundant when an existing one uses the same local interface
        and reports the same remote user data. Links are objects with ``tag``,
        ``direction`` and ``remote_user_data``.
        """
        new_tag = new.tag
        if not isinstance(new_tag, OutgoingWebSocketLinkTag):
            return True

        direction = Direction(new.direction)
        intro = "Judging {} WebSocket link {} {} ({}) on {}".format(
            direction,
            "from" if direction is Direction.INCOMING else "to",
            _format_address(new_tag.remote),
            bytes(new.remote_user_data).decode(errors="replace"),
            new_tag.interface or "any interface",
        )

        for link in existing:
            tag = link.tag
            if not isinstance(tag, OutgoingWebSocketLinkTag):
                continue
            if tag.interface == new_tag.interface and bytes(link.remote_user_data) == bytes(
                new.remote_user_data
            ):
                log.debug("%s => link %s is redundant, rejecting.", intro, _format_address(tag.remote))
                return False

        log.debug("%s => accepted.", intro)
        return True


class WebSocketAcceptor:
    """WebSocket transport for incoming connections.

    Connections arrive through :meth:`handler` or :meth:`serve` and are
    handed out by :meth:`listen`.
    """

    name = NAME

    def __init__(self, queue_size: int = 16) -> None:
        self._incoming: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._closed_event = asyncio.Event()
        self._listening = False

    def __enter__(self) -> WebSocketAcceptor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __str__(self) -> str:
        return "WebSocketAcceptor"

    def handler(self, local_addr: Optional[tuple] = None) -> Callable[[Any], Any]:
        """A connection handler for a WebSocket server.

        ``local_addr`` is recorded as the local address of every link; when
        ``None`` the connection's own local address is used.
        """

        async def handle(connection: Any) -> None:
            if self._closed:
                await connection.close(CloseCode.TRY_AGAIN_LATER, "WebSocketAcceptor was closed")
                return
            local = use_proper_ipv4(local_addr if local_addr is not None else connection.local_address)
            remote = use_proper_ipv4(connection.remote_address)
            await self._incoming.put((local, remote, connection))
            await connection.wait_closed()

        return handle

    async def serve(self, host: str, port: int, path: str = "/", protocols: Iterable[str] = ()) -> Any:
        """Start a WebSocket server accepting links at ``path``; returns the server."""
        subprotocols = list(protocols) or None

        def process_request(connection: Any, request: Any) -> Any:
            if urlsplit(request.path).path != path:
                return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
            if self._closed:
                return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "WebSocketAcceptor was closed\n")
            return None

        return await ws_serve(
            self.handler(None),
            host,
            port,
            process_request=process_request,
            subprotocols=subprotocols,
        )

    async def _next_incoming(self) -> tuple:
        if self._closed:
            raise ConnectionResetError("acceptor was closed")
        if not self._incoming.empty():
            return self._incoming.get_nowait()

        getter = asyncio.ensure_future(self._incoming.get())
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (getter, closer):
                if not task.done():
                    task.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise ConnectionResetError("acceptor was closed")

    async def listen(self, queue: asyncio.Queue) -> None:
        """Hand out connections forever, putting ``(tag, reader, writer)`` on ``queue``.

        Raises :class:`ConnectionResetError` once the acceptor is closed.
        """
        if self._listening:
            raise RuntimeError("acceptor is already listening")
        self._listening = True
        try:
            while True:
                local, remote, connection = await self._next_incoming()
                tag = IncomingWebSocketLinkTag(local, remote, connection.subprotocol)
                log.debug("accepted WebSocket connection from %s", _format_address(tag.remote))
                await queue.put((tag, _MessageReader(connection), _MessageWriter(connection)))
        finally:
            self._listening = False

    def close(self) -> None:
        """Stop accepting connections."""
        self._closed = True
        self._closed_event.set()