"""TCP transport: link tags, outgoing connector and incoming acceptor."""

from __future__ import annotations

import asyncio
import functools
import ipaddress
import logging
import socket
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from linkagg.netutil import (
    Direction,
    IpAddress,
    IpVersion,
    NetworkInterface,
    SocketAddress,
    bind_socket_to_interface,
    interface_names_for_target,
    local_interface_for_ip,
    local_interfaces,
    resolve_hosts,
    use_proper_ipv4,
)

log = logging.getLogger(__name__)

NAME = "tcp"
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)
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


@dataclass
class TcpSocketOptions:
    """Socket tuning applied to each TCP link; ``None`` keeps the OS default."""

    nodelay: Optional[bool] = True
    send_buffer_size: Optional[int] = None
    recv_buffer_size: Optional[int] = None
    tos_v4: Optional[int] = None

    @classmethod
    def turbo(cls) -> TcpSocketOptions:
        """Low-latency preset: no Nagle, 512 KiB buffers and low-delay TOS on IPv4."""
        return cls(nodelay=True, send_buffer_size=512 * 1024, recv_buffer_size=512 * 1024, tos_v4=0x10)

    def apply_to_socket(self, sock: socket.socket, remote: tuple) -> None:
        """Apply the configured options to a connected TCP socket."""
        if self.nodelay is not None:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self.nodelay))
        if self.send_buffer_size is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, self.send_buffer_size)
        if self.recv_buffer_size is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, self.recv_buffer_size)
        if self.tos_v4 is not None and hasattr(socket, "IP_TOS"):
            if _parse_ip(remote[0]).version == 4:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, self.tos_v4)


@functools.total_ordering
@dataclass(frozen=True)
class TcpLinkTag:
    """Link tag for a TCP link."""

    interface: Optional[str]
    remote: SocketAddress
    direction: Direction

    def __post_init__(self) -> None:
        object.__setattr__(self, "remote", _socket_address(self.remote))
        object.__setattr__(self, "direction", Direction(self.direction))

    def _key(self) -> tuple:
        ip, port = self.remote
        return (
            self.interface is not None,
            self.interface or "",
            ip.version,
            int(ip),
            port,
            self.direction.value,
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TcpLinkTag):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        return f"{self.interface or '':16} {self.direction.arrow} {_format_address(self.remote)}"

    def transport_name(self) -> str:
        """Name of the transport that produced this tag."""
        return NAME

    def user_data(self) -> bytes:
        """Data sent to the remote side: the local interface name."""
        return (self.interface or "").encode()


class TcpLinkFilter(Enum):
    """Which links are kept between the local and remote endpoint."""

    NONE = "none"
    INTERFACE_INTERFACE = "interface-interface"
    INTERFACE_IP = "interface-ip"


def _accept_all(_iface: NetworkInterface) -> bool:
    return True


@dataclass
class TcpConnector:
    """TCP transport for outgoing connections."""

    hosts: list[str]
    ip_version: IpVersion = IpVersion.BOTH
    resolve_interval: float = 10.0
    link_filter_method: TcpLinkFilter = TcpLinkFilter.INTERFACE_INTERFACE
    multi_interface: bool = not _IS_ANDROID
    interface_filter: Callable[[NetworkInterface], bool] = field(default=_accept_all, repr=False)
    socket_options: TcpSocketOptions = field(default_factory=TcpSocketOptions)

    name = NAME

    def __str__(self) -> str:
        if len(self.hosts) > 1:
            return f"[{', '.join(self.hosts)}]"
        return self.hosts[0]

    @classmethod
    async def create(cls, hosts: Iterable[str], default_port: int) -> TcpConnector:
        """Build a connector and check that the hosts resolve to at least one address."""
        this = cls.unresolved(hosts, default_port)
        addrs = await this.resolve()
        if not addrs:
            raise OSError("cannot resolve IP address of host")
        log.info("hosts %s initially resolved to %s", this, [_format_address(a) for a in addrs])
        return this

    @classmethod
    def unresolved(cls, hosts: Iterable[str], default_port: int) -> TcpConnector:
        """Build a connector without resolving; entries without a port get ``default_port``."""
        entries = [host if ":" in host else f"{host}:{default_port}" for host in hosts]
        if not entries:
            raise ValueError("at least one host is required")
        return cls(hosts=entries)

    async def resolve(self) -> list[SocketAddress]:
        """Resolve the hosts to socket addresses."""
        return await resolve_hosts(self.hosts, self.ip_version)

    async def current_tags(self) -> frozenset[TcpLinkTag]:
        """The link tags available right now."""
        interfaces = None
        if self.multi_interface:
            interfaces = [iface for iface in local_interfaces() if self.interface_filter(iface)]

        tags: set[TcpLinkTag] = set()
        for addr in await self.resolve():
            if interfaces is None:
                tags.add(TcpLinkTag(None, addr, Direction.OUTGOING))
            else:
                tags.update(
                    TcpLinkTag(name, addr, Direction.OUTGOING)
                    for name in interface_names_for_target(interfaces, addr)
                )
        return frozenset(tags)

    async def link_tags(self, publish: Callable[[frozenset[TcpLinkTag]], Any]) -> None:
        """Periodically recompute the tags, calling ``publish`` whenever they change."""
        last: frozenset[TcpLinkTag] = frozenset()
        while True:
            tags = await self.current_tags()
            if tags != last:
                last = tags
                publish(tags)
            await asyncio.sleep(self.resolve_interval)

    async def connect(self, tag: TcpLinkTag) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the link described by ``tag`` and return its stream pair."""
        if not isinstance(tag, TcpLinkTag):
            raise TypeError(f"expected TcpLinkTag, got {type(tag).__name__}")

        ip, port = tag.remote
        loop = asyncio.get_running_loop()
        sock = socket.socket(_family(ip), socket.SOCK_STREAM)
        try:
            if tag.interface is not None:
                bind_socket_to_interface(sock, tag.interface, ip)
            sock.setblocking(False)
            await loop.sock_connect(sock, (str(ip), port))
            try:
                self.socket_options.apply_to_socket(sock, tag.remote)
            except OSError as err:
                log.debug("failed to apply TCP socket options for %s: %s", _format_address(tag.remote), err)
            return await asyncio.open_connection(sock=sock)
        except BaseException:
            sock.close()
            raise

    def link_filter(self, new: Any, existing: Iterable[Any]) -> bool:
        """Whether the new link should be kept given the existing links.

        Links are objects with ``tag``, ``direction`` and ``remote_user_data``.
        """
        new_tag = new.tag
        if not isinstance(new_tag, TcpLinkTag):
            return True

        direction = Direction(new.direction)
        intro = "Judging {} TCP link {} {} ({}) on {}".format(
            direction,
            "from" if direction is Direction.INCOMING else "to",
            _format_address(new_tag.remote),
            bytes(new.remote_user_data).decode(errors="replace"),
            new_tag.interface or "any interface",
        )

        for link in existing:
            tag = link.tag
            if not isinstance(tag, TcpLinkTag):
                continue
            if self.link_filter_method is TcpLinkFilter.INTERFACE_INTERFACE:
                redundant = (
                    tag.interface == new_tag.interface
                    and bytes(link.remote_user_data) == bytes(new.remote_user_data)
                )
            elif self.link_filter_method is TcpLinkFilter.INTERFACE_IP:
                redundant = tag.interface == new_tag.interface and tag.remote[0] == new_tag.remote[0]
            else:
                redundant = False
            if redundant:
                log.debug("%s => link %s is redundant, rejecting.", intro, _format_address(tag.remote))
                return False

        log.debug("%s => accepted.", intro)
        return True


def _listening_socket(ip: IpAddress, port: int, backlog: int, device: Optional[str] = None) -> socket.socket:
    sock = socket.socket(_family(ip), socket.SOCK_STREAM)
    try:
        if ip.version == 6:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except (OSError, AttributeError):
                pass
            sock.bind((str(ip), port, 0, 0))
        else:
            sock.bind((str(ip), port))
        if device is not None and sys.platform.startswith(("linux", "android")):
            sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, device.encode())
        sock.listen(backlog)
        sock.setblocking(False)
    except BaseException:
        sock.close()
        raise
    return sock


class TcpAcceptor:
    """TCP transport accepting incoming connections on one or more listening sockets."""

    name = NAME

    def __init__(self, sockets: list[socket.socket]) -> None:
        self._sockets = sockets
        self.socket_options = TcpSocketOptions()

    def __enter__(self) -> TcpAcceptor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __str__(self) -> str:
        addrs = []
        for sock in self._sockets:
            try:
                addrs.append(_format_address(_socket_address(sock.getsockname())))
            except OSError:
                continue
        if len(addrs) > 1:
            return f"[{', '.join(addrs)}]"
        return addrs[0] if addrs else ""

    @classmethod
    def create(cls, addrs: Iterable[tuple]) -> TcpAcceptor:
        """Listen on each of the given local ``(host, port)`` addresses."""
        sockets: list[socket.socket] = []
        try:
            for addr in addrs:
                ip, port = _socket_address(addr)
                sockets.append(_listening_socket(ip, port, 16))
            return cls.from_sockets(sockets)
        except BaseException:
            for sock in sockets:
                sock.close()
            raise

    @classmethod
    def from_sockets(cls, sockets: Iterable[socket.socket]) -> TcpAcceptor:
        """Use already listening sockets."""
        socks = list(sockets)
        if not socks:
            raise ValueError("at least one listener is required")
        for sock in socks:
            sock.setblocking(False)
        return cls(socks)

    @classmethod
    def all_interfaces(cls, port: int) -> TcpAcceptor:
        """Listen separately on an address of every local interface."""
        sockets = []
        for iface in local_interfaces():
            for version in (IpVersion.IPV6, IpVersion.IPV4):
                try:
                    sockets.append(cls._listen_on(iface, port, version))
                except OSError as err:
                    log.warning("cannot listen on interface %s (%s): %s", iface.name, version.value, err)
        return cls.from_sockets(sockets)

    @staticmethod
    def _listen_on(iface: NetworkInterface, port: int, version: IpVersion) -> socket.socket:
        wanted = 6 if version is IpVersion.IPV6 else 4
        ip = next((addr for addr in iface.addrs if addr.version == wanted), None)
        if ip is None:
            raise FileNotFoundError(f"no IPv{wanted} address on interface {iface.name}")
        sock = _listening_socket(ip, port, 8, device=iface.name)
        log.debug("listening on %s, interface %s", _format_address((ip, port)), iface.name)
        return sock

    async def listen(self, queue: asyncio.Queue) -> None:
        """Accept connections forever, putting ``(tag, reader, writer)`` on ``queue``."""
        tasks = [asyncio.create_task(self._accept_loop(sock, queue)) for sock in self._sockets]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _accept_loop(self, listener: socket.socket, queue: asyncio.Queue) -> None:
        loop = asyncio.get_running_loop()
        while True:
            conn, remote_raw = await loop.sock_accept(listener)
            try:
                remote = use_proper_ipv4(remote_raw)
                local = use_proper_ipv4(conn.getsockname())
                interface = local_interface_for_ip(local[0])
                if interface is None:
                    log.warning(
                        "Interface for incoming connection from %s to %s not found, rejecting.",
                        _format_address(remote), _format_address(local),
                    )
                    conn.close()
                    continue
                log.debug("accepted TCP connection from %s on %s", _format_address(remote), interface)
                tag = TcpLinkTag(interface, remote, Direction.INCOMING)
                try:
                    self.socket_options.apply_to_socket(conn, remote)
                except OSError as err:
                    log.debug("failed to apply TCP socket options for %s: %s", _format_address(remote), err)
                reader, writer = await asyncio.open_connection(sock=conn)
            except BaseException:
                conn.close()
                raise
            await queue.put((tag, reader, writer))

    def close(self) -> None:
        """Stop listening."""
        for sock in self._sockets:
            sock.close()