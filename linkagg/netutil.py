"""Network helpers: local interfaces, address normalisation and host resolution."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

import psutil

log = logging.getLogger(__name__)

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
SocketAddress = tuple[IpAddress, int]

_INET_FAMILIES = (socket.AF_INET, socket.AF_INET6)
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


class Direction(str, Enum):
    """Direction of a link."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"

    def __str__(self) -> str:
        return self.value

    @property
    def arrow(self) -> str:
        """Arrow used when displaying a link in this direction."""
        return "<-" if self is Direction.INCOMING else "->"


class IpVersion(Enum):
    """IP protocol versions to use."""

    IPV4 = "IPv4"
    IPV6 = "IPv6"
    BOTH = "both"

    @classmethod
    def from_only(cls, only_ipv4: bool, only_ipv6: bool) -> IpVersion:
        """Build from a pair of mutually exclusive "only" flags."""
        if only_ipv4 and only_ipv6:
            raise ValueError("IPv4 and IPv6 options are mutually exclusive")
        if only_ipv4:
            return cls.IPV4
        if only_ipv6:
            return cls.IPV6
        return cls.BOTH

    def is_only_ipv4(self) -> bool:
        """Whether only IPv4 should be used."""
        return self is IpVersion.IPV4

    def is_only_ipv6(self) -> bool:
        """Whether only IPv6 should be used."""
        return self is IpVersion.IPV6


@dataclass(frozen=True)
class NetworkInterface:
    """A local network interface and its IP addresses."""

    name: str
    addrs: tuple[IpAddress, ...] = ()


def _ip(value: Any) -> IpAddress:
    """Convert a string or address object to an IP address without scope id."""
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        if isinstance(value, ipaddress.IPv6Address) and value.scope_id:
            return ipaddress.IPv6Address(int(value))
        return value
    return ipaddress.ip_address(str(value).split("%", 1)[0])


def _interface_addrs(entries) -> Iterable[IpAddress]:
    for entry in entries:
        if entry.family not in _INET_FAMILIES:
            continue
        try:
            yield _ip(entry.address)
        except ValueError:
            log.debug("ignoring unparsable interface address %r", entry.address)


def local_interfaces() -> list[NetworkInterface]:
    """Return the local network interfaces, leaving out ``ifb`` devices."""
    try:
        stats = psutil.net_if_addrs()
    except (OSError, RuntimeError) as err:
        raise OSError(str(err)) from err
    return [
        NetworkInterface(name, tuple(_interface_addrs(entries)))
        for name, entries in stats.items()
        if not name.startswith("ifb")
    ]


def use_proper_ipv4(addr: tuple) -> SocketAddress:
    """Normalise a socket address, turning IPv4-mapped IPv6 addresses into IPv4."""
    ip = _ip(addr[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip, int(addr[1])


def local_interface_for_ip(ip: Any) -> str | None:
    """Return the name of the local interface holding ``ip``, or ``None``."""
    wanted = _ip(ip)
    return next((iface.name for iface in local_interfaces() if wanted in iface.addrs), None)


def _split_host_port(host: str) -> tuple[str, int]:
    if host.startswith("["):
        end = host.find("]")
        if end < 0 or host[end + 1 : end + 2] != ":":
            raise ValueError(f"invalid host: {host!r}")
        name, port_text = host[1:end], host[end + 2 :]
    else:
        name, sep, port_text = host.rpartition(":")
        if not sep or not name or ":" in name:
            raise ValueError(f"invalid host: {host!r}")
    port = int(port_text)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"invalid port: {port}")
    return name, port


def _sort_key(addr: SocketAddress) -> tuple[int, int, int]:
    ip, port = addr
    return ip.version, int(ip), port


def _version_allowed(ip: IpAddress, ip_version: IpVersion) -> bool:
    if ip.version == 4:
        return not ip_version.is_only_ipv6()
    return not ip_version.is_only_ipv4()


async def resolve_hosts(hosts: Iterable[str], ip_version: IpVersion) -> list[SocketAddress]:
    """Resolve ``host:port`` strings to a sorted list of unique socket addresses.

    Entries that cannot be parsed or resolved are skipped.
    """
    loop = asyncio.get_running_loop()
    found: set[SocketAddress] = set()

    for host in hosts:
        try:
            name, port = _split_host_port(host)
            infos = await loop.getaddrinfo(name, port, type=socket.SOCK_STREAM)
        except (ValueError, OSError):
            continue
        for family, _type, _proto, _canon, sockaddr in infos:
            if family not in _INET_FAMILIES:
                continue
            ip = _ip(sockaddr[0])
            if _version_allowed(ip, ip_version):
                found.add((ip, int(sockaddr[1])))

    return sorted(found, key=_sort_key)


def _usable_for(addr: IpAddress, target: IpAddress) -> bool:
    return (
        not addr.is_unspecified
        and addr.is_loopback == target.is_loopback
        and addr.version == target.version
    )


def interface_names_for_target(interfaces: Iterable[NetworkInterface], target: tuple) -> set[str]:
    """Names of the interfaces that can reach ``target``.

    An interface qualifies when it has a specified address of the target's IP
    version that is loopback exactly when the target is.
    """
    target_ip = _ip(target[0])
    return {
        iface.name
        for iface in interfaces
        if any(_usable_for(addr, target_ip) for addr in iface.addrs)
    }


def bind_socket_to_interface(sock: socket.socket, interface: str, remote: Any) -> None:
    """Bind ``sock`` to the named network interface.

    On Linux the socket is bound to the device; elsewhere it is bound to an
    address of the interface matching the remote address.
    """
    if sys.platform.startswith("linux"):
        sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, interface.encode())
        return

    remote_ip = _ip(remote)
    for iface in local_interfaces():
        if iface.name != interface:
            continue
        for addr in iface.addrs:
            if addr.version != remote_ip.version or addr.is_loopback != remote_ip.is_loopback:
                continue
            log.debug("binding to %s on interface %s", addr, iface.name)
            sock.bind((str(addr), 0))
            return

    raise FileNotFoundError(f"no IP address for interface {interface}")