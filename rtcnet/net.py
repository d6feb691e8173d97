"""A local network stack: virtual when configured, the host's otherwise."""

from __future__ import annotations

import ipaddress
import itertools
import random
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Union

import psutil

from .chunk import UDP_STR, Chunk, IPAddress, SocketAddr
from .conn import ConnObserver, UdpConn
from .conn_map import UdpConnMap
from .errors import (
    AddressInUseError,
    AddressSpaceExhaustedError,
    BindError,
    NoRouterLinkedError,
    NotFoundError,
    VNetError,
)
from .interface import Interface, IPInterface, to_ip_interface

LO0_STR = "lo0"
ETH0_STR = "eth0"

_RECEIVE_BUF_SIZE = 20 * 1024 * 1024
_mac_counter = itertools.count(0xBEEFED910200)
_mac_lock = threading.Lock()

_AddrLike = Union[SocketAddr, str]
_IpLike = Union[IPAddress, str]


def new_mac_address() -> bytes:
    """Return a fresh 6-byte hardware address; each call yields the next one."""
    with _mac_lock:
        value = next(_mac_counter)
    return value.to_bytes(8, "big")[2:]


def _to_addr(address: _AddrLike) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


def _to_ip(ip: _IpLike) -> IPAddress:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    return ipaddress.ip_address(ip)


def _any_ip(use_ipv4: bool) -> IPAddress:
    return ipaddress.IPv4Address("0.0.0.0") if use_ipv4 else ipaddress.IPv6Address("::")


def _copy_interface(ifc: Interface) -> Interface:
    return Interface(ifc.name, list(ifc.addrs))


def _loopback_interface() -> Interface:
    lo0 = Interface(LO0_STR)
    lo0.add_addr(to_ip_interface("127.0.0.1", "255.0.0.0"))
    return lo0


class VNetInternal(ConnObserver):
    """State shared between a virtual network and its connections."""

    def __init__(self, interfaces: Optional[List[Interface]] = None) -> None:
        self.interfaces: List[Interface] = interfaces if interfaces is not None else []
        self.router = None
        self.udp_conns = UdpConnMap()

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        return next((ifc for ifc in self.interfaces if ifc.name == ifc_name), None)

    def write(self, chunk: Chunk) -> None:
        """Deliver loopback UDP locally; hand everything else to the router."""
        if chunk.network() == UDP_STR and chunk.destination_ip().is_loopback:
            conn = self.udp_conns.find(chunk.destination_addr())
            if conn is not None:
                conn.deliver(chunk)
            return
        if self.router is None:
            raise NoRouterLinkedError("no router linked")
        self.router.push(chunk)

    def on_closed(self, addr: SocketAddr) -> None:
        try:
            self.udp_conns.delete(addr)
        except VNetError:
            pass

    def determine_source_ip(self, loc_ip: IPAddress, dst_ip: IPAddress) -> Optional[IPAddress]:
        """Choose a source IP when ``loc_ip`` is unspecified; otherwise return it."""
        loc_ip = _to_ip(loc_ip)
        dst_ip = _to_ip(dst_ip)
        if not loc_ip.is_unspecified:
            return loc_ip
        if dst_ip.is_loopback:
            return ipaddress.IPv4Address("127.0.0.1")
        ifc = self.get_interface(ETH0_STR)
        if ifc is not None:
            for ipnet in ifc.addrs:
                if ipnet.ip.version == loc_ip.version:
                    return ipnet.ip
        return None


class VNet:
    """A virtual network stack with ``lo0`` and ``eth0`` interfaces."""

    def __init__(
        self,
        interfaces: Optional[List[Interface]] = None,
        static_ips: Optional[List[IPAddress]] = None,
    ) -> None:
        self.interfaces: List[Interface] = interfaces if interfaces is not None else []
        self.static_ips: List[IPAddress] = list(static_ips or [])
        self.vi = VNetInternal(self.interfaces)
        self._lock = threading.RLock()

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        with self._lock:
            for ifc in self.interfaces:
                if ifc.name == ifc_name:
                    return _copy_interface(ifc)
        return None

    def add_addrs_to_interface(self, ifc_name: str, addrs: List[IPInterface]) -> None:
        """Add addresses to the named interface; raises NotFoundError if absent."""
        with self._lock:
            for ifc in self.interfaces:
                if ifc.name == ifc_name:
                    for addr in addrs:
                        ifc.add_addr(addr)
                    return
        raise NotFoundError(f"interface {ifc_name} not found")

    def set_router(self, router) -> None:
        self.vi.router = router

    def on_inbound_chunk(self, chunk: Chunk) -> None:
        if chunk.network() == UDP_STR:
            conn = self.vi.udp_conns.find(chunk.destination_addr())
            if conn is not None:
                conn.deliver(chunk)

    def get_static_ips(self) -> List[IPAddress]:
        return list(self.static_ips)

    def get_interfaces(self) -> List[Interface]:
        with self._lock:
            return [_copy_interface(ifc) for ifc in self.interfaces]

    def get_all_ipaddrs(self, ipv6: bool) -> List[IPAddress]:
        """Return every interface IP of the requested version."""
        version = 6 if ipv6 else 4
        with self._lock:
            return [
                ipnet.ip
                for ifc in self.interfaces
                for ipnet in ifc.addrs
                if ipnet.ip.version == version
            ]

    def has_ipaddr(self, ip: _IpLike) -> bool:
        """Tell whether ``ip`` is assigned; ``0.0.0.0``/``::`` match any of that version."""
        ip = _to_ip(ip)
        text = str(ip)
        with self._lock:
            for ifc in self.interfaces:
                for ipnet in ifc.addrs:
                    loc_ip = ipnet.ip
                    if text == "0.0.0.0":
                        if loc_ip.version == 4:
                            return True
                    elif text == "::":
                        if loc_ip.version == 6:
                            return True
                    elif loc_ip == ip:
                        return True
        return False

    def allocate_local_addr(self, ip: _IpLike, port: int) -> None:
        """Check that ``ip:port`` can be bound; raise BindError or AddressInUseError."""
        ip = _to_ip(ip)
        if ip.is_unspecified:
            ips = self.get_all_ipaddrs(ip.version == 6)
        elif self.has_ipaddr(ip):
            ips = [ip]
        else:
            ips = []
        if not ips:
            raise BindError("bind failed")
        for candidate in ips:
            if self.vi.udp_conns.find(SocketAddr(candidate, port)) is not None:
                raise AddressInUseError(f"address {candidate}:{port} already in use")

    def assign_port(self, ip: _IpLike, start: int, end: int) -> int:
        """Pick a free port in ``start..=end``, starting at a random offset."""
        if end < start:
            raise VNetError("end port is less than the start")
        space = end + 1 - start
        offset = random.randrange(space)
        for i in range(space):
            port = (offset + i) % space + start
            try:
                self.allocate_local_addr(ip, port)
            except VNetError:
                continue
            return port
        raise AddressSpaceExhaustedError("port space exhausted")

    def resolve_addr(self, use_ipv4: bool, address: str) -> SocketAddr:
        """Resolve ``host:port`` using the router's resolver for names."""
        host, sep, port_text = address.partition(":")
        if not sep:
            raise VNetError("addr is not a udp address")

        try:
            ip: IPAddress = ipaddress.ip_address(host)
        except ValueError:
            host = host.lower()
            if host == "localhost":
                ip = _to_ip("127.0.0.1" if use_ipv4 else "::1")
            else:
                router = self.vi.router
                if router is None:
                    raise NoRouterLinkedError("no router linked") from None
                found = router.resolver.lookup(host)
                if found is None:
                    raise NotFoundError(f"host {host} not found") from None
                ip = found

        if not (port_text.isascii() and port_text.isdigit()):
            raise ValueError(f"invalid port: {port_text!r}")
        remote = SocketAddr(ip, int(port_text))

        if (ip.version == 4) == use_ipv4:
            return remote
        kind = "ipv4" if use_ipv4 else "ipv6"
        raise VNetError(f"No available {kind} IP address found!")

    def bind(self, local_addr: _AddrLike) -> UdpConn:
        """Create a connection bound to ``local_addr``; port 0 picks one in 5000-5999."""
        local = _to_addr(local_addr)
        if not self.has_ipaddr(local.ip):
            raise BindError("can't assign requested address")

        if local.port == 0:
            local = SocketAddr(local.ip, self.assign_port(local.ip, 5000, 5999))
        elif self.vi.udp_conns.find(local) is not None:
            raise AddressInUseError(f"address {local} already in use")

        conn = UdpConn(local, None, self.vi)
        self.vi.udp_conns.insert(conn)
        return conn

    def dial(self, use_ipv4: bool, remote_addr: str) -> UdpConn:
        """Bind a new connection and connect it to ``remote_addr``."""
        rem = self.resolve_addr(use_ipv4, remote_addr)
        any_ip = _any_ip(use_ipv4)
        src_ip = self.vi.determine_source_ip(any_ip, rem.ip) or any_ip
        conn = self.bind(SocketAddr(src_ip, 0))
        conn.connect(rem)
        return conn


@dataclass
class NetConfig:
    """Configuration of a virtual Net.

    ``static_ip`` is deprecated in favour of ``static_ips``.
    """

    static_ips: List[str] = field(default_factory=list)
    static_ip: str = ""


def _parse_ips(texts: List[str]) -> List[IPAddress]:
    ips = []
    for text in texts:
        try:
            ips.append(ipaddress.ip_address(text))
        except ValueError:
            continue
    return ips


def _system_interfaces() -> List[Interface]:
    interfaces = []
    for name, entries in psutil.net_if_addrs().items():
        addrs = []
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = entry.address.split("%", 1)[0]
            mask = entry.netmask.split("%", 1)[0] if entry.netmask else None
            try:
                addrs.append(to_ip_interface(address, mask))
            except (ValueError, VNetError):
                continue
        if addrs:
            interfaces.append(Interface(name, addrs))
    return interfaces


class Net:
    """A network stack: virtual when a config is given, the host's otherwise.

    A virtual Net always has ``lo0`` (127.0.0.1/8) and ``eth0``; the address
    of ``eth0`` is assigned when the Net is added to a router.
    """

    def __init__(self, config: Optional[NetConfig] = None) -> None:
        self._vnet: Optional[VNet] = None
        self._ifs: List[Interface] = []
        if config is not None:
            static_ips = _parse_ips(config.static_ips)
            if config.static_ip:
                static_ips.extend(_parse_ips([config.static_ip]))
            self._vnet = VNet(
                interfaces=[_loopback_interface(), Interface(ETH0_STR)],
                static_ips=static_ips,
            )
        else:
            self._ifs = _system_interfaces()

    def get_interfaces(self) -> List[Interface]:
        if self._vnet is not None:
            return self._vnet.get_interfaces()
        return [_copy_interface(ifc) for ifc in self._ifs]

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        if self._vnet is not None:
            return self._vnet.get_interface(ifc_name)
        for ifc in self._ifs:
            if ifc.name == ifc_name:
                return _copy_interface(ifc)
        return None

    def is_virtual(self) -> bool:
        return self._vnet is not None

    def resolve_addr(self, use_ipv4: bool, address: str) -> SocketAddr:
        if self._vnet is not None:
            return self._vnet.resolve_addr(use_ipv4, address)
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise VNetError("addr is not a udp address")
        host = host.strip("[]")
        family = socket.AF_INET if use_ipv4 else socket.AF_INET6
        try:
            infos = socket.getaddrinfo(host, int(port_text), family, socket.SOCK_DGRAM)
        except socket.gaierror as exc:
            raise NotFoundError(f"host {host} not found") from exc
        if not infos:
            raise NotFoundError(f"host {host} not found")
        sockaddr = infos[0][4]
        return SocketAddr(sockaddr[0].split("%", 1)[0], sockaddr[1])

    def bind(self, addr: _AddrLike):
        """Bind a datagram endpoint: a UdpConn when virtual, a socket otherwise."""
        if self._vnet is not None:
            return self._vnet.bind(addr)
        local = _to_addr(addr)
        family = socket.AF_INET if local.ip.version == 4 else socket.AF_INET6
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((str(local.ip), local.port))
        except OSError:
            sock.close()
            raise
        return sock

    def dial(self, use_ipv4: bool, remote_addr: str):
        """Open a datagram endpoint connected to ``remote_addr``."""
        if self._vnet is not None:
            return self._vnet.dial(use_ipv4, remote_addr)
        family = socket.AF_INET if use_ipv4 else socket.AF_INET6
        rem = self.resolve_addr(use_ipv4, remote_addr)
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((str(_any_ip(use_ipv4)), 0))
            if sys.platform.startswith("linux"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, _RECEIVE_BUF_SIZE)
            sock.connect((str(rem.ip), rem.port))
        except OSError:
            sock.close()
            raise
        return sock

    def get_nic(self) -> VNet:
        """Return the virtual NIC; raises VNetError when the network is not virtual."""
        if self._vnet is None:
            raise VNetError("vnet is not enabled")
        return self._vnet