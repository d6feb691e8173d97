"""Packets (chunks) that travel through the virtual network."""

from __future__ import annotations

import copy
import ipaddress
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntFlag
from typing import Union

UDP_STR = "udp"
TCP_STR = "tcp"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_tag_counter = itertools.count()


def base36(value: int) -> str:
    """Encode a non-negative integer as lowercase base 36, zero-padded to 8 places."""
    if value < 0:
        raise ValueError("base36 requires a non-negative value")
    digits = []
    while value > 0:
        value, digit = divmod(value, 36)
        digits.append(_BASE36_DIGITS[digit])
    return "".join(reversed(digits)).rjust(8, "0")


def _assign_chunk_tag() -> str:
    return base36(next(_tag_counter))


@dataclass(frozen=True)
class SocketAddr:
    """An IP address together with a port."""

    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @classmethod
    def parse(cls, text: str) -> SocketAddr:
        """Parse ``a.b.c.d:port`` or ``[v6]:port``."""
        host, sep, port_text = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"invalid socket address: {text!r}")
        if host.startswith("["):
            if not host.endswith("]"):
                raise ValueError(f"invalid socket address: {text!r}")
            ip: IPAddress = ipaddress.IPv6Address(host[1:-1])
        else:
            ip = ipaddress.IPv4Address(host)
        if not (port_text.isascii() and port_text.isdigit()):
            raise ValueError(f"invalid port in socket address: {text!r}")
        return cls(ip, int(port_text))

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def _as_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class TcpFlag(IntFlag):
    """TCP control bits."""

    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10

    def __str__(self) -> str:
        names = [
            flag.name
            for flag in (TcpFlag.FIN, TcpFlag.SYN, TcpFlag.RST, TcpFlag.PSH, TcpFlag.ACK)
            if self & flag
        ]
        return "-".join(names)


class Chunk(ABC):
    """A packet passed around in the virtual network."""

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        user_data: bytes = b"",
    ) -> None:
        self.timestamp = time.time()
        self._source = _as_addr(src_addr)
        self._destination = _as_addr(dst_addr)
        self.tag = _assign_chunk_tag()
        self.user_data = bytes(user_data)

    def set_timestamp(self) -> float:
        """Stamp the chunk with the current time and return it."""
        self.timestamp = time.time()
        return self.timestamp

    def source_ip(self) -> IPAddress:
        return self._source.ip

    def destination_ip(self) -> IPAddress:
        return self._destination.ip

    def source_addr(self) -> SocketAddr:
        return self._source

    def destination_addr(self) -> SocketAddr:
        return self._destination

    def set_source_addr(self, address: Union[SocketAddr, str]) -> None:
        """Replace the source address; raises ValueError if it cannot be parsed."""
        self._source = _as_addr(address)

    def set_destination_addr(self, address: Union[SocketAddr, str]) -> None:
        """Replace the destination address; raises ValueError if it cannot be parsed."""
        self._destination = _as_addr(address)

    @abstractmethod
    def network(self) -> str:
        """Return ``"udp"`` or ``"tcp"``."""

    def clone(self) -> Chunk:
        """Return an independent copy that keeps the tag and timestamp."""
        return copy.copy(self)

    @abstractmethod
    def __str__(self) -> str:
        """Describe the chunk for logs."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"


class ChunkUdp(Chunk):
    """A UDP datagram."""

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        user_data: bytes = b"",
    ) -> None:
        super().__init__(src_addr, dst_addr, user_data)

    def network(self) -> str:
        return UDP_STR

    def __str__(self) -> str:
        return f"{UDP_STR} chunk {self.tag} {self.source_addr()} => {self.destination_addr()}"


class ChunkTcp(Chunk):
    """A TCP segment; user data is carried only with the PSH flag."""

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        flags: TcpFlag,
        user_data: bytes = b"",
    ) -> None:
        super().__init__(src_addr, dst_addr, user_data)
        self.flags = TcpFlag(flags)

    def network(self) -> str:
        return TCP_STR

    def __str__(self) -> str:
        return (
            f"{TCP_STR} {str(self.flags)} chunk {self.tag} "
            f"{self.source_addr()} => {self.destination_addr()}"
        )