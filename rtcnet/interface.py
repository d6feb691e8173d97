"""Network interfaces of the virtual network."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .chunk import SocketAddr
from .errors import VNetError

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
_AddrLike = Union[SocketAddr, str, ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class Interface:
    """A named interface holding a list of addresses with prefixes."""

    name: str
    addrs: List[IPInterface] = field(default_factory=list)

    def add_addr(self, addr: IPInterface) -> None:
        self.addrs.append(addr)


def _ip_of(value: _AddrLike):
    if isinstance(value, SocketAddr):
        return value.ip
    return ipaddress.ip_address(value)


def to_ip_interface(addr: _AddrLike, mask: Optional[_AddrLike] = None) -> IPInterface:
    """Combine an address and a netmask into an interface address.

    The prefix length is the number of set bits in the mask; without a mask
    it is 32. A mask of a different IP version than the address is an error.
    """
    ip = _ip_of(addr)
    if mask is None:
        prefix = 32
    else:
        mask_ip = _ip_of(mask)
        if mask_ip.version != ip.version:
            raise VNetError("invalid mask")
        prefix = bin(int(mask_ip)).count("1")
    return ipaddress.ip_interface(f"{ip}/{prefix}")