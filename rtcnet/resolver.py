"""A hierarchical host name resolver."""

from __future__ import annotations

import ipaddress
from typing import Dict, Optional, Union

from .errors import VNetError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Resolver:
    """Maps host names to IP addresses, falling back to a parent resolver."""

    def __init__(self) -> None:
        self.parent: Optional[Resolver] = None
        self._hosts: Dict[str, IPAddress] = {}
        self.add_host("localhost", "127.0.0.1")

    def set_parent(self, parent: Resolver) -> None:
        self.parent = parent

    def add_host(self, name: str, ip_addr: str) -> None:
        """Register ``name``; raises VNetError for an empty name, ValueError for a bad IP."""
        if not name:
            raise VNetError("host name must not be empty")
        self._hosts[name] = ipaddress.ip_address(ip_addr)

    def lookup(self, host_name: str) -> Optional[IPAddress]:
        """Return the address of ``host_name``, or None if no resolver knows it."""
        ip = self._hosts.get(host_name)
        if ip is not None:
            return ip
        if self.parent is None:
            return None
        return self.parent.lookup(host_name)