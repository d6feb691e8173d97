"""Lookup table of bound UDP connections by transport address."""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Union

from .chunk import SocketAddr
from .conn import UdpConn
from .errors import AddressInUseError, NotFoundError, VNetError


def _to_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class UdpConnMap:
    """Connections grouped by local port; an unspecified IP matches any address."""

    def __init__(self) -> None:
        self._port_map: Dict[int, List[UdpConn]] = {}
        self._lock = threading.Lock()

    def insert(self, conn: UdpConn) -> None:
        """Register a connection; raises AddressInUseError on a conflicting binding."""
        addr = conn.local_addr()
        with self._lock:
            conns = self._port_map.get(addr.port)
            if conns is not None:
                if addr.ip.is_unspecified:
                    raise AddressInUseError(f"address {addr} already in use")
                for c in conns:
                    laddr = c.local_addr()
                    if laddr.ip.is_unspecified or laddr.ip == addr.ip:
                        raise AddressInUseError(f"address {addr} already in use")
            self._port_map.setdefault(addr.port, []).append(conn)

    def find(self, addr: Union[SocketAddr, str]) -> Optional[UdpConn]:
        """Return the connection that receives traffic for ``addr``, or None."""
        target = _to_addr(addr)
        with self._lock:
            conns = self._port_map.get(target.port)
            if not conns:
                return None
            if target.ip.is_unspecified:
                return conns[0]
            for c in conns:
                laddr = c.local_addr()
                if laddr.ip.is_unspecified or laddr.ip == target.ip:
                    return c
            return None

    def delete(self, addr: Union[SocketAddr, str]) -> None:
        """Remove the connection bound to ``addr``.

        An unspecified IP removes every connection on the port. Raises
        NotFoundError if nothing is bound on the port.
        """
        target = _to_addr(addr)
        with self._lock:
            conns = self._port_map.get(target.port)
            if conns is None:
                raise NotFoundError("no such UDP conn")
            remaining: List[UdpConn] = []
            if not target.ip.is_unspecified:
                for c in conns:
                    laddr = c.local_addr()
                    if laddr.ip.is_unspecified:
                        raise VNetError("cannot remove unspecified IP by the specified IP")
                    if laddr.ip != target.ip:
                        remaining.append(c)
            if remaining:
                self._port_map[target.port] = remaining
            else:
                del self._port_map[target.port]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(conns) for conns in self._port_map.values())