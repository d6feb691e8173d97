"""UDP connections bound inside the virtual network."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Optional, Tuple, Union

from .chunk import Chunk, ChunkUdp, IPAddress, SocketAddr
from .errors import BindError, VNetError

MAX_READ_QUEUE_SIZE = 1024


def _to_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class ConnObserver(ABC):
    """The network stack a connection reports to."""

    @abstractmethod
    def write(self, chunk: Chunk) -> None:
        """Send a chunk out into the network."""

    @abstractmethod
    def on_closed(self, addr: SocketAddr) -> None:
        """Called once when the connection bound to ``addr`` is closed."""

    @abstractmethod
    def determine_source_ip(self, loc_ip: IPAddress, dst_ip: IPAddress) -> Optional[IPAddress]:
        """Pick the source IP for a packet to ``dst_ip``, or None if there is none."""


class UdpConn:
    """A datagram connection on a virtual network."""

    def __init__(
        self,
        loc_addr: Union[SocketAddr, str],
        rem_addr: Optional[Union[SocketAddr, str]],
        obs: ConnObserver,
    ) -> None:
        self._loc_addr = _to_addr(loc_addr)
        self._rem_addr = None if rem_addr is None else _to_addr(rem_addr)
        self._obs = obs
        self._inbound: Deque[Chunk] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def deliver(self, chunk: Chunk) -> bool:
        """Queue an inbound chunk for reading.

        Returns False if the connection is closed or its read queue is full,
        in which case the chunk is dropped.
        """
        with self._cond:
            if self._closed or len(self._inbound) >= MAX_READ_QUEUE_SIZE:
                return False
            self._inbound.append(chunk)
            self._cond.notify()
            return True

    def connect(self, addr: Union[SocketAddr, str]) -> None:
        """Set the default remote address; datagrams from elsewhere are discarded."""
        with self._cond:
            self._rem_addr = _to_addr(addr)

    def recv(self, size: int) -> bytes:
        """Read one datagram's payload, truncated to ``size`` bytes."""
        data, _ = self.recv_from(size)
        return data

    def recv_from(self, size: int) -> Tuple[bytes, SocketAddr]:
        """Read one datagram, returning its payload (at most ``size`` bytes) and sender.

        Blocks until a datagram arrives. Datagrams queued before close() are
        still returned; after that ConnectionAbortedError is raised.
        """
        while True:
            with self._cond:
                while not self._inbound and not self._closed:
                    self._cond.wait()
                if not self._inbound:
                    raise ConnectionAbortedError("Connection Aborted")
                chunk = self._inbound.popleft()
                rem_addr = self._rem_addr
            addr = chunk.source_addr()
            if rem_addr is not None and addr != rem_addr:
                continue
            return bytes(chunk.user_data[:size]), addr

    def send(self, data: bytes) -> int:
        """Send to the connected remote address; returns the number of bytes sent."""
        with self._cond:
            rem_addr = self._rem_addr
        if rem_addr is None:
            raise VNetError("no remote address")
        return self.send_to(data, rem_addr)

    def send_to(self, data: bytes, target: Union[SocketAddr, str]) -> int:
        """Send ``data`` to ``target``; returns the number of bytes sent."""
        target_addr = _to_addr(target)
        src_ip = self._obs.determine_source_ip(self._loc_addr.ip, target_addr.ip)
        if src_ip is None:
            raise BindError("no local address to send from")
        src_addr = SocketAddr(src_ip, self._loc_addr.port)
        self._obs.write(ChunkUdp(src_addr, target_addr, bytes(data)))
        return len(data)

    def local_addr(self) -> SocketAddr:
        return self._loc_addr

    def remote_addr(self) -> Optional[SocketAddr]:
        with self._cond:
            return self._rem_addr

    def close(self) -> None:
        """Close the connection; closing twice raises VNetError."""
        with self._cond:
            if self._closed:
                raise VNetError("already closed")
            self._closed = True
            self._cond.notify_all()
        self._obs.on_closed(self._loc_addr)

    def __enter__(self) -> UdpConn:
        return self

    def __exit__(self, *exc_info) -> None:
        with self._cond:
            closed = self._closed
        if not closed:
            self.close()