"""Routers that forward chunks between virtual networks."""

from __future__ import annotations

import ipaddress
import itertools
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .chunk import Chunk, IPAddress
from .chunk_queue import ChunkQueue
from .errors import (
    AddressSpaceExhaustedError,
    NatError,
    NotFoundError,
    RouterStateError,
    VNetError,
)
from .interface import Interface, IPInterface, to_ip_interface
from .nat import (
    EndpointDependencyType,
    NatConfig,
    NatType,
    NetworkAddressTranslator,
)
from .resolver import Resolver

logger = logging.getLogger(__name__)

DEFAULT_ROUTER_QUEUE_SIZE = 0  # unlimited

_LO0 = "lo0"
_ETH0 = "eth0"

_router_id_counter = itertools.count()
_router_id_lock = threading.Lock()

ChunkFilter = Callable[[Chunk], bool]


def _assign_router_name() -> str:
    with _router_id_lock:
        return f"router{next(_router_id_counter)}"


def _copy_interface(ifc: Interface) -> Interface:
    return Interface(ifc.name, list(ifc.addrs))


@dataclass
class RouterConfig:
    """Configuration of a Router.

    ``cidr`` is the router's subnet, such as ``"192.0.2.0/24"``. Entries of
    ``static_ips`` are external IPs, optionally paired with a local IP as
    ``"<external>/<local>"``; they are ignored for a root router.
    ``static_ip`` is deprecated in favour of ``static_ips``. ``nat_type``
    matters only when the router has a parent. Delays are in seconds.
    """

    name: str = ""
    cidr: str = ""
    static_ips: List[str] = field(default_factory=list)
    static_ip: str = ""
    queue_size: int = 0
    nat_type: Optional[NatType] = None
    min_delay: float = 0.0
    max_jitter: float = 0.0


class Nic(ABC):
    """A network interface controller that can be attached to a Router."""

    @abstractmethod
    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        """Return a copy of the named interface, or None."""

    @abstractmethod
    def add_addrs_to_interface(self, ifc_name: str, addrs: List[IPInterface]) -> None:
        """Add addresses to the named interface."""

    @abstractmethod
    def on_inbound_chunk(self, chunk: Chunk) -> None:
        """Receive a chunk routed to this NIC."""

    @abstractmethod
    def get_static_ips(self) -> List[IPAddress]:
        """Return the static IPs this NIC asks for."""

    @abstractmethod
    def set_router(self, router: "Router") -> None:
        """Attach this NIC to ``router``."""


class Router(Nic):
    """Routes chunks within its subnet and, through NAT, to its parent."""

    def __init__(self, config: RouterConfig) -> None:
        self._ipv4net = ipaddress.ip_interface(config.cidr)

        queue_size = config.queue_size if config.queue_size > 0 else DEFAULT_ROUTER_QUEUE_SIZE

        lo0 = Interface(_LO0)
        lo0.add_addr(to_ip_interface("127.0.0.1", "255.0.0.0"))
        eth0 = Interface(_ETH0)

        self.name = config.name or _assign_router_name()

        static_ips: List[IPAddress] = []
        static_local_ips: Dict[str, IPAddress] = {}
        for ip_str in config.static_ips:
            parts = ip_str.split("/")
            try:
                ip = ipaddress.ip_address(parts[0])
            except ValueError:
                continue
            if len(parts) > 1:
                loc_ip = ipaddress.ip_address(parts[1])
                if loc_ip not in self._ipv4net.network:
                    raise VNetError("local IP is beyond the static IPs subset")
                static_local_ips[str(ip)] = loc_ip
            static_ips.append(ip)
        if config.static_ip:
            logger.warning("static_ip is deprecated. Use static_ips instead")
            try:
                static_ips.append(ipaddress.ip_address(config.static_ip))
            except ValueError:
                pass

        if static_local_ips and len(static_local_ips) != len(static_ips):
            raise VNetError("local IPs are not associated with every static IP")

        self.static_ips: List[IPAddress] = static_ips
        self.static_local_ips: Dict[str, IPAddress] = static_local_ips
        self.min_delay = config.min_delay
        self.max_jitter = config.max_jitter
        self.resolver = Resolver()

        self._interfaces: List[Interface] = [lo0, eth0]
        self._queue = ChunkQueue(queue_size)
        self._children: List[Router] = []
        self._nat_type: Optional[NatType] = config.nat_type
        self._nat: Optional[NetworkAddressTranslator] = None
        self._parent: Optional[Router] = None
        self._nics: Dict[str, Nic] = {}
        self._chunk_filters: List[ChunkFilter] = []
        self._last_id = 0
        self._lock = threading.RLock()

        self._done: Optional[threading.Event] = None
        self._wake: Optional[threading.Event] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def ipv4net(self) -> IPInterface:
        """The router's address together with its subnet."""
        return self._ipv4net

    @property
    def nat(self) -> Optional[NetworkAddressTranslator]:
        """The NAT toward the parent, set up by set_router()."""
        return self._nat

    @property
    def parent(self) -> Optional[Router]:
        return self._parent

    def get_interfaces(self) -> List[Interface]:
        with self._lock:
            return [_copy_interface(ifc) for ifc in self._interfaces]

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        with self._lock:
            for ifc in self._interfaces:
                if ifc.name == ifc_name:
                    return _copy_interface(ifc)
        return None

    def add_addrs_to_interface(self, ifc_name: str, addrs: List[IPInterface]) -> None:
        """Add addresses to the named interface; raises NotFoundError if absent."""
        with self._lock:
            for ifc in self._interfaces:
                if ifc.name == ifc_name:
                    for addr in addrs:
                        ifc.add_addr(addr)
                    return
        raise NotFoundError(f"interface {ifc_name} not found")

    def on_inbound_chunk(self, chunk: Chunk) -> None:
        """Translate a chunk arriving from the parent and route it inward."""
        with self._lock:
            nat = self._nat
        if nat is None:
            logger.warning("[%s] no NAT set up; dropped %s", self.name, chunk)
            return
        try:
            translated = nat.translate_inbound(chunk)
        except NatError as exc:
            logger.warning("[%s] %s", self.name, exc)
            return
        self.push(translated)

    def get_static_ips(self) -> List[IPAddress]:
        return list(self.static_ips)

    def set_router(self, router: Router) -> None:
        """Attach to a parent router and set up NAT toward it.

        The parent must already have assigned addresses to ``eth0``.
        """
        parent = router
        with self._lock:
            self._parent = parent
        self.resolver.set_parent(parent.resolver)

        eth0 = self.get_interface(_ETH0)
        if eth0 is None:
            raise NotFoundError("no IP address is assigned for eth0")

        mapped_ips: List[IPAddress] = []
        local_ips: List[IPAddress] = []
        for ifc_addr in eth0.addrs:
            ip = ifc_addr.ip
            mapped_ips.append(ip)
            loc_ip = self.static_local_ips.get(str(ip))
            if loc_ip is not None:
                local_ips.append(loc_ip)

        with self._lock:
            if self._nat_type is None:
                self._nat_type = NatType(
                    mapping_behavior=EndpointDependencyType.ENDPOINT_INDEPENDENT,
                    filtering_behavior=EndpointDependencyType.ENDPOINT_ADDR_PORT_DEPENDENT,
                    hair_pining=False,
                    port_preservation=False,
                    mapping_life_time=30.0,
                )
            self._nat = NetworkAddressTranslator(
                NatConfig(
                    name=self.name,
                    nat_type=self._nat_type,
                    mapped_ips=mapped_ips,
                    local_ips=local_ips,
                )
            )

    def is_running(self) -> bool:
        with self._lock:
            return self._done is not None

    def start(self) -> None:
        """Start routing here and in every child router."""
        with self._lock:
            if self._done is not None:
                raise RouterStateError("router already started")
            done = threading.Event()
            wake = threading.Event()
            self._done = done
            self._wake = wake
            worker = threading.Thread(
                target=self._run, args=(done, wake), name=f"{self.name}-worker", daemon=True
            )
            self._worker = worker
            children = list(self._children)
        worker.start()
        for child in children:
            child.start()

    def stop(self) -> None:
        """Stop routing here and in every child router."""
        with self._lock:
            if self._done is None:
                raise RouterStateError("router already stopped")
            done, wake, worker = self._done, self._wake, self._worker
            self._done = None
            self._wake = None
            self._worker = None
            children = list(self._children)
        done.set()
        if wake is not None:
            wake.set()
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        for child in children:
            child.stop()

    def add_router(self, child: Router) -> None:
        """Add a child router; afterwards call ``child.set_router(self)``."""
        with self._lock:
            self._children.append(child)
        self.add_net(child)

    def add_net(self, nic) -> None:
        """Attach a NIC, assigning it an address if it has no static one.

        Afterwards call ``nic.set_router(self)``.
        """
        ips = list(nic.get_static_ips())
        with self._lock:
            if not ips:
                ip = self.assign_ip_address()
                logger.debug("assign_ip_address: %s", ip)
                ips.append(ip)

            ipnets = []
            for ip in ips:
                if ip not in self._ipv4net.network:
                    raise VNetError(f"static IP {ip} is beyond the subnet")
                self._nics[str(ip)] = nic
                ipnets.append(ipaddress.ip_interface(f"{ip}/{self._ipv4net.network.prefixlen}"))

        try:
            nic.add_addrs_to_interface(_ETH0, ipnets)
        except VNetError:
            pass

    def add_host(self, host_name: str, ip_addr: str) -> None:
        """Add a host name to the router's local resolver."""
        self.resolver.add_host(host_name, ip_addr)

    def add_chunk_filter(self, filter_fn: ChunkFilter) -> None:
        """Add a filter; a chunk is dropped by the first filter returning False."""
        with self._lock:
            self._chunk_filters.append(filter_fn)

    def push(self, chunk: Chunk) -> None:
        """Queue a chunk for routing; it is dropped if the router is not running."""
        logger.debug("[%s] route %s", self.name, chunk)
        with self._lock:
            wake = self._wake
            running = self._done is not None
        if not running:
            logger.warning("router is done")
            return
        chunk.set_timestamp()
        if self._queue.push(chunk):
            if wake is not None:
                wake.set()
        else:
            logger.warning("[%s] queue was full. dropped a chunk", self.name)

    def assign_ip_address(self) -> IPAddress:
        """Hand out the next host address of the subnet (last byte 1 to 254)."""
        with self._lock:
            if self._last_id == 0xFE:
                raise AddressSpaceExhaustedError("address space exhausted")
            self._last_id += 1
            packed = bytearray(self._ipv4net.ip.packed)
            if self._ipv4net.version == 4:
                packed[3] = self._last_id
            else:
                value = packed[15] + self._last_id
                if value > 0xFF:
                    raise AddressSpaceExhaustedError("address space exhausted")
                packed[15] = value
            return ipaddress.ip_address(bytes(packed))

    def _run(self, done: threading.Event, wake: threading.Event) -> None:
        while not done.is_set():
            try:
                delay = self._process_chunks(done)
            except VNetError:
                logger.exception("[%s] routing stopped", self.name)
                break
            if delay <= 0:
                wake.wait()
                wake.clear()
            else:
                done.wait(delay)

    def _process_chunks(self, done: threading.Event) -> float:
        """Route every due chunk; return how long to wait for the next one (0: none)."""
        if self.max_jitter > 0:
            done.wait(random.uniform(0, self.max_jitter))

        entered_at = time.time()
        cut_off = entered_at - self.min_delay

        while True:
            head = self._queue.peek()
            if head is None:
                return 0.0
            if head.timestamp >= cut_off:
                diff = head.timestamp + self.min_delay - entered_at
                if diff > 0:
                    return diff

            chunk = self._queue.pop()
            if chunk is None:
                return 0.0

            with self._lock:
                filters = list(self._chunk_filters)
                nics = dict(self._nics)
                parent = self._parent
                nat = self._nat

            if not all(f(chunk) for f in filters):
                continue

            dst_ip = chunk.destination_ip()
            if dst_ip in self._ipv4net.network:
                nic = nics.get(str(dst_ip))
                if nic is not None:
                    nic.on_inbound_chunk(chunk)
                else:
                    logger.debug("[%s] %s unreachable", self.name, chunk)
            elif parent is not None and nat is not None:
                to_parent = nat.translate_outbound(chunk)
                if to_parent is not None:
                    parent.push(to_parent)
            else:
                logger.debug("[%s] no route found for %s", self.name, chunk)