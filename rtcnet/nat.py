"""Network address translation between a private subnet and its parent."""

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Union

from .chunk import UDP_STR, Chunk
from .errors import NatError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_NAT_MAPPING_LIFE_TIME = 30.0
"""Lifetime of a NAPT mapping, in seconds, when none is configured."""

_PORT_BASE = 0xC000


class EndpointDependencyType(enum.Enum):
    """How mapping or filtering depends on the remote endpoint (RFC 4787)."""

    ENDPOINT_INDEPENDENT = "independent"
    ENDPOINT_ADDR_DEPENDENT = "addr-dependent"
    ENDPOINT_ADDR_PORT_DEPENDENT = "addr-port-dependent"


class NatMode(enum.Enum):
    """Basic behaviour of a NAT."""

    NORMAL = "normal"
    """A standard NAPT (RFC 2663)."""
    NAT_1TO1 = "1to1"
    """Static 1:1 mapping of external to local addresses, ports preserved."""


@dataclass
class NatType:
    """Parameters that define the behaviour of a NAT.

    ``mapping_life_time`` is in seconds; 0 selects the default for NAPT.
    """

    mode: NatMode = NatMode.NORMAL
    mapping_behavior: EndpointDependencyType = EndpointDependencyType.ENDPOINT_INDEPENDENT
    filtering_behavior: EndpointDependencyType = EndpointDependencyType.ENDPOINT_INDEPENDENT
    hair_pining: bool = False
    port_preservation: bool = False
    mapping_life_time: float = 0.0


@dataclass
class NatConfig:
    """Configuration of a NetworkAddressTranslator."""

    name: str = ""
    nat_type: NatType = field(default_factory=NatType)
    mapped_ips: List[IPAddress] = field(default_factory=list)
    local_ips: List[IPAddress] = field(default_factory=list)


@dataclass
class Mapping:
    """One NAPT binding between a local and a mapped transport address."""

    proto: str
    local: str
    mapped: str
    bound: str
    filters: Set[str] = field(default_factory=set)
    expires: float = 0.0

    @property
    def outbound_key(self) -> str:
        return f"{self.proto}:{self.local}:{self.bound}"

    @property
    def inbound_key(self) -> str:
        return f"{self.proto}:{self.mapped}"


def _endpoint_key(behavior: EndpointDependencyType, chunk: Chunk, remote_is_source: bool) -> str:
    if behavior is EndpointDependencyType.ENDPOINT_INDEPENDENT:
        return ""
    if behavior is EndpointDependencyType.ENDPOINT_ADDR_DEPENDENT:
        ip = chunk.source_ip() if remote_is_source else chunk.destination_ip()
        return str(ip)
    addr = chunk.source_addr() if remote_is_source else chunk.destination_addr()
    return str(addr)


class NetworkAddressTranslator:
    """Translates UDP chunks crossing a router boundary."""

    def __init__(self, config: NatConfig) -> None:
        nat_type = dataclasses.replace(config.nat_type)
        mapped_ips = [ipaddress.ip_address(ip) for ip in config.mapped_ips]
        local_ips = [ipaddress.ip_address(ip) for ip in config.local_ips]

        if nat_type.mode is NatMode.NAT_1TO1:
            nat_type.mapping_behavior = EndpointDependencyType.ENDPOINT_INDEPENDENT
            nat_type.filtering_behavior = EndpointDependencyType.ENDPOINT_INDEPENDENT
            nat_type.port_preservation = True
            nat_type.mapping_life_time = 0.0
            if not mapped_ips:
                raise NatError("1:1 NAT requires more than one mapping")
            if len(mapped_ips) != len(local_ips):
                raise NatError("length mismatch between mapped IPs and local IPs")
        else:
            nat_type.mode = NatMode.NORMAL
            if nat_type.mapping_life_time == 0:
                nat_type.mapping_life_time = DEFAULT_NAT_MAPPING_LIFE_TIME

        self.name = config.name
        self.nat_type = nat_type
        self.mapped_ips: List[IPAddress] = mapped_ips
        self.local_ips: List[IPAddress] = local_ips
        self._outbound_map: Dict[str, Mapping] = {}
        self._inbound_map: Dict[str, Mapping] = {}
        self._udp_port_counter = 0
        self._lock = threading.RLock()

    def get_paired_mapped_ip(self, loc_ip) -> Optional[IPAddress]:
        """Return the external IP paired with a local IP in 1:1 mode."""
        ip = ipaddress.ip_address(loc_ip)
        for local, mapped in zip(self.local_ips, self.mapped_ips):
            if local == ip:
                return mapped
        return None

    def get_paired_local_ip(self, mapped_ip) -> Optional[IPAddress]:
        """Return the local IP paired with an external IP in 1:1 mode."""
        ip = ipaddress.ip_address(mapped_ip)
        for mapped, local in zip(self.mapped_ips, self.local_ips):
            if mapped == ip:
                return local
        return None

    def _next_mapped_port(self) -> int:
        counter = self._udp_port_counter
        if counter == 0xFFFF - _PORT_BASE:
            self._udp_port_counter = 0
        else:
            self._udp_port_counter += 1
        return _PORT_BASE + counter

    def translate_outbound(self, chunk: Chunk) -> Optional[Chunk]:
        """Translate a chunk leaving the subnet.

        Returns the translated copy, or None when a 1:1 NAT has no route for
        it. Raises NatError for non-UDP chunks.
        """
        if chunk.network() != UDP_STR:
            raise NatError("non-UDP translation is not supported yet")

        to = chunk.clone()
        if self.nat_type.mode is NatMode.NAT_1TO1:
            src_addr = chunk.source_addr()
            src_ip = self.get_paired_mapped_ip(src_addr.ip)
            if src_ip is None:
                logger.debug("[%s] drop outbound chunk %s with no route", self.name, chunk)
                return None
            to.set_source_addr(f"{src_ip}:{src_addr.port}")
        else:
            bound = _endpoint_key(self.nat_type.mapping_behavior, chunk, remote_is_source=False)
            filter_key = _endpoint_key(
                self.nat_type.filtering_behavior, chunk, remote_is_source=False
            )
            o_key = f"{UDP_STR}:{chunk.source_addr()}:{bound}"

            with self._lock:
                mapping = self.find_outbound_mapping(o_key)
                if mapping is not None:
                    if filter_key not in mapping.filters:
                        logger.debug(
                            "[%s] permit access from %s to %s",
                            self.name, filter_key, mapping.mapped,
                        )
                        mapping.filters.add(filter_key)
                else:
                    mapped_port = self._next_mapped_port()
                    if not self.mapped_ips:
                        raise NatError("NAT requires a mapping")
                    mapping = Mapping(
                        proto=UDP_STR,
                        local=str(chunk.source_addr()),
                        mapped=f"{self.mapped_ips[0]}:{mapped_port}",
                        bound=bound,
                        filters={filter_key},
                        expires=time.monotonic() + self.nat_type.mapping_life_time,
                    )
                    self._outbound_map[o_key] = mapping
                    self._inbound_map[mapping.inbound_key] = mapping
                    logger.debug(
                        "[%s] created a new NAT binding o_key=%s i_key=%s",
                        self.name, o_key, mapping.inbound_key,
                    )
                    logger.debug(
                        "[%s] permit access from %s to %s",
                        self.name, filter_key, mapping.mapped,
                    )
                mapped = mapping.mapped
            to.set_source_addr(mapped)

        logger.debug("[%s] translate outbound chunk from %s to %s", self.name, chunk, to)
        return to

    def translate_inbound(self, chunk: Chunk) -> Chunk:
        """Translate a chunk entering the subnet; raises NatError when it is dropped."""
        if chunk.network() != UDP_STR:
            raise NatError("non-UDP translation is not supported yet")

        to = chunk.clone()
        if self.nat_type.mode is NatMode.NAT_1TO1:
            dst_addr = chunk.destination_addr()
            dst_ip = self.get_paired_local_ip(dst_addr.ip)
            if dst_ip is None:
                raise NatError(f"drop {chunk} as no associated local address")
            to.set_destination_addr(f"{dst_ip}:{dst_addr.port}")
        else:
            filter_key = _endpoint_key(
                self.nat_type.filtering_behavior, chunk, remote_is_source=True
            )
            i_key = f"{UDP_STR}:{chunk.destination_addr()}"
            with self._lock:
                mapping = self.find_inbound_mapping(i_key)
                if mapping is None:
                    raise NatError(f"drop {chunk} as no NAT binding found")
                if filter_key not in mapping.filters:
                    raise NatError(f"drop {chunk} as the remote {filter_key} has no permission")
                local = mapping.local
            to.set_destination_addr(local)

        logger.debug("[%s] translate inbound chunk from %s to %s", self.name, chunk, to)
        return to

    def _remove(self, mapping: Mapping) -> None:
        self._inbound_map.pop(mapping.inbound_key, None)
        self._outbound_map.pop(mapping.outbound_key, None)

    def find_outbound_mapping(self, o_key: str) -> Optional[Mapping]:
        """Return the live mapping for ``o_key``, refreshing its expiry.

        An expired mapping is removed from both tables.
        """
        with self._lock:
            mapping = self._outbound_map.get(o_key)
            if mapping is None:
                return None
            now = time.monotonic()
            if now >= mapping.expires:
                self._remove(mapping)
            else:
                mapping.expires = now + self.nat_type.mapping_life_time
            return self._outbound_map.get(o_key)

    def find_inbound_mapping(self, i_key: str) -> Optional[Mapping]:
        """Return the live mapping for ``i_key``; inbound traffic does not refresh it."""
        with self._lock:
            mapping = self._inbound_map.get(i_key)
            if mapping is None:
                return None
            if time.monotonic() >= mapping.expires:
                self._remove(mapping)
            return self._inbound_map.get(i_key)

    def inbound_map_len(self) -> int:
        with self._lock:
            return len(self._inbound_map)

    def outbound_map_len(self) -> int:
        with self._lock:
            return len(self._outbound_map)