import ipaddress
import time

import pytest

from rtcnet.chunk import ChunkTcp, ChunkUdp, SocketAddr, TcpFlag
from rtcnet.errors import NatError
from rtcnet.nat import (
    DEFAULT_NAT_MAPPING_LIFE_TIME,
    EndpointDependencyType,
    NatConfig,
    NatMode,
    NatType,
    NetworkAddressTranslator,
)

DEMO_IP = ipaddress.ip_address("1.2.3.4")
EDT = EndpointDependencyType


def make_nat(mapping, filtering, life_time=30.0):
    return NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(
                mapping_behavior=mapping,
                filtering_behavior=filtering,
                mapping_life_time=life_time,
            ),
            mapped_ips=[DEMO_IP],
        )
    )


def reply_to(oec, remote):
    return ChunkUdp(remote, oec.source_addr())


def test_nat_type_default():
    nat = NetworkAddressTranslator(NatConfig(mapped_ips=[DEMO_IP]))
    assert nat.nat_type.mapping_behavior is EDT.ENDPOINT_INDEPENDENT
    assert nat.nat_type.filtering_behavior is EDT.ENDPOINT_INDEPENDENT
    assert nat.nat_type.hair_pining is False
    assert nat.nat_type.port_preservation is False
    assert nat.nat_type.mapping_life_time == DEFAULT_NAT_MAPPING_LIFE_TIME == 30.0
    assert nat.nat_type.mode is NatMode.NORMAL


def test_first_mapped_port_starts_at_c000():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT)
    oec = nat.translate_outbound(ChunkUdp("192.168.0.2:1234", "5.6.7.8:5678"))
    assert str(oec.source_addr()) == "1.2.3.4:49152"


def test_full_cone_nat():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT)
    src = SocketAddr.parse("192.168.0.2:1234")
    dst = SocketAddr.parse("5.6.7.8:5678")
    oic = ChunkUdp(src, dst)

    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1

    iic = nat.translate_inbound(reply_to(oec, dst))
    assert iic.destination_addr() == oic.source_addr()

    mapped = oec.source_addr()
    bad = ChunkUdp(dst, SocketAddr(mapped.ip, mapped.port + 1))
    with pytest.raises(NatError):
        nat.translate_inbound(bad)

    any_port = nat.translate_inbound(reply_to(oec, SocketAddr(dst.ip, 7777)))
    assert any_port.destination_addr() == src


def test_addr_restricted_cone_nat():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_ADDR_DEPENDENT)
    src = SocketAddr.parse("192.168.0.2:1234")
    dst = SocketAddr.parse("5.6.7.8:5678")
    oic = ChunkUdp(src, dst)

    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1

    oec2 = nat.translate_outbound(ChunkUdp("192.168.0.2:1234", "5.6.7.9:9000"))
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1
    assert oec2.source_addr() == oec.source_addr()

    iic = nat.translate_inbound(reply_to(oec, dst))
    assert iic.destination_addr() == oic.source_addr()

    mapped = oec.source_addr()
    with pytest.raises(NatError):
        nat.translate_inbound(ChunkUdp(dst, SocketAddr(mapped.ip, mapped.port + 1)))

    other_port = nat.translate_inbound(reply_to(oec, SocketAddr(dst.ip, 7777)))
    assert other_port.destination_addr() == src

    with pytest.raises(NatError):
        nat.translate_inbound(reply_to(oec, SocketAddr.parse(f"6.6.6.6:{dst.port}")))


def test_port_restricted_cone_nat():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_ADDR_PORT_DEPENDENT)
    src = SocketAddr.parse("192.168.0.2:1234")
    dst = SocketAddr.parse("5.6.7.8:5678")
    oic = ChunkUdp(src, dst)

    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1

    nat.translate_outbound(ChunkUdp("192.168.0.2:1234", "5.6.7.9:9000"))
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1

    iic = nat.translate_inbound(reply_to(oec, dst))
    assert iic.destination_addr() == oic.source_addr()

    mapped = oec.source_addr()
    with pytest.raises(NatError):
        nat.translate_inbound(ChunkUdp(dst, SocketAddr(mapped.ip, mapped.port + 1)))

    with pytest.raises(NatError):
        nat.translate_inbound(reply_to(oec, SocketAddr(dst.ip, 7777)))

    with pytest.raises(NatError):
        nat.translate_inbound(reply_to(oec, SocketAddr.parse(f"6.6.6.6:{dst.port}")))


def test_symmetric_nat_addr_dependent_mapping():
    nat = make_nat(EDT.ENDPOINT_ADDR_DEPENDENT, EDT.ENDPOINT_ADDR_DEPENDENT)
    src = SocketAddr.parse("192.168.0.2:1234")
    oec1 = nat.translate_outbound(ChunkUdp(src, "5.6.7.8:5678"))
    oec2 = nat.translate_outbound(ChunkUdp(src, "5.6.7.100:5678"))
    oec3 = nat.translate_outbound(ChunkUdp(src, "5.6.7.8:6000"))

    assert nat.outbound_map_len() == 2
    assert nat.inbound_map_len() == 2
    assert oec1.source_addr().port != oec2.source_addr().port
    assert oec1.source_addr().port == oec3.source_addr().port


def test_symmetric_nat_port_dependent_mapping():
    nat = make_nat(EDT.ENDPOINT_ADDR_PORT_DEPENDENT, EDT.ENDPOINT_ADDR_PORT_DEPENDENT)
    src = SocketAddr.parse("192.168.0.2:1234")
    oec1 = nat.translate_outbound(ChunkUdp(src, "5.6.7.8:5678"))
    oec2 = nat.translate_outbound(ChunkUdp(src, "5.6.7.100:5678"))
    oec3 = nat.translate_outbound(ChunkUdp(src, "5.6.7.8:6000"))

    assert nat.outbound_map_len() == 3
    assert nat.inbound_map_len() == 3
    assert oec1.source_addr().port != oec2.source_addr().port
    assert oec1.source_addr().port != oec3.source_addr().port


def test_mapping_timeout_refresh_on_outbound():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT, life_time=0.2)
    oic = ChunkUdp("192.168.0.2:1234", "5.6.7.8:5678")

    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1
    mapped = str(oec.source_addr())

    time.sleep(0.005)
    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1
    assert str(oec.source_addr()) == mapped

    time.sleep(0.225)
    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1
    assert str(oec.source_addr()) != mapped


def test_mapping_timeout_outbound_detects_timeout():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT, life_time=0.1)
    dst = SocketAddr.parse("5.6.7.8:5678")
    oec = nat.translate_outbound(ChunkUdp("192.168.0.2:1234", dst))
    assert nat.outbound_map_len() == 1
    assert nat.inbound_map_len() == 1

    time.sleep(0.125)

    with pytest.raises(NatError):
        nat.translate_inbound(reply_to(oec, dst))
    assert nat.outbound_map_len() == 0
    assert nat.inbound_map_len() == 0


def test_nat1to1_one_mapping():
    nat = NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(mode=NatMode.NAT_1TO1),
            mapped_ips=[DEMO_IP],
            local_ips=[ipaddress.ip_address("10.0.0.1")],
        )
    )
    src = SocketAddr.parse("10.0.0.1:1234")
    dst = SocketAddr.parse("5.6.7.8:5678")
    oic = ChunkUdp(src, dst)

    oec = nat.translate_outbound(oic)
    assert nat.outbound_map_len() == 0
    assert nat.inbound_map_len() == 0
    assert str(oec.source_addr()) == "1.2.3.4:1234"

    iic = nat.translate_inbound(reply_to(oec, dst))
    assert iic.destination_addr() == oic.source_addr()


def test_nat1to1_more_mapping():
    nat = NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(mode=NatMode.NAT_1TO1),
            mapped_ips=[DEMO_IP, ipaddress.ip_address("1.2.3.5")],
            local_ips=[ipaddress.ip_address("10.0.0.1"), ipaddress.ip_address("10.0.0.2")],
        )
    )
    after = nat.translate_outbound(ChunkUdp("10.0.0.1:1234", "5.6.7.8:5678"))
    assert str(after.source_addr()) == "1.2.3.4:1234"

    after = nat.translate_outbound(ChunkUdp("10.0.0.2:1234", "5.6.7.8:5678"))
    assert str(after.source_addr()) == "1.2.3.5:1234"

    after = nat.translate_inbound(ChunkUdp("5.6.7.8:5678", f"{DEMO_IP}:2525"))
    assert str(after.destination_addr()) == "10.0.0.1:2525"

    after = nat.translate_inbound(ChunkUdp("5.6.7.8:5678", "1.2.3.5:9847"))
    assert str(after.destination_addr()) == "10.0.0.2:9847"


def test_nat1to1_forces_behaviour():
    nat = NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(
                mode=NatMode.NAT_1TO1,
                mapping_behavior=EDT.ENDPOINT_ADDR_PORT_DEPENDENT,
                mapping_life_time=5.0,
            ),
            mapped_ips=[DEMO_IP],
            local_ips=[ipaddress.ip_address("10.0.0.1")],
        )
    )
    assert nat.nat_type.mapping_behavior is EDT.ENDPOINT_INDEPENDENT
    assert nat.nat_type.port_preservation is True
    assert nat.nat_type.mapping_life_time == 0.0


def test_nat1to1_failure():
    with pytest.raises(NatError):
        NetworkAddressTranslator(NatConfig(nat_type=NatType(mode=NatMode.NAT_1TO1)))

    with pytest.raises(NatError):
        NetworkAddressTranslator(
            NatConfig(
                nat_type=NatType(mode=NatMode.NAT_1TO1),
                mapped_ips=[DEMO_IP, ipaddress.ip_address("1.2.3.5")],
                local_ips=[ipaddress.ip_address("10.0.0.1")],
            )
        )

    nat = NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(mode=NatMode.NAT_1TO1),
            mapped_ips=[DEMO_IP],
            local_ips=[ipaddress.ip_address("10.0.0.1")],
        )
    )
    assert nat.translate_outbound(ChunkUdp("10.0.0.2:1234", "5.6.7.8:5678")) is None

    with pytest.raises(NatError):
        nat.translate_inbound(ChunkUdp("5.6.7.8:5678", "10.0.0.2:1234"))


def test_paired_ip_lookups():
    nat = NetworkAddressTranslator(
        NatConfig(
            nat_type=NatType(mode=NatMode.NAT_1TO1),
            mapped_ips=[DEMO_IP],
            local_ips=[ipaddress.ip_address("10.0.0.1")],
        )
    )
    assert nat.get_paired_mapped_ip("10.0.0.1") == DEMO_IP
    assert nat.get_paired_local_ip(DEMO_IP) == ipaddress.ip_address("10.0.0.1")
    assert nat.get_paired_mapped_ip("10.0.0.9") is None
    assert nat.get_paired_local_ip("9.9.9.9") is None


def test_non_udp_is_rejected():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT)
    tcp = ChunkTcp("192.168.0.2:1234", "5.6.7.8:5678", TcpFlag.SYN)
    with pytest.raises(NatError):
        nat.translate_outbound(tcp)
    with pytest.raises(NatError):
        nat.translate_inbound(tcp)


def test_outbound_does_not_modify_original():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT)
    oic = ChunkUdp("192.168.0.2:1234", "5.6.7.8:5678")
    oec = nat.translate_outbound(oic)
    assert str(oic.source_addr()) == "192.168.0.2:1234"
    assert oec.tag == oic.tag


def test_find_mappings_by_key():
    nat = make_nat(EDT.ENDPOINT_INDEPENDENT, EDT.ENDPOINT_INDEPENDENT)
    nat.translate_outbound(ChunkUdp("192.168.0.2:1234", "5.6.7.8:5678"))
    out = nat.find_outbound_mapping("udp:192.168.0.2:1234:")
    assert out is not None and out.mapped == "1.2.3.4:49152"
    inbound = nat.find_inbound_mapping("udp:1.2.3.4:49152")
    assert inbound is not None and inbound.local == "192.168.0.2:1234"
    assert nat.find_outbound_mapping("udp:nowhere") is None
    assert nat.find_inbound_mapping("udp:nowhere") is None