# rtcnet

An in-process virtual network for testing real-time communication code
without touching real sockets. Everything runs in the calling process. Each
router forwards chunks on a background thread of its own.

It provides:

- **Routers** (`rtcnet.router.Router`). A router forwards chunks between the
  networks attached to it. Minimum delay and jitter are configurable, in
  seconds. It supports chunk filters and nested child routers.
- **NAT** (`rtcnet.nat.NetworkAddressTranslator`). It offers three mapping and
  filtering behaviours: endpoint-independent, address-dependent, and
  address-and-port-dependent. It also has mapping lifetimes and a 1:1 mode.
- **Network stacks** (`rtcnet.net.Net`). A virtual `Net` has `lo0`
  (127.0.0.1/8) and `eth0` interfaces. UDP connections
  (`rtcnet.conn.UdpConn`) can be bound on it or dialled from it.
- A **hostname resolver** (`rtcnet.resolver.Resolver`) that falls back to a
  parent resolver.
- **Replay detectors** (`rtcnet.replay_detector`) for sequence numbers. There
  is a non-wrapping detector (DTLS style) and a wrapping one (SRTP/SRTCP
  style).

Errors are raised as subclasses of `rtcnet.errors.VNetError`, for example
`AddressInUseError`, `BindError`, `NatError` and `RouterStateError`.

## Installation

```
pip install rtcnet
```

## Replay detection

```python
from rtcnet.replay_detector import SlidingWindowDetector

detector = SlidingWindowDetector(window_size=64, max_seq=0xFFFFFFFFFFFF)
if detector.check(42):
    # the packet is not a replay; process it, then
    detector.accept()
```

`WrappedSlidingWindowDetector` works the same way, but it lets the sequence
number wrap around `max_seq`. `NoOpReplayDetector` accepts everything.

## A virtual network

```python
from rtcnet.net import Net, NetConfig
from rtcnet.router import Router, RouterConfig

wan = Router(RouterConfig(cidr="1.2.3.0/24"))
net = Net(NetConfig())
nic = net.get_nic()
wan.add_net(nic)        # assigns 1.2.3.1 to eth0
nic.set_router(wan)
wan.start()

print(net.get_interface("eth0").addrs)   # [IPv4Interface('1.2.3.1/24')]

wan.stop()
```

Routers work as follows:

- To attach a child router, call `parent.add_router(child)` and then
  `child.set_router(parent)`.
- Traffic that leaves the child's subnet passes through the child's NAT. Set
  that NAT up with `RouterConfig(nat_type=NatType(...))`. When no type is
  given, the NAT uses endpoint-independent mapping and
  address-and-port-dependent filtering.
- Each entry of `RouterConfig.static_ips` is either `"<external>"` or
  `"<external>/<local>"`. The second form pairs the two addresses for 1:1
  NAT.
- `Router.add_chunk_filter(fn)` adds a filter. A chunk is dropped when any
  filter returns `False`.
- `Router.add_host(name, ip)` adds a name to the router's resolver.

## UDP connections

```python
from rtcnet.net import Net, NetConfig

net = Net(NetConfig())
vnet = net.get_nic()
conn = vnet.bind("127.0.0.1:0")          # port 0 picks one in 5000-5999
conn.send_to(b"Hello", conn.local_addr())
data, sender = conn.recv_from(1500)
conn.close()
```

Connections behave as follows:

- Loopback traffic is delivered directly.
- Any other traffic needs a router, otherwise `NoRouterLinkedError` is
  raised.
- `dial(use_ipv4, "host:port")` binds a connection and connects it. Host
  names are resolved through the router's resolver.
- `recv_from` blocks until a datagram arrives. After `close()` it raises
  `ConnectionAbortedError`.

## What it does not do

- Only UDP chunks are routed across a NAT. `ChunkTcp` exists, but translating
  it raises `NatError`.
- The `hair_pining` option of `NatType` is stored but has no effect.
- `Net()` without a config is not virtual:
  - it lists the host's interfaces (through `psutil`);
  - `bind`/`dial` return plain `socket.socket` objects;
  - `get_nic()` raises `VNetError`.
- There is no command-line tool. The package is a library only.

## Running the tests

```
pip install -e ".[test]"
pytest
```