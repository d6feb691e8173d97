"""In-process virtual networking (routers, NAT, UDP connections, resolver) and sequence replay detectors."""

__version__ = "0.1.0"

__all__ = [
    "chunk",
    "chunk_queue",
    "conn",
    "conn_map",
    "errors",
    "interface",
    "nat",
    "net",
    "replay_detector",
    "resolver",
    "router",
]