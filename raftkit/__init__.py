"""Building blocks for Raft consensus: log stores, a log cache, futures, snapshots, observers and transports."""

__version__ = "0.1.0"

__all__ = [
    "future",
    "inmem_snapshot",
    "inmem_transport",
    "log",
    "log_cache",
    "messages",
    "net_transport",
    "observer",
    "store",
    "wire",
]