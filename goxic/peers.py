"""Peer address records parsed from multiaddr strings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

_B58 = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


@dataclass(frozen=True)
class AddrInfo:
    """A peer identifier with the transport addresses it is reachable at."""

    id: str
    addrs: tuple[str, ...] = ()


def addr_info_from_string(text: str) -> AddrInfo:
    """Parse an address ending in /p2p/<peer id>."""
    parts = text.split("/")
    if len(parts) < 3 or parts[0] != "":
        raise ValueError(f"invalid multiaddr {text!r}")
    protocol, ident = parts[-2], parts[-1]
    if protocol not in ("p2p", "ipfs"):
        raise ValueError(f"multiaddr {text!r} has no p2p component")
    if not ident or not set(ident) <= _B58:
        raise ValueError(f"invalid peer id {ident!r}")
    transport = "/".join(parts[:-2])
    return AddrInfo(id=ident, addrs=(transport,) if transport else ())


def str_to_peers(peers: Iterable[str]) -> list[AddrInfo]:
    """Parse every address; any invalid one raises ValueError."""
    return [addr_info_from_string(p) for p in peers]