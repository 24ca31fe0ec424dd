"""Core node model and the interfaces of the peer-to-peer layer it uses."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Protocol

from .config import Config


class Stream(Protocol):
    """A bidirectional byte stream between two peers, opened for one protocol."""

    protocol: str
    remote_peer: str

    async def read(self, n: int = -1) -> bytes: ...

    async def readexactly(self, n: int) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close_write(self) -> None: ...

    async def close(self) -> None: ...

    async def reset(self) -> None: ...


class Host(Protocol):
    """A peer-to-peer host: identity, connections and stream handling."""

    id: str

    def addrs(self) -> list[str]: ...

    def is_connected(self, peer_id: str) -> bool: ...

    async def connect(self, info: Any, timeout: float | None = None) -> None: ...

    async def close_peer(self, peer_id: str) -> None: ...

    def protocols(self, peer_id: str) -> list[str]: ...

    async def new_stream(self, peer_id: str, protocol_id: str) -> Stream: ...

    def set_stream_handler(
        self,
        protocol_id: str,
        handler: Callable[[Stream], Awaitable[None]],
        match: Optional[Callable[[str], bool]] = None,
    ) -> None: ...

    def find_peers(self, namespace: str, timeout: float | None = None) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


class HandlerRegistry(Protocol):
    """What a node needs from its handler registry."""

    async def start_node_handlers(self, node: "Node") -> None: ...

    async def stop_node_handlers(self) -> None: ...

    def setup_stream_handlers(self, node: "Node") -> None: ...


@dataclass
class Node:
    """A running node: its host, configuration, handlers and storage."""

    host: Host
    config: Config
    registry: Optional[HandlerRegistry] = None
    store: Any = None
    bootstrap_peers: Iterable[Any] = ()

    async def close(self) -> None:
        """Close the host and then the store, if any."""
        if self.host is not None:
            await self.host.close()
        if self.store is not None:
            result = self.store.close()
            if inspect.isawaitable(result):
                await result