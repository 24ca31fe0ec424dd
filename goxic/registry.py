"""Registry of stream protocol handlers and node-level handlers."""

from __future__ import annotations

import logging
import re
from typing import Optional, Protocol

from .model import Node, Stream
from .relay import RelayHandler

log = logging.getLogger(__name__)


class Handler(Protocol):
    """A handler for incoming streams of one protocol pattern."""

    def protocol(self) -> str: ...

    async def handle(self, stream: Stream, node: Node) -> None: ...


class NodeHandler(Protocol):
    """A node-level service, such as a local proxy server."""

    async def start(self, node: Node) -> None: ...

    async def stop(self) -> None: ...


class Registry:
    """Keeps stream handlers by protocol pattern and node handlers in order."""

    def __init__(self) -> None:
        self._stream_handlers: dict[str, Handler] = {}
        self._node_handlers: list[NodeHandler] = []
        self._patterns: dict[str, re.Pattern[str]] = {}

    def register_stream_handler(self, handler: Handler) -> None:
        """Register a stream handler; raises re.error for a bad pattern."""
        pattern = handler.protocol()
        self._stream_handlers[pattern] = handler
        self._patterns[pattern] = re.compile(pattern)

    def register_node_handler(self, handler: NodeHandler) -> None:
        self._node_handlers.append(handler)

    def get_stream_handler(self, protocol_id: str) -> Optional[Handler]:
        """Find the handler for a protocol: exact match first, then by pattern."""
        handler = self._stream_handlers.get(protocol_id)
        if handler is not None:
            return handler
        for pattern, regex in self._patterns.items():
            if regex.search(protocol_id) and pattern in self._stream_handlers:
                return self._stream_handlers[pattern]
        return None

    async def start_node_handlers(self, node: Node) -> None:
        """Start node handlers in order, stopping at the first failure."""
        for handler in self._node_handlers:
            await handler.start(node)

    async def stop_node_handlers(self) -> None:
        """Stop node handlers in order, stopping at the first failure."""
        for handler in self._node_handlers:
            await handler.stop()

    def setup_stream_handlers(self, node: Node) -> None:
        """Install every stream handler on the node's host."""
        for pattern, handler in self._stream_handlers.items():
            callback = _make_callback(handler, node)
            if isinstance(handler, RelayHandler):
                node.host.set_stream_handler(pattern, callback, handler.protocol_match())
                log.info("Registered relay protocol with pattern matching: %s", pattern)
            else:
                node.host.set_stream_handler(pattern, callback)
                log.info("Registered exact protocol: %s", pattern)


def _make_callback(handler: Handler, node: Node):
    async def on_stream(stream: Stream) -> None:
        try:
            await handler.handle(stream, node)
        except Exception as exc:
            log.debug("Stream handler failed: %s", exc)
            await stream.reset()
        finally:
            await stream.close()

    return on_stream