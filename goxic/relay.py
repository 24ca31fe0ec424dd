"""Relaying of proxy streams through a chain of peers to an exit node."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import socket
from typing import Any, Callable, Iterable, Sequence

from .model import Node, Stream
from .peers import addr_info_from_string

log = logging.getLogger(__name__)

SERVICE_NAME = "goxic-relay"
VERSION = "1.0.0"
PROTOCOL_PREFIX = "/goxic-proxy/relay/"
DIAL_TIMEOUT = 30.0
KEEPALIVE_PERIOD = 30
_CHUNK = 32 * 1024

_NORMAL_PATTERNS = (
    "use of closed network connection",
    "connection reset by peer",
    "stream reset",
    "broken pipe",
    "EOF",
)


class RelayError(Exception):
    """Raised when a relay request is malformed or cannot be completed."""


def is_normal_connection_closure(error: BaseException | None) -> bool:
    """Tell whether an error only means the other side went away."""
    if error is None:
        return True
    if isinstance(error, (EOFError, ConnectionResetError, BrokenPipeError)):
        return True
    text = str(error)
    return any(pattern in text for pattern in _NORMAL_PATTERNS)


def build_protocol_id(version: str, proxy_id: str, next_peers: Iterable[str]) -> str:
    """Build the relay protocol id naming the proxy and the remaining hops."""
    protocol_id = f"{PROTOCOL_PREFIX}{version}/proxy/{proxy_id}"
    return protocol_id + "".join(f"/next/{peer}" for peer in next_peers if peer)


async def read_target_addr(stream: Stream) -> str:
    """Read a length-prefixed target address from a stream."""
    try:
        prefix = await stream.read(1)
    except Exception as exc:
        raise RelayError(f"failed to read address length: {exc}") from exc
    if not prefix:
        raise RelayError("failed to read address length: EOF")
    length = prefix[0]
    if length == 0:
        raise RelayError(f"invalid address length: {length}")
    try:
        data = await stream.readexactly(length)
    except (asyncio.IncompleteReadError, OSError) as exc:
        raise RelayError(f"failed to read target address: {exc}") from exc
    return data.decode("utf-8", errors="replace")


async def open_relay(node: Node, proxy_id: str, relay_peers: Sequence[str]) -> Stream:
    """Open a relay stream to the first peer, routed through the rest."""
    if not relay_peers:
        raise RelayError("no relay peers specified")
    first = relay_peers[0]
    protocol_id = build_protocol_id(VERSION, proxy_id, relay_peers[1:])
    log.info("Opening relay stream to %s with protocol: %s", first, protocol_id)
    try:
        return await node.host.new_stream(first, protocol_id)
    except Exception as exc:
        raise RelayError(f"failed to create relay stream: {exc}") from exc


def _decode_peer(text: str) -> str:
    try:
        return addr_info_from_string(f"/p2p/{text}").id
    except ValueError as exc:
        raise RelayError(f"invalid peer id: {text}") from exc


def _split_host_port(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        if not rest.startswith(":"):
            raise RelayError(f"invalid target address: {address}")
        port_text = rest[1:]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise RelayError(f"invalid target address: {address}")
    try:
        port = int(port_text)
    except ValueError:
        raise RelayError(f"invalid target port in {address}") from None
    return host, port


def _tune_socket(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is None:
        return
    with contextlib.suppress(OSError, AttributeError):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_PERIOD)


class _TcpSide:
    """Stream-like view of a TCP connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def read(self, n: int = -1) -> bytes:
        return await self._reader.read(n)

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def close_write(self) -> None:
        if self._writer.can_write_eof() and not self._writer.is_closing():
            self._writer.write_eof()

    async def close(self) -> None:
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()


async def _pipe(src: Any, dst: Any, label: str) -> BaseException | None:
    error: BaseException | None = None
    try:
        while True:
            data = await src.read(_CHUNK)
            if not data:
                break
            await dst.write(data)
    except Exception as exc:
        error = exc
        if not is_normal_connection_closure(exc):
            log.warning("%s relay error: %s", label, exc)
    finally:
        with contextlib.suppress(Exception):
            await dst.close_write()
    return error


async def _bridge(a: Any, b: Any, forward: str, backward: str) -> None:
    """Copy both ways until one direction ends, then close both sides."""
    tasks = [
        asyncio.ensure_future(_pipe(a, b, forward)),
        asyncio.ensure_future(_pipe(b, a, backward)),
    ]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    error = next(task for task in tasks if task in done).result()
    for side in (b, a):
        with contextlib.suppress(Exception):
            await side.close()
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    if error is not None:
        if not is_normal_connection_closure(error):
            log.warning("Relay completed with error: %s", error)
        raise RelayError(str(error)) from error


class RelayHandler:
    """Handles relay streams: forwards them on, or acts as the exit node."""

    def __init__(self) -> None:
        self._pattern = re.compile(
            r"^/goxic-proxy/relay/([^/]+)/proxy/([^/]+)(?:/next/(.+))?$")

    def protocol(self) -> str:
        return PROTOCOL_PREFIX + VERSION

    def protocol_match(self) -> Callable[[str], bool]:
        """Return a predicate accepting every relay protocol id."""
        return lambda proto: self._pattern.fullmatch(proto) is not None

    async def handle(self, stream: Stream, node: Node) -> None:
        log.info("Relay stream from peer: %s", stream.remote_peer)
        match = self._pattern.fullmatch(stream.protocol)
        if match is None:
            raise RelayError(f"invalid relay protocol: {stream.protocol}")
        version, proxy_id, next_peers = match.group(1), match.group(2), match.group(3) or ""
        log.info("Relay request - Version: %s, ProxyID: %s", version, proxy_id)
        if next_peers:
            await self._forward(stream, node, version, proxy_id, next_peers)
        else:
            await self._exit(stream, proxy_id)

    async def _forward(self, income: Stream, node: Node, version: str,
                       proxy_id: str, next_peers_str: str) -> None:
        next_peers = next_peers_str.split("/next/")
        if not next_peers[0]:
            raise RelayError(f"invalid next peers: {next_peers_str}")
        next_peer = _decode_peer(next_peers[0])
        log.info("Forwarding to next peer: %s", next_peer)
        protocol_id = build_protocol_id(version, proxy_id, next_peers[1:])
        try:
            outcome = await node.host.new_stream(next_peer, protocol_id)
        except Exception as exc:
            raise RelayError(f"failed to create stream to {next_peer}: {exc}") from exc
        try:
            await _bridge(income, outcome, "income -> outcome", "outcome -> income")
        finally:
            with contextlib.suppress(Exception):
                await outcome.close()

    async def _exit(self, stream: Stream, proxy_id: str) -> None:
        log.info("Handling proxy traffic for ID: %s", proxy_id)
        target = await read_target_addr(stream)
        host, port = _split_host_port(target)
        log.info("Exit node connecting to: %s", target)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), DIAL_TIMEOUT)
        except (OSError, asyncio.TimeoutError) as exc:
            raise RelayError(f"failed to connect to target {target}: {exc}") from exc
        _tune_socket(writer)
        log.info("Successfully connected to target: %s", target)
        side = _TcpSide(reader, writer)
        try:
            await _bridge(stream, side, "libp2p -> target", "target -> libp2p")
        finally:
            await side.close()