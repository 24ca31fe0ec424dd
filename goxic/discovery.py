"""Discovery of exit-capable server nodes, load tracking and server selection."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from .config import SelectionStrategy
from .model import Node
from .relay import PROTOCOL_PREFIX

log = logging.getLogger(__name__)

MAX_FAILURES = 3
BLACKLIST_TIME = 10 * 60.0
SERVER_CONNECT_TIMEOUT = 5.0
PROTOCOL_SETTLE_DELAY = 0.1


class NoServersError(LookupError):
    """Raised when no server node is available for selection."""


@dataclass
class ServerLoadInfo:
    """Load information tracked for one server."""

    peer_id: str
    active_conns: int = 0
    total_conns: int = 0
    last_used: Optional[float] = None
    response_time: float = 0.0


@dataclass
class PeerFailureInfo:
    """Connection failure history of one peer."""

    peer_id: str
    failure_count: int = 0
    last_failure: Optional[float] = None
    last_success: Optional[float] = None


class ServerDiscovery:
    """Finds server nodes advertising the network service and picks one to use.

    Used on demand by clients, or started as a node handler on servers, where
    it periodically refreshes a mesh of exit-capable servers.
    """

    def __init__(self, node: Node, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.node = node
        self.server_peers: list[Any] = []
        self.update_interval = float(node.config.discovery.update_interval_sec)
        self.max_failures = MAX_FAILURES
        self.blacklist_time = BLACKLIST_TIME
        self.protocol_settle_delay = PROTOCOL_SETTLE_DELAY
        self.started = False
        self._clock = clock
        self._last_update: Optional[float] = None
        self._loads: dict[str, ServerLoadInfo] = {}
        self._failures: dict[str, PeerFailureInfo] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def _host(self):
        return self.node.host

    @property
    def _config(self):
        return self.node.config

    def _is_stale(self) -> bool:
        return self._last_update is None or self._clock() - self._last_update > self.update_interval

    async def get_available_servers(self) -> list[Any]:
        """Return connected servers from the cache, refreshing it when stale."""
        if self._is_stale():
            try:
                if self.started:
                    await self.refresh_server_list()
                else:
                    await self.refresh_server_list_for_client()
            except Exception as exc:
                log.warning("Failed to refresh server list: %s", exc)

        available = []
        for server in self.server_peers:
            if server.id == self._host.id:
                continue
            if not self._host.is_connected(server.id):
                log.info("Peer %s no longer connected, skipping", server.id)
                continue
            if self.started and not self.is_exit_capable_server(server.id):
                log.info("Server %s no longer supports relay protocol, filtering out", server.id)
                continue
            available.append(server)

        log.info("GetAvailableServers (%s): returning %d peers from %d cached",
                 "server mesh" if self.started else "client mode",
                 len(available), len(self.server_peers))
        return available

    async def select_server(self) -> Any:
        """Pick a server with the configured strategy and track the connection."""
        servers = await self.get_available_servers()
        if not servers:
            raise NoServersError("no available server nodes found")

        strategy = self._config.discovery.selection_strategy
        log.info("Selecting server using strategy: %s from %d available servers",
                 strategy, len(servers))
        if strategy == SelectionStrategy.RANDOM.value:
            selected = random.choice(servers)
        elif strategy == SelectionStrategy.LOAD_BALANCE.value:
            selected = self._least_loaded(servers)
        elif strategy == SelectionStrategy.PREFERRED.value:
            selected = self._preferred(servers)
        else:
            if strategy != SelectionStrategy.FIRST.value:
                log.warning("Unknown selection strategy '%s', falling back to first", strategy)
            selected = servers[0]
        self.track_connection(selected.id)
        log.info("Selected server: %s", selected.id)
        return selected

    def _least_loaded(self, servers: list[Any]) -> Any:
        def load(server: Any) -> int:
            info = self._loads.get(server.id)
            return info.active_conns if info else 0

        return min(servers, key=load)

    def _preferred(self, servers: list[Any]) -> Any:
        preferred_ids = set(self._config.discovery.preferred_exit_nodes or ())
        preferred = [s for s in servers if str(s.id) in preferred_ids]
        if preferred:
            log.info("Found %d preferred servers available", len(preferred))
            return self._least_loaded(preferred)
        log.info("No preferred servers available, falling back to load balancing")
        return self._least_loaded(servers)

    def track_connection(self, peer_id: str) -> None:
        """Count a new connection to a server."""
        info = self._loads.get(peer_id)
        if info is None:
            info = self._loads[peer_id] = ServerLoadInfo(peer_id=peer_id)
        info.active_conns += 1
        info.total_conns += 1
        info.last_used = self._clock()

    def release_connection(self, peer_id: str) -> None:
        """Count a closed connection to a server; never goes below zero."""
        info = self._loads.get(peer_id)
        if info is not None:
            info.active_conns = max(0, info.active_conns - 1)

    def get_server_load(self, peer_id: str) -> Optional[ServerLoadInfo]:
        """Return a copy of the load information for a server, if tracked."""
        info = self._loads.get(peer_id)
        return dataclasses.replace(info) if info is not None else None

    async def _discovered(self) -> AsyncIterator[Any]:
        timeout = float(self._config.discovery.query_timeout_sec)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        iterator = self._host.find_peers(self._config.network.name, timeout=timeout).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    info = await asyncio.wait_for(iterator.__anext__(), remaining)
                except (StopAsyncIteration, asyncio.TimeoutError):
                    return
                yield info
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _try_connect(self, info: Any, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._host.connect(info, timeout=timeout), timeout)
        except Exception as exc:
            log.info("Failed to connect to peer %s: %s", info.id, exc)
            return False
        return True

    async def refresh_server_list(self) -> None:
        """Rebuild the cache with exit-capable servers found in the network."""
        new_servers: list[Any] = []
        max_servers = self._config.discovery.max_servers
        connected = filtered = skipped = 0

        async with contextlib.aclosing(self._discovered()) as peers:
            async for info in peers:
                if info.id == self._host.id:
                    continue
                if len(new_servers) >= max_servers:
                    break
                if self.is_blacklisted(info.id):
                    skipped += 1
                    continue
                just_connected = False
                if not self._host.is_connected(info.id):
                    log.info("Attempting to connect to discovered peer %s...", info.id)
                    if not await self._try_connect(info, SERVER_CONNECT_TIMEOUT):
                        self.record_connection_failure(info.id)
                        continue
                    self.record_connection_success(info.id)
                    connected += 1
                    just_connected = True

                await asyncio.sleep(self.protocol_settle_delay)

                if not self.is_exit_capable_server(info.id):
                    log.info("Peer %s is not an exit-capable server, disconnecting", info.id)
                    filtered += 1
                    if just_connected:
                        await self._host.close_peer(info.id)
                    continue
                new_servers.append(info)

        self.server_peers = new_servers
        self._last_update = self._clock()
        log.info("Server discovery complete: %d exit-capable servers found, %d non-servers "
                 "filtered out, %d successful connections, %d blacklisted peers skipped",
                 len(new_servers), filtered, connected, skipped)

    async def refresh_server_list_for_client(self) -> None:
        """Rebuild the cache with every reachable peer, without filtering."""
        new_servers: list[Any] = []
        max_servers = self._config.discovery.max_servers
        timeout = float(self._config.network.connection_timeout)

        async with contextlib.aclosing(self._discovered()) as peers:
            async for info in peers:
                if info.id == self._host.id:
                    continue
                if len(new_servers) >= max_servers:
                    break
                if not self._host.is_connected(info.id):
                    if not await self._try_connect(info, timeout):
                        continue
                    log.info("Client: Connected to peer %s", info.id)
                new_servers.append(info)

        self.server_peers = new_servers
        self._last_update = self._clock()
        log.info("Client discovery complete: %d peers found", len(new_servers))

    async def start(self, node: Node) -> None:
        """Start periodic server-to-server discovery."""
        if self.started:
            raise RuntimeError("ServerDiscovery already started")
        self.started = True
        log.info("Starting server-to-server discovery with interval: %ss, max servers: %d",
                 self.update_interval, self._config.discovery.max_servers)
        self.start_periodic_discovery()

    async def stop(self) -> None:
        """Stop periodic discovery; does nothing when not started."""
        if not self.started:
            return
        self.started = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        log.info("Stopped server-to-server discovery")

    def start_periodic_discovery(self) -> asyncio.Task:
        """Run discovery now and then every update interval in the background."""

        async def run() -> None:
            try:
                await self.refresh_server_list()
            except Exception as exc:
                log.warning("Initial server discovery failed: %s", exc)
            while True:
                await asyncio.sleep(self.update_interval)
                try:
                    await self.refresh_server_list()
                except Exception as exc:
                    log.warning("Periodic server discovery failed: %s", exc)
                else:
                    log.info("Server discovery update: %d server connections active",
                             self.connected_server_count())

        self._task = asyncio.ensure_future(run())
        return self._task

    def connected_server_count(self) -> int:
        """Number of cached servers, other than this node, that are connected."""
        return sum(1 for s in self.server_peers
                   if s.id != self._host.id and self._host.is_connected(s.id))

    def is_exit_capable_server(self, peer_id: str) -> bool:
        """Tell whether a peer advertises the relay protocol."""
        try:
            protocols = self._host.protocols(peer_id)
        except Exception as exc:
            log.info("Failed to get protocols for peer %s: %s", peer_id, exc)
            return False
        return any(str(p).startswith(PROTOCOL_PREFIX) for p in protocols)

    def is_blacklisted(self, peer_id: str) -> bool:
        """Tell whether a peer failed too often recently; expired entries are reset."""
        info = self._failures.get(peer_id)
        if info is None or info.failure_count < self.max_failures:
            return False
        elapsed = self._clock() - (info.last_failure or 0.0)
        if elapsed < self.blacklist_time:
            log.info("Peer %s is blacklisted: %d failures", peer_id, info.failure_count)
            return True
        log.info("Blacklist expired for peer %s, resetting failure count", peer_id)
        info.failure_count = 0
        return False

    def record_connection_failure(self, peer_id: str) -> None:
        info = self._failures.setdefault(peer_id, PeerFailureInfo(peer_id=peer_id))
        info.failure_count += 1
        info.last_failure = self._clock()
        log.info("Recorded connection failure for peer %s (total failures: %d)",
                 peer_id, info.failure_count)

    def record_connection_success(self, peer_id: str) -> None:
        info = self._failures.setdefault(peer_id, PeerFailureInfo(peer_id=peer_id))
        info.failure_count = 0
        info.last_success = self._clock()