"""Application configuration: loading, defaults, validation and saving."""

from __future__ import annotations

import ipaddress
import json
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ConfigError(ValueError):
    """Raised when a configuration cannot be read, parsed or validated."""


class SelectionStrategy(str, Enum):
    """How exit nodes are selected."""

    FIRST = "first"
    RANDOM = "random"
    LOAD_BALANCE = "load_balance"
    PREFERRED = "preferred"


def _field(key: str, kind: type, default: Any = None):
    if kind is list:
        return field(default=default, metadata={"json": key, "kind": kind})
    return field(default=kind() if default is None else default, metadata={"json": key, "kind": kind})


def _check(kind: type, key: str, value: Any) -> Any:
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"field {key!r} must be an integer")
    elif kind is bool:
        if not isinstance(value, bool):
            raise ConfigError(f"field {key!r} must be a boolean")
    elif kind is str:
        if not isinstance(value, str):
            raise ConfigError(f"field {key!r} must be a string")
    elif kind is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"field {key!r} must be a list of strings")
        return list(value)
    return value


class _Section:
    @classmethod
    def from_dict(cls, data: Any):
        section = cls()
        if data is None:
            return section
        if not isinstance(data, dict):
            raise ConfigError(f"section for {cls.__name__} must be an object")
        for f in fields(cls):
            key = f.metadata["json"]
            value = data.get(key)
            if value is not None:
                setattr(section, f.name, _check(f.metadata["kind"], key, value))
        return section

    def to_dict(self) -> dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            result[f.metadata["json"]] = value
        return result


@dataclass
class NetworkConfig(_Section):
    port: int = _field("port", int)
    bootstrap_nodes: list[str] | None = _field("boostrapNodes", list)
    name: str = _field("name", str)
    max_connections: int = _field("maxConnections", int)
    min_connections: int = _field("minConnections", int)
    connection_timeout: int = _field("connectionTimeout", int)
    dial_timeout: int = _field("dialTimeout", int)
    enable_ipv6: bool = _field("enableIPv6", bool)
    enable_auto_relay: bool = _field("enableAutoRelay", bool)
    enable_hole_punching: bool = _field("enableHolePunching", bool)


@dataclass
class Socks5Config(_Section):
    enabled: bool = _field("enabled", bool)
    port: int = _field("port", int)
    bind_address: str = _field("bindAddress", str)
    allowed_networks: list[str] | None = _field("allowedNetworks", list)
    max_connections: int = _field("maxConnections", int)
    connection_timeout: int = _field("connectionTimeout", int)


@dataclass
class RelayConfig(_Section):
    enabled: bool = _field("enabled", bool)
    max_hops: int = _field("maxHops", int)
    bandwidth_limit_mb: int = _field("bandwidthLimitMB", int)
    buffer_size: int = _field("bufferSize", int)


@dataclass
class DiscoveryConfig(_Section):
    update_interval_sec: int = _field("updateIntervalSec", int)
    advertise_interval_sec: int = _field("advertiseIntervalSec", int)
    query_timeout_sec: int = _field("queryTimeoutSec", int)
    cache_validity_min: int = _field("cacheValidityMin", int)
    max_servers: int = _field("maxServers", int)
    selection_strategy: str = _field("selectionStrategy", str)
    preferred_exit_nodes: list[str] | None = _field("preferredExitNodes", list)


@dataclass
class LoggingConfig(_Section):
    level: str = _field("level", str)
    format: str = _field("format", str)
    output_file: str = _field("outputFile", str)
    max_size_mb: int = _field("maxSizeMB", int)
    max_backups: int = _field("maxBackups", int)


_SECTIONS = {
    "network": ("network", NetworkConfig),
    "socks5": ("socks5", Socks5Config),
    "relay": ("relay", RelayConfig),
    "discovery": ("discovery", DiscoveryConfig),
    "logging": ("logging", LoggingConfig),
}
_TOP = {"mode": "mode", "data_dir": "dataDir", "config_dir": "configDir"}
_LOG_LEVELS = ("debug", "info", "warn", "error")


def _valid_port(port: int) -> bool:
    return 1024 <= port <= 65535


@dataclass
class Config:
    """The complete application configuration."""

    mode: str = ""
    data_dir: str = ""
    config_dir: str = ""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    socks5: Socks5Config = field(default_factory=Socks5Config)
    relay: RelayConfig = field(default_factory=RelayConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        """Build a configuration from decoded JSON; missing fields stay empty."""
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")
        config = cls()
        for attr, key in _TOP.items():
            value = data.get(key)
            if value is not None:
                setattr(config, attr, _check(str, key, value))
        for attr, (key, section_cls) in _SECTIONS.items():
            setattr(config, attr, section_cls.from_dict(data.get(key)))
        return config

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {key: getattr(self, attr) for attr, key in _TOP.items()}
        for attr, (key, _) in _SECTIONS.items():
            result[key] = getattr(self, attr).to_dict()
        return result

    def apply_defaults(self) -> None:
        """Fill unset values with the defaults and adjust for the mode."""
        d = default_config()
        n, dn = self.network, d.network
        for name in ("port", "name", "max_connections", "min_connections",
                     "connection_timeout", "dial_timeout"):
            if not getattr(n, name):
                setattr(n, name, getattr(dn, name))
        s, ds = self.socks5, d.socks5
        for name in ("port", "bind_address", "allowed_networks", "max_connections",
                     "connection_timeout"):
            if not getattr(s, name):
                setattr(s, name, getattr(ds, name))
        for name in ("max_hops", "buffer_size"):
            if not getattr(self.relay, name):
                setattr(self.relay, name, getattr(d.relay, name))
        disc, dd = self.discovery, d.discovery
        for name in ("update_interval_sec", "advertise_interval_sec", "query_timeout_sec",
                     "cache_validity_min", "max_servers", "selection_strategy"):
            if not getattr(disc, name):
                setattr(disc, name, getattr(dd, name))
        if disc.preferred_exit_nodes is None:
            disc.preferred_exit_nodes = dd.preferred_exit_nodes
        for name in ("level", "format", "max_size_mb", "max_backups"):
            if not getattr(self.logging, name):
                setattr(self.logging, name, getattr(d.logging, name))
        for name in ("mode", "data_dir", "config_dir"):
            if not getattr(self, name):
                setattr(self, name, getattr(d, name))
        if self.mode == "server":
            self.socks5.enabled = False
        elif self.mode == "client":
            self.socks5.enabled = True

    def validate(self) -> None:
        """Check the configuration; normalise the data directory and log level."""
        if self.mode not in ("client", "server", "bootstrap"):
            raise ConfigError(
                f"invalid mode '{self.mode}', must be 'client', 'server', or 'bootstrap'")
        if not self.network.bootstrap_nodes:
            raise ConfigError("network.boostrapNodes is required for DHT bootstrap")
        if not self.network.name:
            raise ConfigError("network.name is required for service discovery")
        if not _valid_port(self.network.port):
            raise ConfigError("network.port must be between 1024 and 65535")
        if self.socks5.enabled and not _valid_port(self.socks5.port):
            raise ConfigError("socks5.port must be between 1024 and 65535")
        if self.network.min_connections > self.network.max_connections:
            raise ConfigError(
                f"network.minConnections ({self.network.min_connections}) cannot be greater "
                f"than maxConnections ({self.network.max_connections})")
        if not os.path.isabs(self.data_dir):
            self.data_dir = os.path.abspath(self.data_dir)
        if self.socks5.enabled:
            try:
                ipaddress.ip_address(self.socks5.bind_address)
            except ValueError:
                raise ConfigError(
                    f"invalid socks5.bindAddress '{self.socks5.bind_address}'") from None
            for network in self.socks5.allowed_networks or []:
                try:
                    if "/" not in network:
                        raise ValueError("missing prefix length")
                    ipaddress.ip_network(network, strict=False)
                except ValueError as exc:
                    raise ConfigError(f"invalid allowed network '{network}': {exc}") from None
        level = self.logging.level.lower()
        if level not in _LOG_LEVELS:
            raise ConfigError(
                f"invalid logging.level '{self.logging.level}', must be one of: "
                + ", ".join(_LOG_LEVELS))
        self.logging.level = level
        if self.logging.format not in ("text", "json"):
            raise ConfigError(
                f"invalid logging.format '{self.logging.format}', must be 'text' or 'json'")
        if self.discovery.selection_strategy not in {s.value for s in SelectionStrategy}:
            raise ConfigError(
                f"invalid discovery.selectionStrategy '{self.discovery.selection_strategy}', "
                "must be one of: first, random, load_balance, preferred")
        if (self.discovery.selection_strategy == SelectionStrategy.PREFERRED
                and not self.discovery.preferred_exit_nodes):
            raise ConfigError("discovery.preferredExitNodes cannot be empty when using "
                              "'preferred' selection strategy")

    def save(self, path: str | os.PathLike) -> None:
        """Write the configuration as indented JSON, creating the directory."""
        directory = os.path.dirname(os.fspath(path))
        try:
            if directory not in ("", "."):
                os.makedirs(directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(self.to_dict(), indent=2))
        except OSError as exc:
            raise ConfigError(f"failed to write config file: {exc}") from exc

    def data_path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)

    def is_client_mode(self) -> bool:
        return self.mode == "client"

    def is_server_mode(self) -> bool:
        return self.mode == "server"

    def is_bootstrap_mode(self) -> bool:
        return self.mode == "bootstrap"


def default_config() -> Config:
    """Return a configuration filled with the default values."""
    return Config(
        mode="client",
        data_dir="./data",
        config_dir="./config",
        network=NetworkConfig(
            port=4001, bootstrap_nodes=[], name="goxic-proxy", max_connections=400,
            min_connections=100, connection_timeout=30, dial_timeout=10,
            enable_ipv6=True, enable_auto_relay=True, enable_hole_punching=True),
        socks5=Socks5Config(
            enabled=True, port=1080, bind_address="127.0.0.1",
            allowed_networks=["127.0.0.0/8", "::1/128"], max_connections=100,
            connection_timeout=30),
        relay=RelayConfig(enabled=True, max_hops=3, bandwidth_limit_mb=0, buffer_size=64 * 1024),
        discovery=DiscoveryConfig(
            update_interval_sec=30, advertise_interval_sec=60, query_timeout_sec=10,
            cache_validity_min=10, max_servers=50,
            selection_strategy=SelectionStrategy.LOAD_BALANCE.value, preferred_exit_nodes=[]),
        logging=LoggingConfig(level="info", format="text", output_file="",
                              max_size_mb=100, max_backups=5),
    )


def load_config(path: str | os.PathLike) -> Config:
    """Read, complete and validate a configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise ConfigError(f"failed to open config file {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse config JSON: {exc}") from exc
    config = Config.from_dict(data)
    config.apply_defaults()
    config.validate()
    return config