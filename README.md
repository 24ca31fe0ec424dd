# goxic

Building blocks for a node in a distributed proxy network. Traffic enters the
network at a client, travels over relay streams through a chain of peers, and
leaves at an exit server that connects to the final destination. This package
provides the configuration, node identity, relay handling, handler registry and
server discovery for such a node, written on top of `asyncio`.

## Installation

```
pip install .
```

## Modules

| Module             | What it holds                                                        |
|--------------------|----------------------------------------------------------------------|
| `goxic.config`     | `Config` and its sections, `default_config`, `load_config`, `ConfigError`, `SelectionStrategy` |
| `goxic.model`      | `Node`, and the `Host`, `Stream` and `HandlerRegistry` interfaces     |
| `goxic.keys`       | Ed25519 node keys: `fetch_private_key`, `marshal_private_key`, `unmarshal_private_key`, `peer_id` |
| `goxic.peers`      | `AddrInfo`, `addr_info_from_string`, `str_to_peers`                   |
| `goxic.relay`      | `RelayHandler`, `open_relay`, `build_protocol_id`, `read_target_addr`, `RelayError` |
| `goxic.registry`   | `Registry` of stream handlers and node handlers                       |
| `goxic.discovery`  | `ServerDiscovery`, `ServerLoadInfo`, `PeerFailureInfo`, `NoServersError` |

## Configuration

A configuration is a JSON document with a `mode` (`client`, `server` or
`bootstrap`), `dataDir`, `configDir` and these sections:

| Section     | Purpose                                                             |
|-------------|---------------------------------------------------------------------|
| `network`   | listening port, `boostrapNodes`, network name, connection limits    |
| `socks5`    | bind address, port, allowed networks, connection limits             |
| `relay`     | whether relaying is enabled, maximum hops, buffer size              |
| `discovery` | refresh intervals, maximum cached servers, selection strategy, preferred exit nodes |
| `logging`   | level (`debug`, `info`, `warn`, `error`), format (`text`, `json`), output file |

```python
from goxic.config import default_config, load_config

config = default_config()
config.network.bootstrap_nodes = ["/ip4/192.0.2.10/tcp/4001/p2p/QmPlaceholderPeer"]
config.save("config.json")

config = load_config("config.json")
print(config.mode, config.network.port, config.is_client_mode())
```

`load_config` reads the file, fills missing values from `default_config()`
(`Config.apply_defaults`) and checks the result (`Config.validate`). In
`server` mode the SOCKS5 section is switched off, in `client` mode it is
switched on. Validation raises `ConfigError` for, among others: an unknown
mode, no bootstrap nodes, a port outside 1024–65535, more minimum than maximum
connections, a bind address or allowed network that does not parse, an unknown
log level or format, an unknown selection strategy, or the `preferred`
strategy without any `preferredExitNodes`. A relative `dataDir` is made
absolute and the log level is lower-cased.

`Config.from_dict` and `Config.to_dict` convert to and from the JSON form;
`Config.data_path(name)` joins a file name onto the data directory.

## Node identity

```python
from goxic.keys import fetch_private_key, peer_id

key = fetch_private_key(config)   # reads or creates <dataDir>/priv.key
print(peer_id(key))
```

Keys are Ed25519. `marshal_private_key` and `unmarshal_private_key` convert
them to and from the key-file encoding; a malformed file raises `KeyError_`.

## Peer addresses

`addr_info_from_string("/ip4/192.0.2.10/tcp/4001/p2p/<peer id>")` returns an
`AddrInfo` with the peer id and its transport address. `str_to_peers` parses a
list of them and raises `ValueError` on the first invalid one.

## Relaying

A relay stream is opened under a protocol id naming the proxy and the hops that
remain:

```python
from goxic.relay import build_protocol_id

build_protocol_id("1.0.0", "proxy-1", ["QmPeerA", "QmPeerB"])
# '/goxic-proxy/relay/1.0.0/proxy/proxy-1/next/QmPeerA/next/QmPeerB'
```

`open_relay(node, proxy_id, relay_peers)` opens such a stream to the first peer
of the chain. `RelayHandler.handle` serves an incoming relay stream: when hops
remain it opens a stream to the next peer and copies data both ways; at the end
of the chain it reads the target address (one length byte, then `host:port`),
connects to it over TCP and copies data both ways until one side finishes.

`Registry` keeps stream handlers by protocol pattern and node-level handlers in
order. `setup_stream_handlers(node)` installs the stream handlers on the node's
host, giving a `RelayHandler` its pattern matcher so every relay protocol id
reaches it; `start_node_handlers` and `stop_node_handlers` start and stop the
node handlers.

## Server discovery

`ServerDiscovery(node)` finds peers advertising the network name, connects to
them and keeps a cache that is refreshed once it is older than
`discovery.updateIntervalSec`. `select_server()` picks one by the configured
strategy:

- `first` – the first available server;
- `random` – any available server;
- `load_balance` – the server with the fewest active connections (the default);
- `preferred` – load balancing among the preferred exit nodes when any are
  available, otherwise among all servers.

It raises `NoServersError` when none is available. `track_connection` and
`release_connection` keep the active-connection counts, and
`get_server_load` returns a copy of them. Started as a node handler
(`await discovery.start(node)`), it refreshes in the background and keeps only
peers that advertise the relay protocol; a peer that fails to connect three
times in a row is skipped for ten minutes.

## What this package does not do

- It has no peer-to-peer transport of its own. `goxic.model.Host` and
  `goxic.model.Stream` describe what a host must offer (connections, streams,
  protocol handlers, peer lookup); you supply an implementation and wrap it in
  a `Node`.
- It has no command-line program and no code that assembles and runs a
  complete node.
- It has no local SOCKS5 proxy server. The `socks5` configuration section is
  loaded and validated, but nothing here listens on it.

## Running the tests

```
pip install .[test]
pytest
```