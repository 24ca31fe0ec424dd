import re

import pytest

from goxic.config import default_config
from goxic.model import Node
from goxic.registry import Registry
from goxic.relay import VERSION, RelayHandler


class FakeStream:
    def __init__(self, protocol=""):
        self.protocol = protocol
        self.remote_peer = "QmRemote"
        self.closed = False
        self.was_reset = False

    async def read(self, n=-1):
        return b""

    async def readexactly(self, n):
        raise EOFError

    async def write(self, data):
        pass

    async def close_write(self):
        pass

    async def close(self):
        self.closed = True

    async def reset(self):
        self.was_reset = True


class FakeHost:
    id = "QmSelf"

    def __init__(self):
        self.handlers = {}

    def set_stream_handler(self, protocol_id, handler, match=None):
        self.handlers[protocol_id] = (handler, match)

    async def close(self):
        pass


class DummyHandler:
    def __init__(self, pattern, fail=False):
        self._pattern = pattern
        self.fail = fail
        self.handled = []

    def protocol(self):
        return self._pattern

    async def handle(self, stream, node):
        self.handled.append(stream)
        if self.fail:
            raise RuntimeError("boom")


class DummyNodeHandler:
    def __init__(self, name, events, fail=False):
        self.name = name
        self.events = events
        self.fail = fail

    async def start(self, node):
        if self.fail:
            raise RuntimeError("start failed")
        self.events.append(("start", self.name))

    async def stop(self):
        if self.fail:
            raise RuntimeError("stop failed")
        self.events.append(("stop", self.name))


def make_node():
    return Node(host=FakeHost(), config=default_config())


def test_exact_match():
    registry = Registry()
    handler = DummyHandler("/echo/1.0")
    registry.register_stream_handler(handler)
    assert registry.get_stream_handler("/echo/1.0") is handler


def test_pattern_match_for_relay():
    registry = Registry()
    relay = RelayHandler()
    registry.register_stream_handler(relay)
    assert registry.get_stream_handler(f"/goxic-proxy/relay/{VERSION}/proxy/x") is relay


def test_unknown_protocol():
    registry = Registry()
    registry.register_stream_handler(DummyHandler("/echo/1.0"))
    assert registry.get_stream_handler("/chat/2.0") is None


def test_invalid_pattern_raises():
    registry = Registry()
    with pytest.raises(re.error):
        registry.register_stream_handler(DummyHandler("/bad/("))


@pytest.mark.asyncio
async def test_node_handlers_start_and_stop_in_order():
    events = []
    registry = Registry()
    registry.register_node_handler(DummyNodeHandler("a", events))
    registry.register_node_handler(DummyNodeHandler("b", events))
    node = make_node()
    await registry.start_node_handlers(node)
    await registry.stop_node_handlers()
    assert events == [("start", "a"), ("start", "b"), ("stop", "a"), ("stop", "b")]


@pytest.mark.asyncio
async def test_start_stops_at_first_failure():
    events = []
    registry = Registry()
    registry.register_node_handler(DummyNodeHandler("a", events))
    registry.register_node_handler(DummyNodeHandler("b", events, fail=True))
    registry.register_node_handler(DummyNodeHandler("c", events))
    with pytest.raises(RuntimeError, match="start failed"):
        await registry.start_node_handlers(make_node())
    assert events == [("start", "a")]


def test_setup_registers_with_host():
    registry = Registry()
    relay = RelayHandler()
    echo = DummyHandler("/echo/1.0")
    registry.register_stream_handler(relay)
    registry.register_stream_handler(echo)
    node = make_node()
    registry.setup_stream_handlers(node)
    assert set(node.host.handlers) == {relay.protocol(), "/echo/1.0"}
    assert node.host.handlers["/echo/1.0"][1] is None
    match = node.host.handlers[relay.protocol()][1]
    assert match(f"/goxic-proxy/relay/{VERSION}/proxy/p1") is True


@pytest.mark.asyncio
async def test_installed_callback_resets_on_failure():
    registry = Registry()
    handler = DummyHandler("/echo/1.0", fail=True)
    registry.register_stream_handler(handler)
    node = make_node()
    registry.setup_stream_handlers(node)
    stream = FakeStream("/echo/1.0")
    await node.host.handlers["/echo/1.0"][0](stream)
    assert handler.handled == [stream]
    assert stream.was_reset and stream.closed


@pytest.mark.asyncio
async def test_installed_callback_closes_on_success():
    registry = Registry()
    handler = DummyHandler("/echo/1.0")
    registry.register_stream_handler(handler)
    node = make_node()
    registry.setup_stream_handlers(node)
    stream = FakeStream("/echo/1.0")
    await node.host.handlers["/echo/1.0"][0](stream)
    assert stream.closed and not stream.was_reset