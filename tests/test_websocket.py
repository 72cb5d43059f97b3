import asyncio
import ipaddress
from dataclasses import dataclass

import pytest

from linkagg.netutil import Direction, IpVersion
from linkagg.websocket import (
    IncomingWebSocketLinkTag,
    OutgoingWebSocketLinkTag,
    WebSocketAcceptor,
    WebSocketConnector,
)

LOCALHOST = ipaddress.IPv4Address("127.0.0.1")


@dataclass
class _Link:
    tag: object
    direction: Direction
    remote_user_data: bytes


async def _start_server(acceptor, path="/agg", protocols=()):
    server = await acceptor.serve("127.0.0.1", 0, path, protocols)
    port = server.sockets[0].getsockname()[1]
    return server, port


async def _stop(server, acceptor, *tasks):
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    acceptor.close()
    server.close()
    await server.wait_closed()


def _local_connector(url):
    connector = WebSocketConnector.unresolved([url])
    connector.multi_interface = False
    return connector


def test_unresolved_adds_root_path():
    connector = WebSocketConnector.unresolved(["ws://127.0.0.1:9000"])
    assert connector.urls == ["ws://127.0.0.1:9000/"]


def test_unresolved_keeps_path():
    connector = WebSocketConnector.unresolved(["wss://example.com/agg"])
    assert connector.urls == ["wss://example.com/agg"]


@pytest.mark.parametrize(
    "urls, message",
    [
        ([], "at least one URL"),
        (["http://example.com/"], "scheme"),
        (["example.com"], "host"),
        (["ws://example.com:99999/"], "invalid URL"),
    ],
)
def test_unresolved_rejects_invalid(urls, message):
    with pytest.raises(ValueError, match=message):
        WebSocketConnector.unresolved(urls)


def test_connector_str():
    one = WebSocketConnector.unresolved(["ws://example.com/a"])
    two = WebSocketConnector.unresolved(["ws://example.com/a", "wss://example.com/b"])
    assert str(one) == "ws://example.com/a"
    assert str(two) == "[ws://example.com/a, wss://example.com/b]"


def test_outgoing_tag_properties():
    url = "ws://127.0.0.1:8080/"
    tag = OutgoingWebSocketLinkTag("eth0", ("127.0.0.1", 8080), url, False)
    assert tag.transport_name() == "websocket"
    assert tag.user_data() == b"eth0"
    assert tag.direction is Direction.OUTGOING
    assert tag.remote == (LOCALHOST, 8080)
    assert str(tag) == "eth0 -> 127.0.0.1:8080 (ws://127.0.0.1:8080/)"


def test_outgoing_tag_without_interface():
    tag = OutgoingWebSocketLinkTag(None, ("::1", 80), "ws://[::1]/", False)
    assert tag.user_data() == b""
    assert str(tag).startswith(" -> ")
    assert "(ws://[::1]/)" in str(tag)


def test_outgoing_tag_ordering_and_equality():
    url = "ws://127.0.0.1/"
    unbound = OutgoingWebSocketLinkTag(None, ("127.0.0.1", 80), url, False)
    bound = OutgoingWebSocketLinkTag("eth0", ("127.0.0.1", 80), url, False)
    assert sorted([bound, unbound]) == [unbound, bound]
    assert OutgoingWebSocketLinkTag("eth0", (LOCALHOST, 80), url, False) == bound
    assert len({bound, OutgoingWebSocketLinkTag("eth0", ("127.0.0.1", 80), url, False)}) == 1


def test_incoming_tag_user_data_is_local_ip():
    tag = IncomingWebSocketLinkTag(("10.0.0.1", 5000), ("10.0.0.2", 6000))
    assert tag.user_data() == ipaddress.ip_address("10.0.0.1").packed
    assert tag.transport_name() == "websocket"
    assert tag.direction is Direction.INCOMING
    v6 = IncomingWebSocketLinkTag(("::", 0), ("::1", 6000))
    assert v6.user_data() == bytes(16)


def test_incoming_tag_str_with_protocol():
    plain = IncomingWebSocketLinkTag(("10.0.0.1", 5000), ("10.0.0.2", 6000))
    with_proto = IncomingWebSocketLinkTag(("10.0.0.1", 5000), ("10.0.0.2", 6000), "agg")
    assert " <- " in str(plain)
    assert str(with_proto) == str(plain) + " (agg)"


@pytest.mark.asyncio
async def test_resolve_ip_url():
    connector = WebSocketConnector.unresolved(["ws://127.0.0.1:9000/x"])
    assert await connector.resolve() == {"ws://127.0.0.1:9000/x": [(LOCALHOST, 9000)]}


@pytest.mark.asyncio
async def test_resolve_uses_default_ports():
    connector = WebSocketConnector.unresolved(["ws://127.0.0.1/", "wss://127.0.0.1/"])
    resolved = await connector.resolve()
    assert resolved["ws://127.0.0.1/"] == [(LOCALHOST, 80)]
    assert resolved["wss://127.0.0.1/"] == [(LOCALHOST, 443)]


@pytest.mark.asyncio
async def test_create_resolves():
    connector = await WebSocketConnector.create(["ws://127.0.0.1:9000/"])
    assert connector.urls == ["ws://127.0.0.1:9000/"]


@pytest.mark.asyncio
async def test_current_tags_single_interface():
    connector = _local_connector("wss://127.0.0.1:9000/")
    tags = await connector.current_tags()
    assert tags == frozenset(
        {OutgoingWebSocketLinkTag(None, ("127.0.0.1", 9000), "wss://127.0.0.1:9000/", True)}
    )


@pytest.mark.asyncio
async def test_current_tags_filtered_by_ip_version():
    connector = _local_connector("ws://127.0.0.1:9000/")
    connector.ip_version = IpVersion.IPV6
    assert await connector.current_tags() == frozenset()


@pytest.mark.asyncio
async def test_link_tags_publishes_current_tags():
    connector = _local_connector("ws://127.0.0.1:9000/")
    published = []
    got = asyncio.Event()

    def publish(tags):
        published.append(tags)
        got.set()

    task = asyncio.create_task(connector.link_tags(publish))
    try:
        await asyncio.wait_for(got.wait(), 5)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    assert published == [await connector.current_tags()]


def test_link_filter():
    connector = WebSocketConnector.unresolved(["ws://127.0.0.1/"])
    url = "ws://127.0.0.1/"
    tag = OutgoingWebSocketLinkTag("eth0", ("127.0.0.1", 80), url, False)
    other = OutgoingWebSocketLinkTag("eth0", ("127.0.0.1", 81), url, False)
    new = _Link(tag, Direction.OUTGOING, b"srv0")

    assert connector.link_filter(new, []) is True
    assert connector.link_filter(new, [_Link(other, Direction.OUTGOING, b"srv0")]) is False
    assert connector.link_filter(new, [_Link(other, Direction.OUTGOING, b"srv1")]) is True
    foreign = _Link(object(), Direction.OUTGOING, b"srv0")
    assert connector.link_filter(foreign, [_Link(other, Direction.OUTGOING, b"srv0")]) is True


@pytest.mark.asyncio
async def test_roundtrip():
    acceptor = WebSocketAcceptor()
    server, port = await _start_server(acceptor)
    queue = asyncio.Queue()
    listener = asyncio.create_task(acceptor.listen(queue))
    try:
        connector = _local_connector(f"ws://127.0.0.1:{port}/agg")
        (tag,) = await connector.current_tags()
        reader, writer = await connector.connect(tag)
        in_tag, in_reader, in_writer = await asyncio.wait_for(queue.get(), 5)

        writer.write(b"hello")
        writer.write(b" there")
        await writer.drain()
        assert await asyncio.wait_for(in_reader.readexactly(11), 5) == b"hello there"

        in_writer.write(b"world")
        await in_writer.drain()
        assert await asyncio.wait_for(reader.read(100), 5) == b"world"

        assert in_tag.local == (LOCALHOST, port)
        assert in_tag.remote[0] == LOCALHOST
        assert in_tag.protocol is None

        writer.close()
        await writer.wait_closed()
        assert await asyncio.wait_for(in_reader.read(), 5) == b""
        assert in_reader.at_eof()
    finally:
        await _stop(server, acceptor, listener)


@pytest.mark.asyncio
async def test_readexactly_reports_incomplete_read():
    acceptor = WebSocketAcceptor()
    server, port = await _start_server(acceptor)
    queue = asyncio.Queue()
    listener = asyncio.create_task(acceptor.listen(queue))
    try:
        connector = _local_connector(f"ws://127.0.0.1:{port}/agg")
        (tag,) = await connector.current_tags()
        reader, writer = await connector.connect(tag)
        _tag, in_reader, _in_writer = await asyncio.wait_for(queue.get(), 5)

        writer.write(b"abc")
        writer.close()
        await writer.wait_closed()
        with pytest.raises(asyncio.IncompleteReadError) as info:
            await asyncio.wait_for(in_reader.readexactly(10), 5)
        assert info.value.partial == b"abc"
    finally:
        await _stop(server, acceptor, listener)


@pytest.mark.asyncio
async def test_subprotocol_recorded_in_tag():
    acceptor = WebSocketAcceptor()
    server, port = await _start_server(acceptor, protocols=["agg"])
    queue = asyncio.Queue()
    listener = asyncio.create_task(acceptor.listen(queue))
    try:
        connector = _local_connector(f"ws://127.0.0.1:{port}/agg")
        connector.connect_options = {"subprotocols": ["agg"]}
        (tag,) = await connector.current_tags()
        await connector.connect(tag)
        in_tag, _reader, _writer = await asyncio.wait_for(queue.get(), 5)
        assert in_tag.protocol == "agg"
    finally:
        await _stop(server, acceptor, listener)


@pytest.mark.asyncio
async def test_wrong_path_is_refused():
    acceptor = WebSocketAcceptor()
    server, port = await _start_server(acceptor)
    try:
        connector = _local_connector(f"ws://127.0.0.1:{port}/other")
        (tag,) = await connector.current_tags()
        with pytest.raises(ConnectionRefusedError):
            await connector.connect(tag)
    finally:
        await _stop(server, acceptor)


@pytest.mark.asyncio
async def test_closed_acceptor_refuses_connections():
    acceptor = WebSocketAcceptor()
    server, port = await _start_server(acceptor)
    acceptor.close()
    try:
        connector = _local_connector(f"ws://127.0.0.1:{port}/agg")
        (tag,) = await connector.current_tags()
        with pytest.raises(ConnectionRefusedError):
            await connector.connect(tag)
    finally:
        await _stop(server, acceptor)


@pytest.mark.asyncio
async def test_listen_ends_on_close_and_is_exclusive():
    acceptor = WebSocketAcceptor()
    queue = asyncio.Queue()
    first = asyncio.create_task(acceptor.listen(queue))
    await asyncio.sleep(0)
    with pytest.raises(RuntimeError):
        await acceptor.listen(queue)
    acceptor.close()
    with pytest.raises(ConnectionResetError):
        await asyncio.wait_for(first, 5)
    with pytest.raises(ConnectionResetError):
        await acceptor.listen(queue)


@pytest.mark.asyncio
async def test_connect_rejects_foreign_tag():
    connector = WebSocketConnector.unresolved(["ws://127.0.0.1/"])
    foreign = IncomingWebSocketLinkTag(("127.0.0.1", 1), ("127.0.0.1", 2))
    with pytest.raises(TypeError):
        await connector.connect(foreign)