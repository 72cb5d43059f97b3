# linkagg

Asyncio building blocks for working with several network links between two
hosts: transports that discover candidate links and open them, network
helpers, a link speed test and fixed-width formatting for status displays.

## What is included

### Transports

Each transport describes candidate links with hashable, ordered *link tags*
(frozen dataclasses with `transport_name()`, `user_data()` and a readable
`str()`).

- `linkagg.tcp`
  - `TcpConnector`: built with `await TcpConnector.create(hosts, default_port)`
    (fails with `OSError` if no host resolves) or
    `TcpConnector.unresolved(hosts, default_port)`. Host entries without a
    port get `default_port`. `resolve()` returns the sorted socket addresses,
    `current_tags()` returns one `TcpLinkTag` per usable local interface and
    remote address (or per remote address when `multi_interface` is false),
    `link_tags(publish)` recomputes the tags every `resolve_interval` seconds
    and calls `publish` when they change, and `connect(tag)` returns an
    `asyncio` reader and writer. `link_filter(new, existing)` decides whether
    a new link is redundant according to `link_filter_method`
    (`TcpLinkFilter.NONE`, `INTERFACE_INTERFACE` or `INTERFACE_IP`).
  - `TcpAcceptor`: `TcpAcceptor.create(addrs)`, `TcpAcceptor.from_sockets(sockets)`
    or `TcpAcceptor.all_interfaces(port)`. `await listen(queue)` puts
    `(tag, reader, writer)` on the queue for each accepted connection;
    `close()` stops listening. It is also a context manager.
  - `TcpSocketOptions`: `nodelay`, `send_buffer_size`, `recv_buffer_size`
    and `tos_v4`, applied with `apply_to_socket(sock, remote)`.
    `TcpSocketOptions.turbo()` disables Nagle, uses 512 KiB buffers and sets
    the low-delay TOS byte on IPv4.
- `linkagg.websocket`
  - `WebSocketConnector`: the same shape as `TcpConnector`, for `ws://` and
    `wss://` URLs (`create(urls)`, `unresolved(urls)`, `resolve()`,
    `current_tags()`, `link_tags(publish)`, `connect(tag)`,
    `link_filter(new, existing)`). `ssl_context` and `connect_options` are
    passed to the WebSocket client. `connect` returns a reader and writer
    that carry a byte stream over binary messages.
  - `WebSocketAcceptor`: `await serve(host, port, path, protocols)` starts a
    server, or `handler(local_addr)` gives a handler to use with your own
    `websockets` server. `await listen(queue)` puts `(tag, reader, writer)`
    on the queue and raises `ConnectionResetError` after `close()`.
  - Tags: `OutgoingWebSocketLinkTag` and `IncomingWebSocketLinkTag`.
- `linkagg.rfcomm`: `RfcommConnector(remote)` with `bind(local)`,
  `link_tags()` and `connect(tag)`, and `RfcommAcceptor(addr)` with
  `address()`, `listen(queue)` and `close()`. These need a Python whose
  `socket` module has `AF_BLUETOOTH` and `BTPROTO_RFCOMM`; otherwise an
  `OSError` is raised.

### Network helpers

`linkagg.netutil` has `local_interfaces()`, `local_interface_for_ip(ip)`,
`use_proper_ipv4(addr)`, `resolve_hosts(hosts, ip_version)`,
`interface_names_for_target(interfaces, target)`,
`bind_socket_to_interface(sock, interface, remote)`, the `NetworkInterface`
dataclass and the `Direction` and `IpVersion` enums
(`IpVersion.from_only(only_ipv4, only_ipv6)`).

### Speed test

`linkagg.speed.speed_test(...)` sends a random 64-bit seed followed by a
`Xoroshiro128StarStar` byte stream in 8192-byte blocks, checks the stream the
other side sends back, and returns the send and receive speeds in bytes per
second. It raises `ValueError` on malformed data.

### Formatting

`linkagg.fmt` has `format_bytes`, `format_speed` and `format_duration`, which
produce fixed-width text such as `"   3.0 MB"`.

## Installation

```
pip install linkagg
```

## Examples

Find outgoing TCP link candidates:

```python
import asyncio
from linkagg.tcp import TcpConnector

async def main():
    connector = await TcpConnector.create(["example.com"], 5900)
    for tag in sorted(await connector.current_tags()):
        print(tag)

asyncio.run(main())
```

Run a speed test over an open stream (the peer must run the same test):

```python
import asyncio
from linkagg.speed import speed_test

async def main():
    reader, writer = await asyncio.open_connection("localhost", 5900)
    tx, rx = await speed_test("demo", reader, writer, None, 10.0,
                              True, True, False, 1.0, None)
    print(f"up {tx:.0f} B/s, down {rx:.0f} B/s")

asyncio.run(main())
```

Format values for display:

```python
from linkagg.fmt import format_bytes, format_speed, format_duration

print(format_bytes(3 * 1024 * 1024))
print(format_speed(1500.0))
print(format_duration(3725))
```

## What it does not do

- It does not combine links into one connection. The transports find
  candidate links and open them; scheduling data across links, acknowledging
  it and reconnecting failed links are left to the caller.
- There is no interactive terminal monitor and no command-line program;
  `linkagg.fmt` only provides the text formatting such a display would use.
- There are no USB or Bluetooth-profile transports.

## Running the tests

```
pip install -e ".[test]"
pytest
```