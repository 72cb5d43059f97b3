import asyncio
import struct

import pytest

from linkagg.speed import BUF_SIZE, Xoroshiro128StarStar, speed_test


class CollectingWriter:
    def __init__(self):
        self.data = bytearray()

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        await asyncio.sleep(0)


def _stream_for(seed, length):
    rng = Xoroshiro128StarStar.seed_from_u64(seed)
    return struct.pack(">Q", seed) + rng.fill_bytes(length)


def test_rng_is_deterministic():
    a = Xoroshiro128StarStar.seed_from_u64(42)
    b = Xoroshiro128StarStar.seed_from_u64(42)
    assert [a.next_u64() for _ in range(20)] == [b.next_u64() for _ in range(20)]


def test_rng_outputs_are_64_bit():
    rng = Xoroshiro128StarStar.seed_from_u64(7)
    values = [rng.next_u64() for _ in range(100)]
    assert all(0 <= v < 2**64 for v in values)
    assert len(set(values)) == len(values)


def test_different_seeds_differ():
    a = Xoroshiro128StarStar.seed_from_u64(1).fill_bytes(64)
    b = Xoroshiro128StarStar.seed_from_u64(2).fill_bytes(64)
    assert a != b


@pytest.mark.parametrize("seed", [-1, 2**64])
def test_seed_out_of_range(seed):
    with pytest.raises(ValueError):
        Xoroshiro128StarStar.seed_from_u64(seed)


def test_zero_state_rejected():
    with pytest.raises(ValueError):
        Xoroshiro128StarStar(0, 0)


def test_fill_bytes_matches_little_endian_outputs():
    rng = Xoroshiro128StarStar.seed_from_u64(99)
    ref = Xoroshiro128StarStar.seed_from_u64(99)
    data = rng.fill_bytes(32)
    expected = b"".join(ref.next_u64().to_bytes(8, "little") for _ in range(4))
    assert data == expected


@pytest.mark.parametrize("length", [3, 5])
def test_fill_bytes_partial_tail(length):
    rng = Xoroshiro128StarStar.seed_from_u64(5)
    ref = Xoroshiro128StarStar.seed_from_u64(5)
    assert rng.fill_bytes(length) == ref.next_u64().to_bytes(8, "little")[:length]


def test_fill_bytes_lengths():
    rng = Xoroshiro128StarStar.seed_from_u64(3)
    assert rng.fill_bytes(0) == b""
    assert len(rng.fill_bytes(BUF_SIZE)) == BUF_SIZE
    with pytest.raises(ValueError):
        rng.fill_bytes(-1)


@pytest.mark.asyncio
async def test_sender_writes_seed_and_stream():
    writer = CollectingWriter()
    tx, rx = await speed_test(
        "send", asyncio.StreamReader(), writer, limit=10000, send=True, receive=False
    )
    data = bytes(writer.data)
    assert len(data) == 8 + 2 * BUF_SIZE
    (seed,) = struct.unpack(">Q", data[:8])
    assert data[8:] == Xoroshiro128StarStar.seed_from_u64(seed).fill_bytes(len(data) - 8)
    assert tx > 0
    assert rx == 0.0


@pytest.mark.asyncio
async def test_zero_duration_sends_only_seed():
    writer = CollectingWriter()
    tx, rx = await speed_test(
        "short", asyncio.StreamReader(), writer, duration=0, send=True, receive=False
    )
    assert len(writer.data) == 8
    assert tx == 0.0
    assert rx == 0.0


@pytest.mark.asyncio
async def test_receiver_accepts_valid_stream():
    reader = asyncio.StreamReader()
    reader.feed_data(_stream_for(12345, 3 * BUF_SIZE))
    reader.feed_eof()
    writer = CollectingWriter()
    tx, rx = await speed_test("recv", reader, writer, send=False, receive=True)
    assert tx == 0.0
    assert rx > 0
    assert writer.data == bytearray()


@pytest.mark.asyncio
async def test_receiver_handles_unaligned_chunks():
    reader = asyncio.StreamReader()
    data = _stream_for(777, 64)

    async def feed():
        reader.feed_data(data[:8 + 13])
        await asyncio.sleep(0.01)
        reader.feed_data(data[8 + 13 :])
        reader.feed_eof()

    feeder = asyncio.ensure_future(feed())
    tx, rx = await speed_test("recv", reader, CollectingWriter(), send=False, receive=True)
    await feeder
    assert rx > 0
    assert tx == 0.0


@pytest.mark.asyncio
async def test_receiver_rejects_malformed_data():
    reader = asyncio.StreamReader()
    good = _stream_for(1, 64)
    reader.feed_data(good[:8] + bytes(len(good) - 8))
    reader.feed_eof()
    with pytest.raises(ValueError):
        await speed_test("bad", reader, CollectingWriter(), send=False, receive=True)


@pytest.mark.asyncio
async def test_receiver_truncated_seed():
    reader = asyncio.StreamReader()
    reader.feed_data(b"\x00\x01\x02")
    reader.feed_eof()
    with pytest.raises(asyncio.IncompleteReadError):
        await speed_test("short", reader, CollectingWriter(), send=False, receive=True)


@pytest.mark.asyncio
async def test_speed_callback_reports():
    calls = []
    writer = CollectingWriter()
    await speed_test(
        "cb",
        asyncio.StreamReader(),
        writer,
        limit=3 * BUF_SIZE,
        send=True,
        receive=False,
        report_interval=0,
        speed_callback=lambda s, r: calls.append((s, r)),
    )
    assert calls[0] == (0.0, 0.0)
    assert len(calls) > 1
    assert all(s > 0 and r == 0.0 for s, r in calls[1:])


@pytest.mark.asyncio
async def test_recv_block_waits_until_cancelled():
    reader = asyncio.StreamReader()
    reader.feed_data(_stream_for(9, 64))
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            speed_test("block", reader, CollectingWriter(), send=False, receive=True, recv_block=True),
            timeout=0.05,
        )


@pytest.mark.asyncio
async def test_nothing_to_do():
    writer = CollectingWriter()
    result = await speed_test("idle", asyncio.StreamReader(), writer, send=False, receive=False)
    assert result == (0.0, 0.0)
    assert writer.data == bytearray()