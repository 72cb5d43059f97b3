"""Link speed test using a seeded pseudo-random byte stream."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import struct
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Optional, Union

log = logging.getLogger(__name__)

BUF_SIZE = 8192
"""Size of each block of test data; a multiple of eight."""

INTERVAL = 10.0
"""Default speed reporting interval in seconds."""

_MB = 1_048_576.0
_MASK = (1 << 64) - 1
_SEED = struct.Struct(">Q")

Seconds = Union[float, int, timedelta]


def _check_u64(value: int) -> int:
    if not 0 <= value <= _MASK:
        raise ValueError(f"value {value} is not an unsigned 64-bit integer")
    return value


def _rotl(x: int, k: int) -> int:
    return ((x << k) | (x >> (64 - k))) & _MASK


class _SplitMix64:
    """SplitMix64 generator used to expand a 64-bit seed."""

    def __init__(self, state: int) -> None:
        self._x = state

    def next_u64(self) -> int:
        self._x = (self._x + 0x9E3779B97F4A7C15) & _MASK
        z = self._x
        z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & _MASK
        z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & _MASK
        return z ^ (z >> 31)


class Xoroshiro128StarStar:
    """The xoroshiro128** pseudo-random generator."""

    __slots__ = ("_s0", "_s1")

    def __init__(self, s0: int, s1: int) -> None:
        _check_u64(s0)
        _check_u64(s1)
        if s0 == 0 and s1 == 0:
            raise ValueError("generator state must not be all zero")
        self._s0 = s0
        self._s1 = s1

    def __repr__(self) -> str:
        return f"Xoroshiro128StarStar(s0={self._s0:#x}, s1={self._s1:#x})"

    @classmethod
    def seed_from_u64(cls, seed: int) -> Xoroshiro128StarStar:
        """Create a generator whose state is expanded from ``seed`` by SplitMix64."""
        expander = _SplitMix64(_check_u64(seed))
        s0 = expander.next_u64()
        s1 = expander.next_u64()
        if s0 == 0 and s1 == 0:
            return cls.seed_from_u64(0)
        return cls(s0, s1)

    def next_u64(self) -> int:
        """Return the next 64-bit output."""
        s0, s1 = self._s0, self._s1
        result = (_rotl((s0 * 5) & _MASK, 7) * 9) & _MASK
        s1 ^= s0
        self._s0 = _rotl(s0, 24) ^ s1 ^ ((s1 << 16) & _MASK)
        self._s1 = _rotl(s1, 37)
        return result

    def _next_u32(self) -> int:
        return self.next_u64() & 0xFFFFFFFF

    def fill_bytes(self, length: int) -> bytes:
        """Return ``length`` pseudo-random bytes, eight per output in little-endian order."""
        if length < 0:
            raise ValueError("length must not be negative")
        full, rem = divmod(length, 8)
        out = struct.pack(f"<{full}Q", *(self.next_u64() for _ in range(full)))
        if rem > 4:
            out += self.next_u64().to_bytes(8, "little")[:rem]
        elif rem:
            out += self._next_u32().to_bytes(4, "little")[:rem]
        return out


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


async def speed_test(
    name: str,
    reader: Any,
    writer: Any,
    limit: Optional[int] = None,
    duration: Optional[Seconds] = None,
    send: bool = True,
    receive: bool = True,
    recv_block: bool = False,
    report_interval: Seconds = INTERVAL,
    speed_callback: Optional[Callable[[float, float], Any]] = None,
) -> tuple[float, float]:
    """Measure the send and receive speed of a connection in bytes per second.

    ``reader`` needs ``read`` and ``readexactly``, ``writer`` needs ``write``
    and ``drain``. ``limit`` and ``duration`` optionally bound the amount of
    data sent and the test time. With ``recv_block`` the remote seed is read
    but no further data, and the test runs until it is cancelled.
    ``speed_callback(send_speed, recv_speed)`` is called with the current
    speeds whenever a report is made.
    """
    start = time.monotonic()
    max_duration = math.inf if duration is None else _seconds(duration)
    interval = _seconds(report_interval)
    finished = asyncio.Event()
    stop_sender = asyncio.Event()
    speeds = [0.0, 0.0]

    def elapsed() -> float:
        return time.monotonic() - start

    def report(index: int, speed: float) -> None:
        speeds[index] = speed
        if speed_callback is not None:
            speed_callback(speeds[0], speeds[1])

    if speed_callback is not None:
        speed_callback(0.0, 0.0)

    log.info("%s: starting speed test", name)

    async def sender() -> tuple[int, float]:
        if not send:
            return 0, 0.0

        seed = random.getrandbits(64)
        writer.write(_SEED.pack(seed))
        await writer.drain()
        rng = Xoroshiro128StarStar.seed_from_u64(seed)

        sent_total = 0
        sent_interval = 0
        interval_start = time.monotonic()

        while (
            (limit is None or sent_total <= limit)
            and not finished.is_set()
            and elapsed() < max_duration
        ):
            writer.write(rng.fill_bytes(BUF_SIZE))
            await writer.drain()
            await asyncio.sleep(0)

            sent_total += BUF_SIZE
            sent_interval += BUF_SIZE

            spent = time.monotonic() - interval_start
            if spent >= interval:
                speed = sent_interval / max(spent, 1e-10)
                log.info("%s: send speed %.1f MB/s", name, speed / _MB)
                report(0, speed)
                sent_interval = 0
                interval_start = time.monotonic()

            if stop_sender.is_set():
                break

        log.info("%s: sender finished", name)
        return sent_total, elapsed()

    async def receiver() -> tuple[int, float]:
        if not receive:
            return 0, 0.0

        (remote_seed,) = _SEED.unpack(await reader.readexactly(_SEED.size))
        rng = Xoroshiro128StarStar.seed_from_u64(remote_seed)

        if recv_block:
            await finished.wait()
            return 0, 0.0

        recved_total = 0
        recved_interval = 0
        interval_start = time.monotonic()

        while not finished.is_set() and elapsed() < max_duration:
            data = await reader.read(BUF_SIZE)
            if not data:
                break
            rem = len(data) % 8
            if rem:
                data += await reader.readexactly(8 - rem)

            if rng.fill_bytes(len(data)) != data:
                stop_sender.set()
                raise ValueError("received malformed data")

            recved_total += len(data)
            recved_interval += len(data)

            spent = time.monotonic() - interval_start
            if spent >= interval:
                speed = recved_interval / max(spent, 1e-10)
                log.info("%s: receive speed %.1f MB/s", name, speed / _MB)
                report(1, speed)
                recved_interval = 0
                interval_start = time.monotonic()

        log.info("%s: receiver finished", name)
        return recved_total, elapsed()

    tasks = [asyncio.ensure_future(sender()), asyncio.ensure_future(receiver())]
    try:
        send_result, recv_result = await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        finished.set()
        for task in tasks:
            if not task.done():
                task.cancel()

    if isinstance(send_result, BaseException):
        log.warning("%s: sender failed: %s", name, send_result)
    if isinstance(recv_result, BaseException):
        log.warning("%s: receiver failed: %s", name, recv_result)

    if isinstance(send_result, BaseException):
        raise send_result
    tx_total, tx_dur = send_result
    tx_speed = tx_total / max(tx_dur, 1e-10)

    if isinstance(recv_result, BaseException):
        raise recv_result
    rx_total, rx_dur = recv_result
    rx_speed = rx_total / max(rx_dur, 1e-10)

    log.info("%s: upload %.0f bytes/s  download %.0f bytes/s", name, tx_speed, rx_speed)
    return tx_speed, rx_speed