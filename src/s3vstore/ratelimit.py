import asyncio
import inspect
import time
from typing import AsyncIterable, AsyncIterator, Protocol

from .exceptions import RateLimitConfigError

DEFAULT_CHUNK_SIZE = 64 * 1024


class RateLimiter(Protocol):
    async def consume(self, n: int) -> None:
        ...


class UnlimitedRateLimiter:
    async def consume(self, n: int) -> None:
        return


class TokenBucket:
    """
    Token bucket limiting throughput in bytes per second.

    Capacity and refill rate are both `rate` bytes, so at most one second of
    burst is allowed. Waiters are served one at a time under a lock, which
    keeps the bucket consistent when several transfers share it.
    """

    def __init__(self, rate: int) -> None:
        self.rate = rate
        self.capacity = float(rate)
        self.tokens = float(rate)
        self.ts = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.ts
        self.ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

    async def _take(self, n: int) -> None:
        while True:
            self._refill()
            if self.tokens >= n:
                self.tokens -= n
                return
            missing = n - self.tokens
            await asyncio.sleep(missing / self.rate)

    async def consume(self, n: int) -> None:
        if n <= 0:
            return
        async with self._lock:
            # Requests above capacity could never be satisfied at once.
            while n > 0:
                part = min(n, self.rate)
                await self._take(part)
                n -= part


def new_rate_limiter(bytes_per_second: int | None) -> RateLimiter:
    if bytes_per_second is None:
        return UnlimitedRateLimiter()
    if isinstance(bytes_per_second, bool) or not isinstance(bytes_per_second, int):
        raise RateLimitConfigError(
            f"Rate limit must be an integer number of bytes, got {bytes_per_second!r}"
        )
    if bytes_per_second <= 0:
        raise RateLimitConfigError(
            f"Rate limit must be positive, got {bytes_per_second}"
        )

    return TokenBucket(bytes_per_second)


async def _iter_buffer(data: bytes, chunk_size: int) -> AsyncIterator[bytes]:
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start : start + chunk_size])


async def limit_reader(
    source: bytes | AsyncIterable[bytes],
    limiter: RateLimiter,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """
    Yield the chunks of `source`, consuming one token per byte before each.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        source = _iter_buffer(bytes(source), chunk_size)

    async for chunk in source:
        for start in range(0, len(chunk), chunk_size):
            part = chunk[start : start + chunk_size]
            await limiter.consume(len(part))
            yield part


class RateLimitedWriter:
    """
    Wrap a sink with a `write(bytes)` method, sync or async.
    """

    def __init__(
        self, sink, limiter: RateLimiter, *, chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        self.sink = sink
        self.limiter = limiter
        self.chunk_size = chunk_size
        self.written = 0

    async def write(self, data: bytes) -> int:
        for start in range(0, len(data), self.chunk_size):
            part = data[start : start + self.chunk_size]
            await self.limiter.consume(len(part))
            result = self.sink.write(part)
            if inspect.isawaitable(result):
                await result
            self.written += len(part)

        return len(data)
