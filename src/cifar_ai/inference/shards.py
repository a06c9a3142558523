from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from itertools import accumulate

from ..logging import get_logger

FetchBytes = Callable[[str], bytes]


class ShardFetchError(RuntimeError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"failed to fetch weight shard {url}: {reason}")
        self.url = url
        self.reason = reason


def assemble_shards(urls: Sequence[str], fetch: FetchBytes, max_workers: int = 4) -> bytes:
    """Fetch every shard concurrently and join them in input order.

    The result has no framing between shards: its length is the sum of the
    shard lengths and shard ``i`` starts at ``shard_offsets(...)[i]``. Any
    failed fetch fails the whole assembly with :class:`ShardFetchError`.
    """
    if not urls:
        raise ValueError("no weight shards to fetch")
    workers = max(1, min(int(max_workers), len(urls)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="shard") as pool:
        futures: list[Future[bytes]] = [pool.submit(fetch, u) for u in urls]
        parts: list[bytes] = []
        for url, fut in zip(urls, futures, strict=True):
            try:
                parts.append(fut.result())
            except ShardFetchError:
                _cancel_all(futures)
                raise
            except (OSError, RuntimeError, ValueError) as exc:
                _cancel_all(futures)
                raise ShardFetchError(url, str(exc) or type(exc).__name__) from exc
    get_logger().debug("shards_assembled shards=%d bytes=%d", len(parts), sum(map(len, parts)))
    return b"".join(parts)


def _cancel_all(futures: Sequence[Future[bytes]]) -> None:
    for f in futures:
        f.cancel()


def shard_offsets(lengths: Sequence[int]) -> list[int]:
    """Start offset of each shard in the assembled buffer."""
    return [0, *accumulate(lengths)][: len(lengths)]


def split_shards(buf: bytes, shard_bytes: int) -> list[bytes]:
    if shard_bytes <= 0:
        raise ValueError("shard_bytes must be > 0")
    if not buf:
        return [b""]
    return [buf[i : i + shard_bytes] for i in range(0, len(buf), shard_bytes)]
