from __future__ import annotations

from pathlib import Path
from types import TracebackType
from typing import Literal

import httpx

from ..config import ModelConfig
from ..logging import get_logger


class FetchError(OSError):
    pass


def is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def resolve(base: str, path: str) -> str:
    """Resolve ``path`` against a base URL or local directory.

    Absolute URLs in ``path`` are returned unchanged.
    """
    if is_remote(path):
        return path
    if is_remote(base):
        try:
            return str(httpx.URL(base if base.endswith("/") else base + "/").join(path))
        except httpx.InvalidURL as exc:
            raise FetchError(f"{base}: {exc}") from None
    return (_local_path(base) / path).as_posix()


def _local_path(location: str) -> Path:
    return Path(location.removeprefix("file://"))


class ArtifactFetcher:
    """Reads model artifacts over HTTP(S) or from the local filesystem.

    One ``httpx.Client`` is shared by all calls, so shard fetches can run on
    worker threads concurrently.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        *,
        no_cache: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"} if no_cache else {}
        self._client = httpx.Client(
            timeout=timeout_seconds,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )
        self._logger = get_logger()

    @classmethod
    def from_config(
        cls, cfg: ModelConfig, transport: httpx.BaseTransport | None = None
    ) -> ArtifactFetcher:
        return cls(cfg.fetch_timeout_seconds, no_cache=cfg.no_cache, transport=transport)

    def fetch_bytes(self, location: str) -> bytes:
        if not is_remote(location):
            try:
                return _local_path(location).read_bytes()
            except OSError as exc:
                raise FetchError(f"{location}: {exc.strerror or exc}") from exc
        try:
            r = self._client.get(location)
        except httpx.TimeoutException:
            raise FetchError(f"{location}: timed out") from None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"{location}: {exc}") from None
        if not r.is_success:
            raise FetchError(f"{location}: HTTP {r.status_code}")
        self._logger.debug("artifact_fetched url=%s bytes=%d", location, len(r.content))
        return r.content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ArtifactFetcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> Literal[False]:
        self.close()
        return False
