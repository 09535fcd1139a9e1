"""
Artifact fetcher and verifier.

Retrieves the source artifacts of a recipe, hashing the byte stream while it
is written, and stores verified files in a content-addressed cache keyed by
the declared digest.

Components:
- Transport: protocol for opening a URL as a stream of byte chunks
  (HttpTransport via requests, FileTransport, SchemeTransport dispatcher)
- DigestPool: incremental hash over streamed chunks
- ArtifactCache: shared cache with one lock per digest key
- ArtifactFetcher: concurrent, retrying fetch of all artifacts of a recipe

A digest mismatch is an IntegrityError and is never retried. Transport
failures are FetchErrors (transient) and are retried under the configured
policy.
"""

import logging
import os
import tempfile
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import requests

from hob.config import RetryConfig
from hob.errors import BuildCancelled, FetchError, IntegrityError, TransientError
from hob.schemas import FetchSpec, HashSpec, Recipe
from hob.utils import retry_with_backoff

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


# =============================================================================
# Transports
# =============================================================================


@runtime_checkable
class Transport(Protocol):
    """
    Protocol for artifact transports.

    open() returns an iterator of byte chunks. Failures to connect or read
    raise FetchError.
    """

    def open(self, url: str) -> Iterator[bytes]:
        ...


class HttpTransport:
    """HTTP(S) transport backed by a requests Session."""

    def __init__(
        self,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self._timeout = timeout
        self._session = session or requests.Session()
        self._chunk_size = chunk_size

    def open(self, url: str) -> Iterator[bytes]:
        try:
            response = self._session.get(url, stream=True, timeout=self._timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise FetchError(url, f"HTTP {status}")
        except requests.RequestException as e:
            raise FetchError(url, str(e))

        with response:
            try:
                for chunk in response.iter_content(self._chunk_size):
                    if chunk:
                        yield chunk
            except requests.RequestException as e:
                raise FetchError(url, f"read failed: {e}")


class FileTransport:
    """Transport for file:// URLs and plain local paths."""

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self._chunk_size = chunk_size

    @staticmethod
    def to_path(url: str) -> Path:
        if url.startswith("file://"):
            return Path(unquote(urlparse(url).path))
        return Path(url)

    def open(self, url: str) -> Iterator[bytes]:
        path = self.to_path(url)
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(self._chunk_size), b""):
                    yield chunk
        except OSError as e:
            raise FetchError(url, str(e))


class SchemeTransport:
    """Dispatches to a transport by URL scheme (default transport)."""

    def __init__(self, transports: Optional[dict[str, Transport]] = None, http_timeout: float = 60.0):
        if transports is None:
            http = HttpTransport(timeout=http_timeout)
            local = FileTransport()
            transports = {"http": http, "https": http, "file": local, "": local}
        self._transports = dict(transports)

    def open(self, url: str) -> Iterator[bytes]:
        scheme = urlparse(url).scheme.lower() if "://" in url else ""
        transport = self._transports.get(scheme)
        if transport is None:
            raise FetchError(url, f"unsupported URL scheme '{scheme}'. Supported: {sorted(self._transports)}")
        return transport.open(url)


# =============================================================================
# Verification and cache
# =============================================================================


class DigestPool:
    """Incremental digest of a streamed artifact."""

    def __init__(self, hash_spec: HashSpec):
        self._hasher = hash_spec.new_hasher()
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)
        self.size += len(chunk)

    def finish(self) -> str:
        return self._hasher.hexdigest()


def file_digest(path: Path, hash_spec: HashSpec) -> str:
    pool = DigestPool(hash_spec)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            pool.update(chunk)
    return pool.finish()


@dataclass(frozen=True)
class FetchedArtifact:
    """A verified artifact on local disk."""
    spec: FetchSpec
    path: Path


class ArtifactCache:
    """
    Content-addressed artifact cache shared by all recipes of a run.

    Files live at <cache_dir>/<algorithm>/<digest>. Access to one key is
    serialised: concurrent callers for the same digest wait for the first
    and reuse its file.
    """

    def __init__(self, cache_dir: Path | str):
        self.cache_dir = Path(cache_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def path_for(self, spec: FetchSpec) -> Path:
        return self.cache_dir / spec.hash.algorithm / spec.hash.digest

    def _lock_for(self, key: str) -> threading.Lock:
        with self._global_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get_or_fetch(self, spec: FetchSpec, fetch_fn: Callable[[Path], None]) -> Path:
        """
        Return the cached file for spec, calling fetch_fn(dest) on a miss.

        A cached file is re-verified before reuse; a mismatching file is
        removed and fetched again.
        """
        with self._lock_for(spec.hash.key):
            path = self.path_for(spec)
            if path.exists():
                actual = file_digest(path, spec.hash)
                if actual == spec.hash.digest:
                    logger.debug(f"cache hit {spec.local_name} ({spec.hash.key})")
                    return path
                logger.warning(
                    f"Cached artifact {path} failed verification "
                    f"({spec.hash.algorithm} {actual}); refetching"
                )
                path.unlink()

            path.parent.mkdir(parents=True, exist_ok=True)
            fetch_fn(path)
            return path


# =============================================================================
# Fetcher
# =============================================================================


class ArtifactFetcher:
    """
    Fetches and verifies every artifact of a recipe.

    Usage:
        fetcher = ArtifactFetcher(cache=ArtifactCache(cache_dir))
        artifacts = fetcher.fetch_all(recipe)
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        cache: Optional[ArtifactCache] = None,
        max_workers: int = 4,
        retry: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._transport = transport or SchemeTransport()
        self._cache = cache or ArtifactCache(Path(tempfile.gettempdir()) / "hob-cache")
        self._max_workers = max_workers
        self._retry = retry or RetryConfig()
        self._sleep = sleep

    @property
    def cache(self) -> ArtifactCache:
        return self._cache

    def fetch(self, spec: FetchSpec, cancelled: Optional[Callable[[], bool]] = None) -> FetchedArtifact:
        """Fetch and verify one artifact (through the cache)."""
        cancelled = cancelled or (lambda: False)

        def download(dest: Path) -> None:
            kwargs = {"sleep": self._sleep} if self._sleep else {}
            retry_with_backoff(
                lambda: self._download(spec, dest, cancelled),
                max_attempts=self._retry.max_attempts,
                backoff_seconds=self._retry.backoff_seconds,
                backoff_multiplier=self._retry.backoff_multiplier,
                logger=logger,
                retry_on=(TransientError,),
                **kwargs,
            )

        path = self._cache.get_or_fetch(spec, download)
        return FetchedArtifact(spec=spec, path=path)

    def _download(self, spec: FetchSpec, dest: Path, cancelled: Callable[[], bool]) -> None:
        if cancelled():
            raise BuildCancelled(f"fetch of {spec.url} cancelled", phase="fetch")

        logger.info(f"fetching {spec.url}")
        pool = DigestPool(spec.hash)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in self._transport.open(spec.url):
                    if cancelled():
                        raise BuildCancelled(f"fetch of {spec.url} cancelled", phase="fetch")
                    pool.update(chunk)
                    out.write(chunk)

            actual = pool.finish()
            if actual != spec.hash.digest:
                raise IntegrityError(spec.url, spec.hash.algorithm, spec.hash.digest, actual)

            os.replace(tmp, dest)
            logger.info(f"fetched {spec.local_name} ({pool.size} bytes, {spec.hash.algorithm} ok)")
        finally:
            if tmp.exists():
                tmp.unlink()

    def fetch_all(self, recipe: Recipe, cancel_event: Optional[threading.Event] = None) -> list[FetchedArtifact]:
        """
        Fetch all artifacts of a recipe concurrently.

        Args:
            recipe: Resolved recipe
            cancel_event: Run-wide cancellation signal

        Returns:
            FetchedArtifact list in declaration order

        Raises:
            IntegrityError, FetchError: error of the earliest-declared failing artifact
            BuildCancelled: if the run was cancelled
        """
        specs = list(recipe.artifacts)
        if not specs:
            return []

        local_cancel = threading.Event()

        def cancelled() -> bool:
            return local_cancel.is_set() or (cancel_event is not None and cancel_event.is_set())

        results: list[Optional[FetchedArtifact]] = [None] * len(specs)
        errors: dict[int, BaseException] = {}

        workers = max(1, min(self._max_workers, len(specs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hob-fetch") as pool:
            futures = {pool.submit(self.fetch, spec, cancelled): i for i, spec in enumerate(specs)}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except CancelledError:
                    continue
                except Exception as e:
                    errors[index] = e
                    if not local_cancel.is_set():
                        local_cancel.set()
                        for other in futures:
                            other.cancel()

        if errors:
            # prefer a real failure over the cancellations it caused
            real = {i: e for i, e in errors.items() if not isinstance(e, BuildCancelled)}
            chosen = real or errors
            raise chosen[min(chosen)]

        if cancel_event is not None and cancel_event.is_set() and any(r is None for r in results):
            raise BuildCancelled("fetch cancelled", phase="fetch")

        return [r for r in results if r is not None]
