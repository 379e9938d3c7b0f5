"""Fetcher — retrieves pinned remote inputs and verifies their integrity.

Downloads stream into a temporary file while being hashed.  Only content
whose SHA-256 matches the pinned hash is moved into the download cache;
anything else is deleted and reported as an ``IntegrityError``.

``fetch`` never retries.  Transport failures surface as ``NetworkError``
and callers decide whether to retry, typically through
``retry_with_backoff``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import random
import re
import tempfile
import time
import urllib.parse
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import httpx
from pydantic import BaseModel, Field

from envforge.core.hasher import normalize_sha256, sha256_file

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_TIMEOUT_SECONDS = 60.0
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


class FetchError(RuntimeError):
    """Base class for fetch failures."""


class NetworkError(FetchError):
    """Raised on transport failure or an error response. See ``is_transient``."""

    def __init__(self, url: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.status_code = status_code


class IntegrityError(FetchError):
    """Raised when fetched content does not match its pinned hash.

    Never retry with the same hash: the content is provably wrong.
    """

    def __init__(self, url: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Hash mismatch for {url}: expected sha256:{expected}, got sha256:{actual}"
        )
        self.url = url
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Caller-side retry
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """How often and how patiently a failed download is retried."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: bool = True

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry number ``retry`` (0-based)."""
        seconds = min(self.base_delay * 2**retry, self.max_delay)
        return seconds * random.uniform(0.5, 1.5) if self.jitter else seconds  # noqa: S311


def is_transient(exc: Exception) -> bool:
    """Whether fetching again might succeed.

    Transport errors, timeouts, 5xx and 429 responses are transient.
    Other 4xx responses and hash mismatches are not.
    """
    if not isinstance(exc, NetworkError):
        return False
    status = exc.status_code
    return status is None or status == 429 or status >= 500


def retry_with_backoff(fn: Callable[[], T], config: RetryConfig) -> T:
    """Call ``fn``, retrying transient fetch failures with exponential backoff.

    The last error is re-raised once ``config.max_retries`` retries are
    spent; errors that are not transient propagate immediately.
    """
    retry = 0
    while True:
        try:
            return fn()
        except NetworkError as exc:
            if not is_transient(exc) or retry >= config.max_retries:
                raise
            delay = config.delay(retry)
            retry += 1
            logger.warning(
                "Retry %d/%d after %.1fs: %s", retry, config.max_retries, delay, exc
            )
            time.sleep(delay)


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


def _local_path(url: str) -> Path | None:
    """Return the filesystem path for ``file://`` URLs and plain paths."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme == "file":
        return Path(urllib.parse.unquote(parsed.path))
    if not parsed.scheme:
        return Path(url)
    return None


def _basename(url: str) -> str:
    name = Path(urllib.parse.unquote(urllib.parse.urlparse(url).path)).name
    return _UNSAFE_NAME_CHARS.sub("_", name) or "source"


class Fetcher:
    """Downloads pinned inputs into a verified cache.

    Parameters
    ----------
    cache_dir:
        Directory for verified downloads. Created if it does not exist.
    client:
        Optional ``httpx.Client`` (e.g. with a ``MockTransport`` for
        testing).  A default client is created if not provided.
    timeout:
        Timeout in seconds for the default client.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        client: httpx.Client | None = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._cache = Path(cache_dir)
        self._cache.mkdir(parents=True, exist_ok=True)
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None

    def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def cached_path(self, url: str, expected_hash: str) -> Path:
        """Where a verified download of ``url`` is kept."""
        return self._cache / f"{normalize_sha256(expected_hash)[:32]}-{_basename(url)}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, url: str, expected_hash: str) -> Path:
        """Fetch ``url`` and return the path of its verified content.

        Raises
        ------
        IntegrityError
            The content's SHA-256 differs from ``expected_hash``. Nothing
            is cached.
        NetworkError
            The transfer failed.
        """
        expected = normalize_sha256(expected_hash)
        target = self.cached_path(url, expected)
        if target.exists():
            if sha256_file(target) == expected:
                logger.debug("Using cached download %s for %s.", target.name, url)
                return target
            logger.warning("Cached download %s is corrupt; fetching again.", target)
            target.unlink()

        temp_path, actual = self._download(url)
        if actual != expected:
            temp_path.unlink(missing_ok=True)
            raise IntegrityError(url, expected, actual)
        os.replace(temp_path, target)
        logger.info("Fetched %s (sha256:%s).", url, expected[:12])
        return target

    def prefetch(self, url: str) -> tuple[Path, str]:
        """Download ``url`` without a pin; return its cached path and SHA-256.

        Used to obtain the hash to pin in a catalog.
        """
        temp_path, actual = self._download(url)
        target = self.cached_path(url, actual)
        os.replace(temp_path, target)
        return target, actual

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _download(self, url: str) -> tuple[Path, str]:
        """Stream ``url`` into a temp file in the cache; return it with its hash."""
        digest = hashlib.sha256()
        fd, name = tempfile.mkstemp(dir=self._cache, prefix=".download-")
        temp_path = Path(name)
        try:
            with os.fdopen(fd, "wb") as out:
                local = _local_path(url)
                if local is not None:
                    self._copy_local(url, local, out, digest)
                else:
                    self._copy_remote(url, out, digest)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        return temp_path, digest.hexdigest()

    @staticmethod
    def _copy_local(url: str, source: Path, out, digest) -> None:
        try:
            with source.open("rb") as fh:
                for chunk in iter(lambda: fh.read(1 << 16), b""):
                    digest.update(chunk)
                    out.write(chunk)
        except OSError as exc:
            raise NetworkError(url, str(exc)) from exc

    def _copy_remote(self, url: str, out, digest) -> None:
        try:
            with self._client.stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    digest.update(chunk)
                    out.write(chunk)
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                url,
                f"HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(url, str(exc) or type(exc).__name__) from exc

