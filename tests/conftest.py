"""Shared test fixtures for Envforge."""

from __future__ import annotations

import hashlib
import shutil
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

import httpx
import pytest

from envforge.core.catalog import PackageCatalog
from envforge.core.content_store import BuildFailure, ContentStore
from envforge.core.evaluator import Evaluator
from envforge.core.fetcher import Fetcher, RetryConfig
from envforge.core.resolver import Resolver
from envforge.models.packages import PackageRef

TOOL_SCRIPT = b"#!/bin/sh\necho tool\n"


# ---------------------------------------------------------------------------
# Build backend double
# ---------------------------------------------------------------------------


class RecordingBuilder:
    """PackageBuilder that writes outputs in Python and counts its builds.

    Every declared bin dir gets an executable named after the package, and
    ``inputs.txt`` lists the input store paths it was handed.
    """

    def __init__(self, delay: float = 0.0, fail: set[str] | None = None) -> None:
        self.calls: list[str] = []
        self.delay = delay
        self.fail = fail or set()
        self._lock = threading.Lock()

    def build(
        self,
        ref: PackageRef,
        out: Path,
        *,
        inputs: Mapping[str, Path],
        src: Path | None = None,
    ) -> None:
        with self._lock:
            self.calls.append(ref.name)
        if self.delay:
            time.sleep(self.delay)
        if ref.name in self.fail:
            raise BuildFailure(f"{ref.name} refused to build")
        for bin_dir in ref.bin_dirs:
            target = out / bin_dir
            target.mkdir(parents=True, exist_ok=True)
            exe = target / ref.name
            exe.write_text(f"#!/bin/sh\necho {ref.name} {ref.version}\n")
            exe.chmod(0o755)
        (out / "inputs.txt").write_text(
            "".join(f"{name}={path}\n" for name, path in sorted(inputs.items()))
        )

    def count(self, name: str) -> int:
        with self._lock:
            return self.calls.count(name)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def tool_source(tmp_dir: Path) -> Path:
    """A local source file served to the fetcher through a file:// URL."""
    source = tmp_dir / "sources" / "tool.sh"
    source.parent.mkdir(parents=True)
    source.write_bytes(TOOL_SCRIPT)
    return source


@pytest.fixture
def catalog_data(tool_source: Path) -> dict[str, Any]:
    """Catalog document (as parsed TOML) used across the suite."""
    return {
        "revision": "test-2024.05",
        "packages": {
            "git": {"version": "2.44.0", "build": "make install"},
            "neovim": {"version": "0.9.5", "build": "make install"},
            "nodejs": {"version": "20.11.1", "build": "make install"},
            "zlib": {"version": "1.3.1", "build": "make install", "bin_dirs": []},
            "hello": {
                "version": "2.12",
                "inputs": ["zlib>=1.3"],
                "build": "make install",
            },
            "tool": {
                "version": "1.0",
                "url": tool_source.as_uri(),
                "sha256": hashlib.sha256(TOOL_SCRIPT).hexdigest(),
                "dest": "bin/tool",
                "executable": True,
            },
            "python": {"version": "3.12.2", "inputs": ["zlib"], "build": "make install"},
        },
    }


@pytest.fixture
def catalog(catalog_data: dict[str, Any]) -> PackageCatalog:
    """Provide the test PackageCatalog."""
    return PackageCatalog.from_mapping(catalog_data)


@pytest.fixture
def make_catalog(catalog_data: dict[str, Any]) -> Callable[..., PackageCatalog]:
    """Factory fixture: the test catalog with packages added or replaced."""

    def _factory(**packages: dict[str, Any]) -> PackageCatalog:
        data = {
            "revision": catalog_data["revision"],
            "packages": {**catalog_data["packages"], **packages},
        }
        return PackageCatalog.from_mapping(data)

    return _factory


@pytest.fixture
def evaluator(catalog: PackageCatalog) -> Evaluator:
    """Provide an Evaluator over the test catalog."""
    return Evaluator(catalog)


# ---------------------------------------------------------------------------
# Store, fetcher, resolver
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_dir: Path) -> ContentStore:
    """Provide a fresh ContentStore in a temp directory."""
    return ContentStore(tmp_dir / "store", poll_interval=0.01)


@pytest.fixture
def served() -> dict[str, bytes]:
    """URL -> body map served by the mock HTTP transport."""
    return {}


@pytest.fixture
def http_client(served: dict[str, bytes]) -> Iterator[httpx.Client]:
    """httpx client whose transport serves ``served`` and 404s otherwise."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = served.get(str(request.url))
        if body is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def fetcher(tmp_dir: Path, http_client: httpx.Client) -> Fetcher:
    """Provide a Fetcher backed by the mock transport."""
    return Fetcher(tmp_dir / "downloads", client=http_client)


@pytest.fixture
def builder() -> RecordingBuilder:
    """Provide a RecordingBuilder."""
    return RecordingBuilder()


@pytest.fixture
def make_builder() -> Callable[..., RecordingBuilder]:
    """Factory fixture: a RecordingBuilder with a delay or failing packages."""
    return RecordingBuilder


@pytest.fixture
def no_retry() -> RetryConfig:
    return RetryConfig(max_retries=0, base_delay=0.0, jitter=False)


@pytest.fixture
def resolver(
    store: ContentStore,
    fetcher: Fetcher,
    builder: RecordingBuilder,
    no_retry: RetryConfig,
) -> Resolver:
    """Provide a Resolver wired to the test store, fetcher and builder."""
    return Resolver(store, fetcher, builder, max_workers=4, retry=no_retry)


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "bash: test runs real bash subprocesses")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if shutil.which("bash") is not None:
        return
    skip_bash = pytest.mark.skip(reason="bash is not available")
    for item in items:
        if item.get_closest_marker("bash") is not None:
            item.add_marker(skip_bash)
