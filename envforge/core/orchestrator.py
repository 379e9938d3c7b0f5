"""Environment orchestrator — wires the pipeline together.

The Orchestrator builds the catalog, content store, fetcher, resolver and
activator from an ``EnvforgeConfig`` and runs the three phases a spec
goes through: evaluate, resolve, activate.  Components can be injected,
which is how the tests replace the network and the build backend.
"""

from __future__ import annotations

import logging
from pathlib import Path

from envforge.config import EnvforgeConfig, config
from envforge.core.activator import Activator, render_activation_script
from envforge.core.builders import PackageBuilder, ScriptBuilder
from envforge.core.catalog import PackageCatalog
from envforge.core.content_store import ContentStore
from envforge.core.evaluator import Evaluator
from envforge.core.fetcher import Fetcher, RetryConfig
from envforge.core.hooks import HookRunner, ShellHookRunner
from envforge.core.process_env import ProcessEnvironment
from envforge.core.resolver import Resolver
from envforge.models.activation import ActivationResult
from envforge.models.environment import DeclaredEnvironment, ResolvedEnvironment

logger = logging.getLogger(__name__)


class Orchestrator:
    """Evaluate, resolve and activate environment specs.

    Parameters
    ----------
    settings:
        Runtime configuration. Defaults to the module-level ``config``.
    catalog:
        Package catalog. Loaded from ``settings.catalog_path`` on first use
        if not provided.
    store, fetcher, builder, hook_runner:
        Optional component overrides.
    """

    def __init__(
        self,
        settings: EnvforgeConfig | None = None,
        *,
        catalog: PackageCatalog | None = None,
        store: ContentStore | None = None,
        fetcher: Fetcher | None = None,
        builder: PackageBuilder | None = None,
        hook_runner: HookRunner | None = None,
    ) -> None:
        self.settings = settings or config
        self._catalog = catalog
        self.store = store or ContentStore(
            self.settings.store_path,
            self.settings.resolved_store_db_path,
            stale_after=self.settings.stale_build_seconds,
        )
        self._fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self._builder = builder or ScriptBuilder()
        self._resolver: Resolver | None = None
        self.activator = Activator(
            reserved=self.settings.reserved_variables,
            hook_runner=hook_runner or ShellHookRunner(self.settings.hook_shell),
        )

    # ------------------------------------------------------------------
    # Lazily built components
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> PackageCatalog:
        if self._catalog is None:
            self._catalog = PackageCatalog.load(self.settings.catalog_path)
        return self._catalog

    @property
    def fetcher(self) -> Fetcher:
        if self._fetcher is None:
            self._fetcher = Fetcher(
                self.settings.fetch_cache_path,
                timeout=self.settings.fetch_timeout_seconds,
            )
        return self._fetcher

    @property
    def resolver(self) -> Resolver:
        if self._resolver is None:
            self._resolver = Resolver(
                self.store,
                self.fetcher,
                self._builder,
                max_workers=self.settings.max_workers,
                retry=RetryConfig(
                    max_retries=self.settings.fetch_max_retries,
                    base_delay=self.settings.fetch_backoff_seconds,
                ),
            )
        return self._resolver

    @property
    def evaluator(self) -> Evaluator:
        return Evaluator(self.catalog, reserved=self.settings.reserved_variables)

    def close(self) -> None:
        """Release the HTTP client of a fetcher we created."""
        if self._owns_fetcher and self._fetcher is not None:
            self._fetcher.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def evaluate(self, source: str) -> DeclaredEnvironment:
        """Parse and evaluate spec source text."""
        return self.evaluator.evaluate(source)

    def evaluate_file(self, path: Path) -> DeclaredEnvironment:
        """Evaluate the spec stored at ``path``."""
        source = Path(path).read_text(encoding="utf-8")
        logger.debug("Evaluating %s.", path)
        return self.evaluate(source)

    def resolve(self, source: str) -> ResolvedEnvironment:
        """Evaluate and resolve spec source text."""
        return self.resolver.resolve(self.evaluate(source))

    def activate(
        self,
        source: str,
        process_env: ProcessEnvironment | None = None,
    ) -> tuple[ResolvedEnvironment, ProcessEnvironment, ActivationResult]:
        """Evaluate, resolve and activate; return all three results.

        ``process_env`` defaults to a snapshot of the current process
        environment.  Resolution errors propagate before it is touched.
        """
        resolved = self.resolve(source)
        target = process_env if process_env is not None else ProcessEnvironment.from_environ()
        result = self.activator.activate(resolved, target)
        return resolved, target, result

    def activation_script(self, source: str) -> str:
        """Evaluate, resolve and render a script to ``source`` in a shell."""
        resolved = self.resolve(source)
        return render_activation_script(resolved, self.activator.reserved)
