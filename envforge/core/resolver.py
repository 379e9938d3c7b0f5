"""Resolver/Builder — turns a ``DeclaredEnvironment`` into a ``ResolvedEnvironment``.

Pipeline:
1. Order the package arena topologically (cycles fail before any build).
2. Check that every interpolation names a requested package.
3. Compute content hashes in topological order.
4. Reuse a cached environment when every package is still in the store.
5. Realise packages on a thread pool; a package is submitted once all of
   its inputs are realised.  Each realisation goes through the store's
   reserve / commit protocol, so concurrent resolvers sharing a store
   build each hash at most once.
6. Substitute interpolations and derive the search paths.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path

from envforge.core.builders import PackageBuilder, ScriptBuilder, install_source
from envforge.core.content_store import BuildFailure, ContentStore
from envforge.core.fetcher import Fetcher, IntegrityError, RetryConfig, retry_with_backoff
from envforge.core.hasher import compute_content_hash, compute_environment_hash
from envforge.core.package_graph import PackageGraph
from envforge.models.environment import (
    DeclaredEnvironment,
    PackageReference,
    ResolvedEnvironment,
    StringValue,
    TemplateValue,
    Unset,
    VariableValue,
)
from envforge.models.packages import PackageRef, ResolvedPackage
from envforge.models.store import ReservationStatus

logger = logging.getLogger(__name__)


class UnresolvedReferenceError(ValueError):
    """Raised when an interpolation names a package that was not requested."""

    def __init__(self, variable: str, reference: str) -> None:
        super().__init__(
            f"{variable} references {reference!r}, which is not in packages"
        )
        self.variable = variable
        self.reference = reference


def _references(value: VariableValue) -> list[str]:
    if isinstance(value, PackageReference):
        return [value.name]
    if isinstance(value, TemplateValue):
        return value.references()
    return []


def substitute(value: VariableValue, paths: dict[str, str]) -> str | None:
    """Render a variable value with package references replaced by store paths.

    Single left-to-right pass: substituted text is never scanned again, so
    a store path (or literal) containing ``${...}`` stays as it is.
    Returns None for ``Unset``.
    """
    if isinstance(value, Unset):
        return None
    if isinstance(value, StringValue):
        return value.value
    if isinstance(value, PackageReference):
        return paths[value.name]
    pieces: list[str] = []
    for part in value.parts:
        pieces.append(paths[part.name] if isinstance(part, PackageReference) else part.value)
    return "".join(pieces)


def search_paths_for(packages: list[ResolvedPackage]) -> list[str]:
    """Bin directories of ``packages`` in order, first occurrence wins.

    Only directories that exist are included.
    """
    seen: dict[str, None] = {}
    for pkg in packages:
        for bin_dir in pkg.bin_dirs:
            candidate = Path(pkg.store_path) / bin_dir
            if candidate.is_dir():
                seen.setdefault(str(candidate), None)
    return list(seen)


class Resolver:
    """Resolves declared environments against a content store.

    Parameters
    ----------
    store:
        The content store packages are realised in.
    fetcher:
        Fetcher for recipes with a ``url``. Required only when such
        packages need building.
    builder:
        Backend for recipes with a ``build`` script.
    max_workers:
        Size of the build thread pool.
    retry:
        Retry policy applied to ``NetworkError`` while fetching.
    """

    def __init__(
        self,
        store: ContentStore,
        fetcher: Fetcher | None = None,
        builder: PackageBuilder | None = None,
        *,
        max_workers: int = 4,
        retry: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._builder = builder or ScriptBuilder()
        self._max_workers = max(1, max_workers)
        self._retry = retry or RetryConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, declared: DeclaredEnvironment) -> dict[str, str]:
        """Validate the graph and references; return content hashes by name.

        Nothing is built.  Raises ``CyclicDependencyError`` or
        ``UnresolvedReferenceError``.
        """
        graph = PackageGraph(declared.graph)
        self._check_references(declared)
        return self._compute_hashes(graph)

    def resolve(self, declared: DeclaredEnvironment) -> ResolvedEnvironment:
        """Resolve a declared environment, building what is missing.

        Raises ``CyclicDependencyError``, ``UnresolvedReferenceError``,
        ``BuildFailure``, ``IntegrityError`` or ``NetworkError``.
        """
        graph = PackageGraph(declared.graph)
        self._check_references(declared)
        hashes = self._compute_hashes(graph)
        environment_hash = compute_environment_hash(declared, hashes)

        cached = self._store.lookup_environment(environment_hash)
        if cached is not None and self._is_intact(cached):
            logger.info("Reusing environment %s (%s).", declared.name, environment_hash[:12])
            return cached

        paths = self._realise_all(graph, hashes)
        resolved = self._assemble(declared, hashes, paths, environment_hash)
        self._store.record_environment(resolved)
        logger.info(
            "Resolved environment %s: %d packages, %d search paths.",
            declared.name,
            len(resolved.packages),
            len(resolved.search_paths),
        )
        return resolved

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def _check_references(declared: DeclaredEnvironment) -> None:
        requested = set(declared.package_names)
        for name, value in declared.variables.items():
            for reference in _references(value):
                if reference not in requested:
                    raise UnresolvedReferenceError(name, reference)
        if declared.shell_hook is not None:
            for reference in declared.shell_hook.references():
                if reference not in requested:
                    raise UnresolvedReferenceError("shellHook", reference)

    @staticmethod
    def _compute_hashes(graph: PackageGraph) -> dict[str, str]:
        hashes: dict[str, str] = {}
        for name in graph.order:
            hashes[name] = compute_content_hash(graph.get(name), hashes)
        return hashes

    def _is_intact(self, resolved: ResolvedEnvironment) -> bool:
        for pkg in resolved.packages:
            entry = self._store.lookup(pkg.content_hash)
            if entry is None or not entry.is_built or not Path(pkg.store_path).exists():
                return False
        return True

    # ------------------------------------------------------------------
    # Realisation
    # ------------------------------------------------------------------

    def _realise_all(self, graph: PackageGraph, hashes: dict[str, str]) -> dict[str, Path]:
        """Realise every package, inputs first, independent branches in parallel."""
        done: dict[str, Path] = {}
        submitted: set[str] = set()
        futures: dict[Future[Path], str] = {}

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="envforge-build"
        ) as pool:

            def submit_ready() -> None:
                for name in graph.order:
                    if name in submitted:
                        continue
                    if all(dep in done for dep in graph.get_inputs(name)):
                        submitted.add(name)
                        inputs = {dep: done[dep] for dep in graph.get_inputs(name)}
                        future = pool.submit(
                            self._realise, graph.get(name), hashes[name], inputs
                        )
                        futures[future] = name

            submit_ready()
            while futures:
                finished, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in finished:
                    name = futures.pop(future)
                    try:
                        done[name] = future.result()
                    except BaseException:
                        for pending in futures:
                            pending.cancel()
                        skipped = graph.get_dependents(name)
                        if skipped:
                            logger.warning(
                                "%s failed; not building %s.", name, ", ".join(skipped)
                            )
                        raise
                submit_ready()
        return done

    def _realise(self, ref: PackageRef, content_hash: str, inputs: dict[str, Path]) -> Path:
        """Return the store path of one package, building it if needed."""
        reservation = self._store.reserve(content_hash, name=ref.name, version=ref.version)
        if reservation.status is ReservationStatus.BUILT:
            logger.debug("%s is already built at %s.", ref.name, reservation.entry.path)
            return reservation.entry.path

        with reservation.slot as slot:
            try:
                src = self._fetch_source(ref)
            except IntegrityError:
                slot.release()
                raise
            try:
                if ref.recipe.is_fetched_leaf:
                    install_source(ref, src, slot.staging_path)
                else:
                    self._builder.build(ref, slot.staging_path, inputs=inputs, src=src)
            except BuildFailure as exc:
                exc.content_hash = content_hash
                raise
            except OSError as exc:
                raise BuildFailure(f"build of {ref.name} failed: {exc}", content_hash) from exc
            entry = slot.commit()
        return entry.path

    def _fetch_source(self, ref: PackageRef) -> Path | None:
        recipe = ref.recipe
        if recipe.url is None:
            return None
        if self._fetcher is None:
            raise BuildFailure(f"{ref.name} needs fetching but no fetcher is configured")
        return retry_with_backoff(
            lambda: self._fetcher.fetch(recipe.url, recipe.sha256),
            self._retry,
        )

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _assemble(
        declared: DeclaredEnvironment,
        hashes: dict[str, str],
        paths: dict[str, Path],
        environment_hash: str,
    ) -> ResolvedEnvironment:
        packages = [
            ResolvedPackage(
                name=ref.name,
                version=ref.version,
                content_hash=hashes[ref.name],
                store_path=str(paths[ref.name]),
                bin_dirs=ref.bin_dirs,
            )
            for ref in declared.packages
        ]
        store_paths = {pkg.name: pkg.store_path for pkg in packages}
        variables = {
            name: substitute(value, store_paths)
            for name, value in declared.variables.items()
        }
        shell_hook = ""
        if declared.shell_hook is not None:
            shell_hook = substitute(declared.shell_hook, store_paths) or ""
        return ResolvedEnvironment(
            name=declared.name,
            packages=tuple(packages),
            variables=variables,
            shell_hook=shell_hook,
            search_paths=tuple(search_paths_for(packages)),
            environment_hash=environment_hash,
            catalog_revision=declared.catalog_revision,
        )
