"""Pinned package catalog — the package set specs are resolved against.

A catalog is a TOML document with a ``revision`` and one table per
package::

    revision = "2024.05"

    [packages.hello]
    version = "2.12"
    inputs = ["zlib>=1.3"]
    build = "mkdir -p $out/bin && cp $src $out/bin/hello"
    url = "https://example.org/hello-2.12.sh"
    sha256 = "sha256:..."

The revision together with the catalog contents is the pinned input set:
resolving the same spec against the same catalog always yields the same
content hashes.
"""

from __future__ import annotations

import logging
import re
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from envforge.core.hasher import normalize_sha256
from envforge.models.packages import PackageRecipe, PackageRef

logger = logging.getLogger(__name__)

_INPUT_SPEC = re.compile(
    r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_.+-]*?)\s*(?P<constraint>(?:==|!=|>=|<=|>|<|~=).*)?$"
)
_CLAUSE = re.compile(r"^\s*(?P<op>==|!=|>=|<=|>|<|~=)\s*(?P<version>[A-Za-z0-9_.+-]+)\s*$")


class CatalogError(ValueError):
    """Raised when a catalog file is missing or malformed."""


class CatalogEntry(BaseModel):
    """One package definition in the catalog."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str
    description: str = ""
    inputs: list[str] = []
    build: str | None = None
    url: str | None = None
    sha256: str | None = None
    dest: str | None = None
    executable: bool = False
    unpack: bool = False
    bin_dirs: list[str] = ["bin"]

    @model_validator(mode="after")
    def _check_recipe(self) -> CatalogEntry:
        if self.build is None and self.url is None:
            raise ValueError("a package needs a 'build' script, a 'url', or both")
        if self.url is not None and not self.sha256:
            raise ValueError("a fetched package needs a 'sha256'")
        if self.sha256:
            normalize_sha256(self.sha256)
        for raw in self.inputs:
            parse_input_spec(raw)
        return self


# ---------------------------------------------------------------------------
# Version constraints
# ---------------------------------------------------------------------------


def parse_input_spec(raw: str) -> tuple[str, str]:
    """Split ``"zlib>=1.3"`` into ``("zlib", ">=1.3")``."""
    match = _INPUT_SPEC.match(raw)
    if match is None:
        raise ValueError(f"Malformed input specification: {raw!r}")
    return match.group("name"), (match.group("constraint") or "").strip()


def _version_key(version: str) -> tuple[tuple[int, Any], ...]:
    """Order versions component-wise; numeric parts compare as numbers."""
    parts = re.split(r"[.+-]", version)
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts if p)


def satisfies(version: str, constraint: str) -> bool:
    """Return True if ``version`` meets every clause of ``constraint``.

    Clauses are comma separated: ``">=1.2,<2"``.  ``~=1.4`` means
    ``>=1.4`` within the same release series (``<2`` for ``~=1.4``).
    Raises ``ValueError`` for malformed clauses.
    """
    if not constraint.strip():
        return True
    have = _version_key(version)
    for clause in constraint.split(","):
        match = _CLAUSE.match(clause)
        if match is None:
            raise ValueError(f"Malformed version constraint: {constraint!r}")
        op, want_raw = match.group("op"), match.group("version")
        want = _version_key(want_raw)
        if op == "==":
            ok = have == want
        elif op == "!=":
            ok = have != want
        elif op == ">=":
            ok = have >= want
        elif op == "<=":
            ok = have <= want
        elif op == ">":
            ok = have > want
        elif op == "<":
            ok = have < want
        else:  # ~=
            series = want[:-1] if len(want) > 1 else want
            ok = have >= want and have[: len(series)] == series
        if not ok:
            return False
    return True


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class PackageCatalog:
    """Name -> package definition lookup, pinned to a revision.

    Parameters
    ----------
    entries:
        Package definitions keyed by identifier.
    revision:
        Identifier of this pinned package set.
    """

    def __init__(self, entries: Mapping[str, CatalogEntry], revision: str = "") -> None:
        self._entries = dict(entries)
        self.revision = revision

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PackageCatalog:
        """Build a catalog from parsed TOML (or an equivalent dict)."""
        revision = str(data.get("revision", ""))
        packages = data.get("packages", {})
        if not isinstance(packages, Mapping):
            raise CatalogError("'packages' must be a table of package definitions")
        entries: dict[str, CatalogEntry] = {}
        for name, raw in packages.items():
            try:
                entries[name] = CatalogEntry.model_validate(raw)
            except ValidationError as exc:
                raise CatalogError(f"Invalid definition for package {name!r}: {exc}") from exc
        return cls(entries, revision=revision)

    @classmethod
    def load(cls, path: Path) -> PackageCatalog:
        """Load a catalog from a TOML file."""
        path = Path(path)
        if not path.exists():
            raise CatalogError(f"Catalog not found: {path}")
        try:
            with path.open("rb") as fh:
                data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise CatalogError(f"Catalog {path} is not valid TOML: {exc}") from exc
        catalog = cls.from_mapping(data)
        logger.debug(
            "Loaded catalog %s (revision %r, %d packages).",
            path,
            catalog.revision,
            len(catalog),
        )
        return catalog

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str) -> CatalogEntry | None:
        return self._entries.get(name)

    def input_specs(self, name: str) -> list[tuple[str, str]]:
        """Return ``(input_name, constraint)`` pairs for a package."""
        return [parse_input_spec(raw) for raw in self._entries[name].inputs]

    def package_ref(self, name: str, constraint: str = "") -> PackageRef:
        """Build the ``PackageRef`` for a catalog entry.

        Raises ``KeyError`` if the package is not in the catalog.
        """
        entry = self._entries[name]
        return PackageRef(
            name=name,
            version=entry.version,
            version_constraint=constraint,
            inputs=tuple(dep for dep, _ in self.input_specs(name)),
            recipe=PackageRecipe(
                build=entry.build,
                url=entry.url,
                sha256=normalize_sha256(entry.sha256) if entry.sha256 else None,
                dest=entry.dest,
                executable=entry.executable,
                unpack=entry.unpack,
            ),
            bin_dirs=tuple(entry.bin_dirs),
            description=entry.description,
        )
