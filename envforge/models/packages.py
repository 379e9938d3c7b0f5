"""Package reference models — nodes of the build graph."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class PackageRecipe(BaseModel):
    """How a package's store output is produced.

    A recipe either carries a ``build`` script, a fetchable source
    (``url`` + ``sha256``), or both (the source is handed to the build
    script as ``$src``).  Source-only recipes are installed directly.
    """

    model_config = ConfigDict(frozen=True)

    build: str | None = None
    url: str | None = None
    sha256: str | None = None
    dest: str | None = None  # install path of a fetched file, relative to $out
    executable: bool = False
    unpack: bool = False

    @property
    def is_fetched_leaf(self) -> bool:
        """True when the output is the fetched source itself, with no build step."""
        return self.build is None

    def fingerprint(self) -> dict[str, Any]:
        """The recipe fields that influence the built output."""
        return {
            "build": self.build,
            "url": self.url,
            "sha256": self.sha256,
            "dest": self.dest,
            "executable": self.executable,
            "unpack": self.unpack,
        }


class PackageRef(BaseModel):
    """A package selected from the catalog.

    ``inputs`` holds identifiers of other packages rather than nested
    references; the full closure lives in ``DeclaredEnvironment.graph``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    version_constraint: str = ""  # constraint the package was selected under
    inputs: tuple[str, ...] = ()
    recipe: PackageRecipe = PackageRecipe()
    bin_dirs: tuple[str, ...] = ("bin",)
    description: str = ""


class ResolvedPackage(BaseModel):
    """A package realised in the content store."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    content_hash: str
    store_path: str
    bin_dirs: tuple[str, ...] = ("bin",)
