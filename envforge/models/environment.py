"""Declared and resolved environment models.

Variable values are a tagged variant.  Every value the evaluator produces
is one of ``StringValue``, ``PackageReference``, ``TemplateValue`` or
``Unset``; the resolver converts each with an explicit rule and never
coerces anything else.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from envforge.models.packages import PackageRef, ResolvedPackage


class StringValue(BaseModel):
    """A literal string."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["string"] = "string"
    value: str


class PackageReference(BaseModel):
    """A reference to a package; resolves to its store path."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["package"] = "package"
    name: str


class TemplateValue(BaseModel):
    """A string with ``${pkg}`` interpolations, kept as ordered parts."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["template"] = "template"
    parts: tuple[StringValue | PackageReference, ...] = ()

    def references(self) -> list[str]:
        """Package names referenced by this template, in order."""
        return [p.name for p in self.parts if isinstance(p, PackageReference)]


class Unset(BaseModel):
    """Remove the variable from the environment on activation."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["unset"] = "unset"


VariableValue = Annotated[
    Union[StringValue, PackageReference, TemplateValue, Unset],
    Field(discriminator="kind"),
]


class DeclaredEnvironment(BaseModel):
    """Evaluator output: the unresolved environment graph.

    ``packages`` are the requested packages in declaration order.
    ``graph`` is the arena holding every package of the input closure,
    addressed by name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "envforge-shell"
    packages: tuple[PackageRef, ...] = ()
    graph: dict[str, PackageRef] = {}
    variables: dict[str, VariableValue] = {}
    shell_hook: TemplateValue | None = None
    reserved: frozenset[str] = frozenset()
    catalog_revision: str = ""

    @property
    def package_names(self) -> list[str]:
        """Names of the requested packages, in order."""
        return [p.name for p in self.packages]


class ResolvedEnvironment(BaseModel):
    """Resolver output, ready for activation.

    A variable mapped to ``None`` is unset on activation.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "envforge-shell"
    packages: tuple[ResolvedPackage, ...] = ()
    variables: dict[str, str | None] = {}
    shell_hook: str = ""
    search_paths: tuple[str, ...] = ()
    environment_hash: str = ""
    catalog_revision: str = ""

    def store_paths(self) -> list[str]:
        """Store paths of the resolved packages, in order."""
        return [p.store_path for p in self.packages]
