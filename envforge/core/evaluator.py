"""Evaluator — turns spec source into a ``DeclaredEnvironment``.

Evaluation is a pure transform: it parses the source, classifies every
top-level attribute, converts variable values into the tagged
``VariableValue`` variant, and collects the input closure of the
requested packages from the catalog into a name-addressed arena.

Interpolation references are not checked here; the resolver reports
references to packages that were not requested.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from envforge.core.catalog import PackageCatalog, satisfies
from envforge.core.spec_parser import (
    AttrSetLit,
    Ident,
    ListLit,
    Literal,
    Node,
    SpecSyntaxError,  # noqa: F401 (re-exported)
    StringLit,
    parse_spec,
)
from envforge.models.environment import (
    DeclaredEnvironment,
    PackageReference,
    StringValue,
    TemplateValue,
    Unset,
    VariableValue,
)
from envforge.models.packages import PackageRef

logger = logging.getLogger(__name__)

DEFAULT_RESERVED_VARIABLES: frozenset[str] = frozenset({"PS1", "PATH"})

# Keys listing packages; together with inputsFrom, shellHook and name these
# are the keys with a meaning of their own. Everything else is a variable.
PACKAGE_KEYS = ("packages", "buildInputs", "nativeBuildInputs")


class EvaluationError(ValueError):
    """Base class for errors raised while evaluating a spec."""


class ReservedVariableError(EvaluationError):
    """Raised when a spec assigns a reserved variable directly."""

    def __init__(self, variable: str) -> None:
        super().__init__(
            f"{variable} is reserved and cannot be assigned directly; "
            f"set it from shellHook instead."
        )
        self.variable = variable


class TypeCoercionError(EvaluationError):
    """Raised when a value cannot be converted to the type a key requires."""


class UnknownPackageError(EvaluationError):
    """Raised when a package identifier is not in the catalog."""

    def __init__(self, name: str, required_by: str | None = None) -> None:
        where = f" (input of {required_by!r})" if required_by else ""
        super().__init__(f"Unknown package {name!r}{where}")
        self.name = name
        self.required_by = required_by


class VersionConstraintError(EvaluationError):
    """Raised when the catalog version does not meet a declared constraint."""


def package_identifier(name: str) -> str:
    """Normalise a package identifier: ``pkgs.git`` and ``git`` are the same."""
    return name.removeprefix("pkgs.")


def _describe(node: Node) -> str:
    if isinstance(node, ListLit):
        return "a list"
    if isinstance(node, AttrSetLit):
        return "an attribute set"
    if isinstance(node, StringLit):
        return "a string"
    if isinstance(node, Ident):
        return "a package reference"
    return type(node.value).__name__


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _template(node: StringLit) -> TemplateValue:
    parts: list[StringValue | PackageReference] = []
    for part in node.parts:
        if isinstance(part, Ident):
            parts.append(PackageReference(name=package_identifier(part.name)))
        elif part:
            parts.append(StringValue(value=part))
    return TemplateValue(parts=tuple(parts))


def coerce_variable(key: str, node: Node) -> VariableValue:
    """Convert a syntax node into a variable value.

    Rules: strings stay strings (templates when interpolated), identifiers
    are package references, numbers become their decimal text, ``true``
    is ``"1"`` and ``false`` is ``""``, ``null`` unsets the variable.
    Lists and attribute sets cannot be coerced.
    """
    if isinstance(node, StringLit):
        if node.is_plain:
            return StringValue(value=node.text)
        return _template(node)
    if isinstance(node, Ident):
        return PackageReference(name=package_identifier(node.name))
    if isinstance(node, Literal):
        if node.value is None:
            return Unset()
        if isinstance(node.value, bool):
            return StringValue(value="1" if node.value else "")
        return StringValue(value=str(node.value))
    raise TypeCoercionError(
        f"Cannot coerce {_describe(node)} to a string for variable {key!r} "
        f"(line {node.line}, column {node.column})"
    )


def _package_list(key: str, node: Node) -> list[str]:
    if not isinstance(node, ListLit):
        raise TypeCoercionError(
            f"{key!r} must be a list of package references, got {_describe(node)}"
        )
    names: list[str] = []
    for item in node.items:
        if not isinstance(item, Ident):
            raise TypeCoercionError(
                f"{key!r} entries must be package references, got {_describe(item)} "
                f"(line {item.line}, column {item.column})"
            )
        names.append(package_identifier(item.name))
    return names


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class Evaluator:
    """Evaluates spec source against a pinned package catalog.

    Parameters
    ----------
    catalog:
        The package set identifiers are looked up in.
    reserved:
        Variable names a spec may not assign directly.
    """

    def __init__(
        self,
        catalog: PackageCatalog,
        reserved: Iterable[str] | None = None,
    ) -> None:
        self._catalog = catalog
        self._reserved = (
            frozenset(reserved) if reserved is not None else DEFAULT_RESERVED_VARIABLES
        )

    @property
    def reserved(self) -> frozenset[str]:
        return self._reserved

    def evaluate(self, source: str) -> DeclaredEnvironment:
        """Evaluate spec source text.

        Raises ``SpecSyntaxError``, ``ReservedVariableError``,
        ``TypeCoercionError``, ``UnknownPackageError`` or
        ``VersionConstraintError``.
        """
        return self.evaluate_attrs(parse_spec(source))

    def evaluate_attrs(self, attrs: AttrSetLit) -> DeclaredEnvironment:
        """Evaluate an already parsed top-level attribute set."""
        requested: list[str] = []
        variables: dict[str, VariableValue] = {}
        shell_hook: TemplateValue | None = None
        name = "envforge-shell"

        for key, node in attrs.bindings.items():
            if key in PACKAGE_KEYS or key == "inputsFrom":
                continue  # collected below, in a fixed key order
            if key == "shellHook":
                if not isinstance(node, StringLit):
                    raise TypeCoercionError(f"shellHook must be a string, got {_describe(node)}")
                # Opaque escape hatch: the hook text is not validated.
                shell_hook = _template(node)
            elif key == "name":
                if not isinstance(node, StringLit) or not node.is_plain:
                    raise TypeCoercionError("name must be a plain string")
                name = node.text
            elif key in self._reserved:
                raise ReservedVariableError(key)
            else:
                variables[key] = coerce_variable(key, node)

        for key in PACKAGE_KEYS:
            if key in attrs.bindings:
                requested.extend(_package_list(key, attrs.bindings[key]))
        if "inputsFrom" in attrs.bindings:
            for source_pkg in _package_list("inputsFrom", attrs.bindings["inputsFrom"]):
                if source_pkg not in self._catalog:
                    raise UnknownPackageError(source_pkg)
                requested.extend(dep for dep, _ in self._catalog.input_specs(source_pkg))

        ordered = list(dict.fromkeys(requested))
        graph = self._closure(ordered)
        declared = DeclaredEnvironment(
            name=name,
            packages=tuple(graph[pkg] for pkg in ordered),
            graph=graph,
            variables=variables,
            shell_hook=shell_hook,
            reserved=self._reserved,
            catalog_revision=self._catalog.revision,
        )
        logger.debug(
            "Evaluated %r: %d packages (%d in closure), %d variables.",
            name,
            len(declared.packages),
            len(graph),
            len(variables),
        )
        return declared

    def _closure(self, roots: list[str]) -> dict[str, PackageRef]:
        """Collect every package reachable from ``roots`` (BFS, visited set).

        Cycles are left in place for the resolver to report.
        """
        graph: dict[str, PackageRef] = {}
        queue: deque[tuple[str, str, str | None]] = deque(
            (root, "", None) for root in roots
        )
        while queue:
            pkg, constraint, required_by = queue.popleft()
            if pkg not in self._catalog:
                raise UnknownPackageError(pkg, required_by)
            version = self._catalog.get(pkg).version
            try:
                ok = satisfies(version, constraint)
            except ValueError as exc:
                raise VersionConstraintError(str(exc)) from exc
            if not ok:
                raise VersionConstraintError(
                    f"{required_by!r} requires {pkg}{constraint}, "
                    f"but the catalog provides {pkg} {version}"
                )
            if pkg in graph:
                continue
            graph[pkg] = self._catalog.package_ref(pkg, constraint)
            for dep, dep_constraint in self._catalog.input_specs(pkg):
                queue.append((dep, dep_constraint, pkg))
        return graph


def evaluate(
    source: str,
    catalog: PackageCatalog,
    *,
    reserved: Iterable[str] | None = None,
) -> DeclaredEnvironment:
    """Evaluate spec source text against ``catalog``."""
    return Evaluator(catalog, reserved=reserved).evaluate(source)


