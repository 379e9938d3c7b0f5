"""Explicit, mutable process-environment context.

Activation never touches ``os.environ`` directly; it mutates a
``ProcessEnvironment``, which callers turn into a real environment with
``to_environ()`` (for a subprocess) or ``apply_to_os()``.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator, Mapping


class ProcessEnvironment:
    """Variables plus an ordered search path for one process.

    Parameters
    ----------
    variables:
        Initial variables. Copied; the mapping passed in is not modified.
    path_variable:
        Name of the variable holding the search path.
    """

    def __init__(
        self,
        variables: Mapping[str, str] | None = None,
        *,
        path_variable: str = "PATH",
    ) -> None:
        self._vars: dict[str, str] = dict(variables or {})
        self.path_variable = path_variable

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> ProcessEnvironment:
        """Snapshot ``environ`` (default: ``os.environ``)."""
        return cls(os.environ if environ is None else environ)

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._vars.get(name, default)

    def set(self, name: str, value: str) -> None:
        self._vars[name] = value

    def unset(self, name: str) -> None:
        self._vars.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._vars

    def __iter__(self) -> Iterator[str]:
        return iter(self._vars)

    def __len__(self) -> int:
        return len(self._vars)

    # ------------------------------------------------------------------
    # Search path
    # ------------------------------------------------------------------

    @property
    def search_path(self) -> list[str]:
        """The search path as a list; empty entries are dropped."""
        raw = self._vars.get(self.path_variable, "")
        return [entry for entry in raw.split(os.pathsep) if entry]

    def prepend_search_paths(self, paths: Iterable[str]) -> list[str]:
        """Put ``paths`` in front of the search path, in the given order.

        Entries already on the path are moved to the front rather than
        duplicated; every other prior entry keeps its relative order.
        Returns the new search path.
        """
        front = list(dict.fromkeys(paths))
        placed = set(front)
        rest = [entry for entry in self.search_path if entry not in placed]
        new_path = front + rest
        self._vars[self.path_variable] = os.pathsep.join(new_path)
        return new_path

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_environ(self) -> dict[str, str]:
        """A copy suitable for ``subprocess`` ``env=``."""
        return dict(self._vars)

    def apply_changes(self, after: Mapping[str, str], ignore: Iterable[str] = ()) -> None:
        """Replace the variables with ``after``, keeping ``ignore``d names as they are."""
        skipped = set(ignore)
        for name in list(self._vars):
            if name not in skipped and name not in after:
                del self._vars[name]
        for name, value in after.items():
            if name not in skipped:
                self._vars[name] = value

    def apply_to_os(self) -> None:
        """Make ``os.environ`` match this environment."""
        for name in list(os.environ):
            if name not in self._vars:
                del os.environ[name]
        os.environ.update(self._vars)
