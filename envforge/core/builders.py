"""Pluggable package builders.

Defines the ``PackageBuilder`` Protocol that build backends must satisfy,
the default ``ScriptBuilder`` that runs a recipe's build script, and
``install_source`` for fetched packages without a build step.

Build environment of ``ScriptBuilder``:

- ``out``      the directory the package must be installed into
- ``src``      the fetched source, when the recipe has a ``url``
- ``name`` / ``version``
- one variable per input, named after it (``-`` and ``.`` become ``_``),
  holding the input's store path, plus ``inputs`` listing all of them
- ``PATH``     input bin directories followed by the system defaults
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
import urllib.parse
import zipfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from envforge.core.content_store import BuildFailure
from envforge.models.packages import PackageRef

logger = logging.getLogger(__name__)

_SYSTEM_PATH = ("/usr/local/bin", "/usr/bin", "/bin")
_INVALID_VAR_CHARS = re.compile(r"[^A-Za-z0-9_]")
_STDERR_TAIL = 2000


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class PackageBuilder(Protocol):
    """Protocol for package build backends.

    Any object with a matching ``build`` method satisfies this protocol.
    """

    def build(
        self,
        ref: PackageRef,
        out: Path,
        *,
        inputs: Mapping[str, Path],
        src: Path | None = None,
    ) -> None:
        """Build ``ref`` into the (existing, empty) directory ``out``.

        Parameters
        ----------
        ref:
            The package to build.
        out:
            Output directory; everything the package installs goes here.
        inputs:
            Store paths of the package's inputs, by name.
        src:
            The fetched source, when the recipe has a ``url``.

        Raises
        ------
        BuildFailure
            If the build does not succeed.
        """
        ...


# ---------------------------------------------------------------------------
# Default implementation
# ---------------------------------------------------------------------------


def input_variable(name: str) -> str:
    """Environment variable name under which an input's path is exposed."""
    var = _INVALID_VAR_CHARS.sub("_", name)
    return f"_{var}" if var[:1].isdigit() else var


class ScriptBuilder:
    """Runs a recipe's ``build`` script with ``bash -e``.

    Parameters
    ----------
    shell:
        Interpreter used for build scripts.
    timeout:
        Optional per-build timeout in seconds.
    """

    def __init__(self, shell: str = "bash", *, timeout: float | None = None) -> None:
        self._shell = shell
        self._timeout = timeout

    def build_environment(
        self,
        ref: PackageRef,
        out: Path,
        inputs: Mapping[str, Path],
        src: Path | None,
        tmp: Path,
    ) -> dict[str, str]:
        """The complete environment a build script runs with."""
        bin_dirs = [str(path / "bin") for path in inputs.values()]
        env = {
            "out": str(out),
            "name": ref.name,
            "version": ref.version,
            "inputs": " ".join(str(path) for path in inputs.values()),
            "PATH": os.pathsep.join([*bin_dirs, *_SYSTEM_PATH]),
            "HOME": str(tmp),
            "TMPDIR": str(tmp),
            "LC_ALL": "C",
        }
        if src is not None:
            env["src"] = str(src)
        for input_name, path in inputs.items():
            env[input_variable(input_name)] = str(path)
        return env

    def build(
        self,
        ref: PackageRef,
        out: Path,
        *,
        inputs: Mapping[str, Path],
        src: Path | None = None,
    ) -> None:
        if ref.recipe.build is None:
            raise BuildFailure(f"{ref.name} has no build script")
        with tempfile.TemporaryDirectory(prefix=f"envforge-build-{ref.name}-") as tmp:
            env = self.build_environment(ref, out, inputs, src, Path(tmp))
            logger.debug("Building %s %s in %s.", ref.name, ref.version, tmp)
            try:
                proc = subprocess.run(
                    [self._shell, "-e", "-c", ref.recipe.build],
                    cwd=tmp,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise BuildFailure(
                    f"build of {ref.name} timed out after {exc.timeout}s"
                ) from exc
            except OSError as exc:
                raise BuildFailure(f"cannot run builder for {ref.name}: {exc}") from exc
        if proc.returncode != 0:
            tail = proc.stderr.strip()[-_STDERR_TAIL:]
            raise BuildFailure(
                f"build of {ref.name} exited with status {proc.returncode}"
                + (f": {tail}" if tail else "")
            )


# ---------------------------------------------------------------------------
# Source installation
# ---------------------------------------------------------------------------


def _hoist_single_directory(out: Path, keep: Iterable[str] = ()) -> None:
    """If ``out`` holds exactly one directory not named in ``keep``, move its contents up."""
    children = list(out.iterdir())
    kept = {Path(d).parts[0] for d in keep if Path(d).parts}
    if len(children) != 1 or not children[0].is_dir() or children[0].name in kept:
        return
    top = children[0]
    holder = out / f".unpack-{top.name}"
    top.rename(holder)
    for child in holder.iterdir():
        child.rename(out / child.name)
    holder.rmdir()


def unpack_archive(archive: Path, out: Path, keep: Iterable[str] = ()) -> None:
    """Extract a tar or zip archive into ``out``.

    A single top-level directory is stripped, as source archives usually
    wrap their contents in one. Directories named in ``keep`` are part of
    the package layout and are never stripped.
    """
    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as tar:
            tar.extractall(out, filter="data")
    elif zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            root = out.resolve()
            for member in zf.namelist():
                if not (out / member).resolve().is_relative_to(root):
                    raise BuildFailure(f"archive member {member!r} escapes the output")
            zf.extractall(out)
    else:
        raise BuildFailure(f"{archive.name} is not a tar or zip archive")
    _hoist_single_directory(out, keep)


def install_source(ref: PackageRef, source: Path, out: Path) -> None:
    """Install a fetched source as the whole package output.

    Archives are unpacked when the recipe asks for it; otherwise the file
    is copied to ``dest`` (default: the URL's file name) inside ``out``.
    """
    recipe = ref.recipe
    if recipe.unpack:
        unpack_archive(source, out, keep=ref.bin_dirs)
        return
    url_name = Path(urllib.parse.urlparse(recipe.url or "").path).name
    dest_name = recipe.dest or url_name or source.name
    destination = out / dest_name
    if not destination.resolve().is_relative_to(out.resolve()):
        raise BuildFailure(f"dest {recipe.dest!r} of {ref.name} escapes the output")
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    if recipe.executable:
        destination.chmod(0o755)
