"""Shell hook execution.

A ``shellHook`` is opaque shell text.  ``ShellHookRunner`` runs it in a
child shell and reports the environment the hook left behind, so that an
``export`` inside the hook takes effect in the activated environment just
as it would in an interactive shell.

The child environment is captured from an ``EXIT`` trap, so it is
reported even when the hook fails part way through.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Variables the shell maintains for itself; never copied back.
SHELL_MANAGED_VARIABLES = frozenset({"_", "SHLVL", "PWD", "OLDPWD"})

_DUMP_FUNCTION = """\
__envforge_dump() {
    local __envforge_name
    while IFS= read -r __envforge_name; do
        printf '%%s=%%s\\0' "$__envforge_name" "${!__envforge_name}"
    done < <(compgen -e) > %s
}
trap __envforge_dump EXIT
"""


class HookFailed(RuntimeError):
    """Raised when a shell hook exits non-zero or cannot be run."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class HookExecution(BaseModel):
    """Outcome of one hook run.

    ``environ_after`` is None when the environment could not be captured.
    """

    model_config = ConfigDict(frozen=True)

    returncode: int
    stdout: str = ""
    stderr: str = ""
    environ_after: dict[str, str] | None = None

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


@runtime_checkable
class HookRunner(Protocol):
    """Protocol for hook interpreters."""

    def run(self, script: str, environ: Mapping[str, str]) -> HookExecution:
        """Run ``script`` with ``environ``.

        Raises ``HookFailed`` only when the hook cannot be run at all; a
        non-zero exit is reported through ``HookExecution.returncode``.
        """
        ...


def parse_env_dump(data: bytes) -> dict[str, str]:
    """Parse NUL-separated ``NAME=value`` records."""
    environ: dict[str, str] = {}
    for record in data.split(b"\0"):
        if not record:
            continue
        name, sep, value = record.decode("utf-8", errors="surrogateescape").partition("=")
        if sep and name:
            environ[name] = value
    return environ


class ShellHookRunner:
    """Runs hooks with ``bash -c``.

    Parameters
    ----------
    shell:
        Interpreter; must be bash-compatible (``compgen``, ``${!name}``).
    timeout:
        Optional timeout in seconds.
    """

    def __init__(self, shell: str = "bash", *, timeout: float | None = None) -> None:
        self._shell = shell
        self._timeout = timeout

    def run(self, script: str, environ: Mapping[str, str]) -> HookExecution:
        with tempfile.TemporaryDirectory(prefix="envforge-hook-") as tmp:
            dump = Path(tmp) / "environ"
            wrapped = _DUMP_FUNCTION % shlex.quote(str(dump)) + script
            try:
                proc = subprocess.run(
                    [shutil.which(self._shell) or self._shell, "-c", wrapped],
                    env=dict(environ),
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise HookFailed(f"shellHook timed out after {exc.timeout}s") from exc
            except OSError as exc:
                raise HookFailed(f"cannot run {self._shell}: {exc}") from exc

            environ_after = parse_env_dump(dump.read_bytes()) if dump.exists() else None
        if environ_after is None:
            logger.warning("shellHook environment could not be captured.")
        return HookExecution(
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            environ_after=environ_after,
        )
