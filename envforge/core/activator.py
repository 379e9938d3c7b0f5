"""Activator — applies a resolved environment to a process environment.

Activation is ordered and single-threaded:

1. Reject (and report) reserved variables.
2. Export the remaining variables; ``None`` unsets.
3. Prepend the search paths.
4. Run the shell hook.

Every step moves the activation state machine forward through
``VALID_TRANSITIONS``.  A failing hook is recorded on the result and
logged; steps 1-3 are not rolled back and the environment still counts
as activated.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
from collections.abc import Iterable

from envforge.core.evaluator import DEFAULT_RESERVED_VARIABLES
from envforge.core.hooks import (
    SHELL_MANAGED_VARIABLES,
    HookFailed,
    HookRunner,
    ShellHookRunner,
)
from envforge.core.process_env import ProcessEnvironment
from envforge.models.activation import (
    VALID_TRANSITIONS,
    ActivationResult,
    ActivationState,
)
from envforge.models.environment import ResolvedEnvironment

logger = logging.getLogger(__name__)

_SHELL_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class InvalidTransitionError(RuntimeError):
    """Raised when an activation step is taken out of order."""


def advance(current: ActivationState, target: ActivationState) -> ActivationState:
    """Return ``target`` if the transition is allowed, else raise."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition activation from {current.value} to {target.value}. "
            f"Allowed: {[s.value for s in allowed]}"
        )
    return target


class Activator:
    """Activates resolved environments.

    Parameters
    ----------
    reserved:
        Variables the activator manages itself; any of them present in a
        resolved environment's variables is rejected.
    hook_runner:
        Interpreter for ``shell_hook``. Defaults to ``ShellHookRunner``.
    """

    def __init__(
        self,
        reserved: Iterable[str] | None = None,
        hook_runner: HookRunner | None = None,
    ) -> None:
        self._reserved = (
            frozenset(reserved) if reserved is not None else DEFAULT_RESERVED_VARIABLES
        )
        self._hook_runner = hook_runner or ShellHookRunner()

    @property
    def reserved(self) -> frozenset[str]:
        return self._reserved

    def activate(
        self, resolved: ResolvedEnvironment, process_env: ProcessEnvironment
    ) -> ActivationResult:
        """Apply ``resolved`` to ``process_env`` in place."""
        state = ActivationState.NOT_ACTIVATED
        warnings: list[str] = []

        # Step 1: reserved variables
        rejected = tuple(name for name in resolved.variables if name in self._reserved)
        for name in rejected:
            message = f"{name} is reserved and was not set; set it from shellHook instead"
            logger.warning(message)
            warnings.append(message)

        # Step 2: variables
        exported: list[str] = []
        unset: list[str] = []
        for name, value in resolved.variables.items():
            if name in rejected:
                continue
            if value is None:
                process_env.unset(name)
                unset.append(name)
            else:
                process_env.set(name, value)
                exported.append(name)
        state = advance(state, ActivationState.VARIABLES_SET)

        # Step 3: search path
        process_env.prepend_search_paths(resolved.search_paths)
        state = advance(state, ActivationState.PATH_EXTENDED)

        # Step 4: shell hook
        hook_error: HookFailed | None = None
        stdout = stderr = ""
        if resolved.shell_hook.strip():
            try:
                execution = self._hook_runner.run(
                    resolved.shell_hook, process_env.to_environ()
                )
            except HookFailed as exc:
                hook_error = exc
            else:
                stdout, stderr = execution.stdout, execution.stderr
                if execution.environ_after is not None:
                    process_env.apply_changes(
                        execution.environ_after, ignore=SHELL_MANAGED_VARIABLES
                    )
                if not execution.succeeded:
                    hook_error = HookFailed(
                        f"shellHook exited with status {execution.returncode}",
                        returncode=execution.returncode,
                        stderr=execution.stderr,
                    )

        if hook_error is not None:
            logger.warning(
                "shellHook of %s failed: %s. Variables and search path stay applied.",
                resolved.name,
                hook_error,
            )
            warnings.append(f"shellHook failed: {hook_error}")
            state = advance(state, ActivationState.HOOK_FAILED)
        else:
            state = advance(state, ActivationState.HOOK_RAN)

        logger.info(
            "Activated %s: %d exported, %d unset, %d search paths.",
            resolved.name,
            len(exported),
            len(unset),
            len(resolved.search_paths),
        )
        return ActivationResult(
            state=state,
            rejected_variables=rejected,
            exported=tuple(exported),
            unset=tuple(unset),
            prepended_paths=resolved.search_paths,
            hook_error=hook_error,
            hook_stdout=stdout,
            hook_stderr=stderr,
            warnings=tuple(warnings),
        )


def render_activation_script(
    resolved: ResolvedEnvironment,
    reserved: Iterable[str] | None = None,
) -> str:
    """Render a POSIX shell script that activates ``resolved`` when sourced.

    Follows the same order as ``Activator.activate``: variables, then the
    search path, then the hook text verbatim.  Reserved variables and names
    that are not valid shell identifiers are left out with a comment.
    """
    reserved_set = (
        frozenset(reserved) if reserved is not None else DEFAULT_RESERVED_VARIABLES
    )
    lines = [f"# envforge: {resolved.name} ({resolved.environment_hash[:12]})"]
    for name, value in resolved.variables.items():
        if name in reserved_set:
            lines.append(f"# {name} is reserved; not set")
            continue
        if not _SHELL_NAME.match(name):
            lines.append(f"# {name!r} is not a shell variable name; not set")
            continue
        if value is None:
            lines.append(f"unset {name}")
        else:
            lines.append(f"export {name}={shlex.quote(value)}")
    if resolved.search_paths:
        joined = shlex.quote(os.pathsep.join(resolved.search_paths))
        lines.append(f'export PATH={joined}"${{PATH:+:$PATH}}"')
    if resolved.shell_hook.strip():
        lines.append(resolved.shell_hook.rstrip("\n"))
    return "\n".join(lines) + "\n"
