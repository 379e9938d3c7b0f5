"""Activation state machine models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ActivationState(str, Enum):
    """Progress of one activation."""

    NOT_ACTIVATED = "not_activated"
    VARIABLES_SET = "variables_set"
    PATH_EXTENDED = "path_extended"
    HOOK_RAN = "hook_ran"
    HOOK_FAILED = "hook_failed"


# Activation is strictly ordered; both hook outcomes are terminal.
VALID_TRANSITIONS: dict[ActivationState, set[ActivationState]] = {
    ActivationState.NOT_ACTIVATED: {ActivationState.VARIABLES_SET},
    ActivationState.VARIABLES_SET: {ActivationState.PATH_EXTENDED},
    ActivationState.PATH_EXTENDED: {
        ActivationState.HOOK_RAN,
        ActivationState.HOOK_FAILED,
    },
    ActivationState.HOOK_RAN: set(),  # terminal
    ActivationState.HOOK_FAILED: set(),  # terminal
}

ACTIVATED_STATES = frozenset({ActivationState.HOOK_RAN, ActivationState.HOOK_FAILED})


class ActivationResult(BaseModel):
    """What an activation did to the process environment.

    ``hook_error`` holds the ``HookFailed`` raised by the shell hook, if any.
    The environment stays activated either way.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    state: ActivationState
    rejected_variables: tuple[str, ...] = ()
    exported: tuple[str, ...] = ()
    unset: tuple[str, ...] = ()
    prepended_paths: tuple[str, ...] = ()
    hook_error: Exception | None = None
    hook_stdout: str = ""
    hook_stderr: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def activated(self) -> bool:
        return self.state in ACTIVATED_STATES
