"""Tests for shell hook execution."""

from __future__ import annotations

import os

import pytest

from envforge.core.hooks import (
    HookExecution,
    HookFailed,
    HookRunner,
    ShellHookRunner,
    parse_env_dump,
)

BASE_ENV = {"PATH": os.pathsep.join(["/usr/local/bin", "/usr/bin", "/bin"]), "KEEP": "kept"}


class TestParseEnvDump:
    def test_records(self):
        data = b"A=1\0B=x=y\0EMPTY=\0"
        assert parse_env_dump(data) == {"A": "1", "B": "x=y", "EMPTY": ""}

    def test_values_may_contain_newlines(self):
        assert parse_env_dump(b"MULTI=one\ntwo\0") == {"MULTI": "one\ntwo"}

    def test_malformed_records_are_skipped(self):
        assert parse_env_dump(b"\0noequals\0=value\0OK=1") == {"OK": "1"}


class TestHookExecution:
    def test_succeeded(self):
        assert HookExecution(returncode=0).succeeded
        assert not HookExecution(returncode=1).succeeded


@pytest.mark.bash
class TestShellHookRunner:
    def test_satisfies_protocol(self):
        assert isinstance(ShellHookRunner(), HookRunner)

    def test_captures_output(self):
        execution = ShellHookRunner().run("echo hello; echo oops >&2", BASE_ENV)
        assert execution.succeeded
        assert execution.stdout == "hello\n"
        assert execution.stderr == "oops\n"

    def test_reports_exported_changes(self):
        execution = ShellHookRunner().run(
            'export GREETING="hi there"; unset KEEP', BASE_ENV
        )
        assert execution.environ_after["GREETING"] == "hi there"
        assert "KEEP" not in execution.environ_after

    def test_unexported_assignment_is_not_reported(self):
        execution = ShellHookRunner().run("LOCAL_ONLY=1", BASE_ENV)
        assert "LOCAL_ONLY" not in execution.environ_after

    def test_environment_captured_on_failure(self):
        execution = ShellHookRunner().run("export BEFORE=1; exit 4", BASE_ENV)
        assert execution.returncode == 4
        assert execution.environ_after["BEFORE"] == "1"

    def test_hook_sees_given_environment(self):
        execution = ShellHookRunner().run('echo "$KEEP"', BASE_ENV)
        assert execution.stdout == "kept\n"

    def test_timeout(self):
        with pytest.raises(HookFailed, match="timed out"):
            ShellHookRunner(timeout=0.2).run("sleep 5", BASE_ENV)


def test_missing_shell(tmp_path):
    with pytest.raises(HookFailed, match="cannot run"):
        ShellHookRunner(shell=str(tmp_path / "no-shell")).run("true", BASE_ENV)
