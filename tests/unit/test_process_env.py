"""Tests for ProcessEnvironment."""

from __future__ import annotations

import os

import pytest

from envforge.core.process_env import ProcessEnvironment


def _path(*entries: str) -> str:
    return os.pathsep.join(entries)


class TestVariables:
    def test_copies_initial_mapping(self):
        initial = {"HOME": "/home/me"}
        env = ProcessEnvironment(initial)
        env.set("HOME", "/elsewhere")
        assert initial == {"HOME": "/home/me"}

    def test_set_get_unset(self):
        env = ProcessEnvironment()
        env.set("EDITOR", "vim")
        assert env.get("EDITOR") == "vim"
        assert "EDITOR" in env
        env.unset("EDITOR")
        env.unset("EDITOR")  # unsetting twice is fine
        assert env.get("EDITOR") is None
        assert len(env) == 0

    def test_from_environ_snapshot(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENVFORGE_TEST_VAR", "1")
        env = ProcessEnvironment.from_environ()
        monkeypatch.setenv("ENVFORGE_TEST_VAR", "2")
        assert env.get("ENVFORGE_TEST_VAR") == "1"


class TestSearchPath:
    def test_empty_entries_are_dropped(self):
        env = ProcessEnvironment({"PATH": _path("/usr/bin", "", "/bin")})
        assert env.search_path == ["/usr/bin", "/bin"]

    def test_prepend_keeps_order(self):
        env = ProcessEnvironment({"PATH": _path("/usr/bin", "/bin")})
        result = env.prepend_search_paths(["/s/git/bin", "/s/node/bin"])
        assert result == ["/s/git/bin", "/s/node/bin", "/usr/bin", "/bin"]
        assert env.get("PATH") == _path(*result)

    def test_existing_entry_moves_to_front(self):
        env = ProcessEnvironment({"PATH": _path("/usr/bin", "/s/git/bin", "/bin")})
        assert env.prepend_search_paths(["/s/git/bin"]) == ["/s/git/bin", "/usr/bin", "/bin"]

    def test_prepending_twice_is_idempotent(self):
        env = ProcessEnvironment({"PATH": "/usr/bin"})
        env.prepend_search_paths(["/a", "/b"])
        env.prepend_search_paths(["/a", "/b"])
        assert env.search_path == ["/a", "/b", "/usr/bin"]

    def test_without_path(self):
        env = ProcessEnvironment()
        assert env.prepend_search_paths(["/a", "/a"]) == ["/a"]

    def test_custom_path_variable(self):
        env = ProcessEnvironment({"MYPATH": "/x"}, path_variable="MYPATH")
        env.prepend_search_paths(["/y"])
        assert env.get("MYPATH") == _path("/y", "/x")
        assert env.get("PATH") is None


class TestConversion:
    def test_to_environ_is_a_copy(self):
        env = ProcessEnvironment({"A": "1"})
        copy = env.to_environ()
        copy["B"] = "2"
        assert "B" not in env

    def test_apply_changes(self):
        env = ProcessEnvironment({"A": "1", "B": "2", "PWD": "/here"})
        env.apply_changes({"A": "10", "C": "3", "PWD": "/there"}, ignore={"PWD"})
        assert env.to_environ() == {"A": "10", "C": "3", "PWD": "/here"}

    def test_apply_to_os(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENVFORGE_KEEP", "old")
        monkeypatch.setenv("ENVFORGE_DROP", "x")
        env = ProcessEnvironment.from_environ()
        env.set("ENVFORGE_KEEP", "new")
        env.unset("ENVFORGE_DROP")
        env.apply_to_os()
        assert os.environ["ENVFORGE_KEEP"] == "new"
        assert "ENVFORGE_DROP" not in os.environ
