"""End-to-end integration tests — evaluate, resolve, activate with real builds.

These tests exercise the Orchestrator, Evaluator, Resolver, ContentStore,
Fetcher, ScriptBuilder, Activator and ShellHookRunner working together.
"""

from __future__ import annotations

import hashlib
import io
import os
import subprocess
import tarfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from envforge.config import EnvforgeConfig
from envforge.core.content_store import BuildFailure
from envforge.core.orchestrator import Orchestrator
from envforge.core.process_env import ProcessEnvironment
from envforge.core.resolver import UnresolvedReferenceError
from envforge.models.activation import ActivationState
from envforge.models.store import BuildStatus

SYSTEM_PATH = os.pathsep.join(["/usr/local/bin", "/usr/bin", "/bin"])

SPEC = """\
{
  name = "greeting-shell";
  packages = [ greeter tool archived ];
  GREETER_HOME = greeter;
  GREETING_FILE = "${libgreet}/share/greeting";
  PAGER = null;
  shellHook = ''
    export GREETER_READY="$(greet)"
  '';
}
"""


def _tarball() -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"#!/bin/sh\necho archived\n"
        info = tarfile.TarInfo("archived-2.0/bin/archived")
        info.size = len(data)
        info.mode = 0o755
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def pipeline_dir(tmp_path: Path) -> Path:
    sources = tmp_path / "sources"
    sources.mkdir()
    tool = b"#!/bin/sh\necho tool\n"
    (sources / "tool.sh").write_bytes(tool)
    archive = _tarball()
    (sources / "archived-2.0.tar.gz").write_bytes(archive)

    (tmp_path / "catalog.toml").write_text(
        f"""\
revision = "integration"

[packages.libgreet]
version = "1.0"
bin_dirs = []
build = '''
mkdir -p "$out/share"
echo "hello from libgreet" > "$out/share/greeting"
'''

[packages.greeter]
version = "1.2"
inputs = ["libgreet>=1.0"]
build = '''
mkdir -p "$out/bin"
printf '#!/bin/sh\\ncat %s\\n' "$libgreet/share/greeting" > "$out/bin/greet"
chmod +x "$out/bin/greet"
'''

[packages.tool]
version = "1.0"
url = "{(sources / 'tool.sh').as_uri()}"
sha256 = "{hashlib.sha256(tool).hexdigest()}"
dest = "bin/tool"
executable = true

[packages.archived]
version = "2.0"
url = "{(sources / 'archived-2.0.tar.gz').as_uri()}"
sha256 = "sha256:{hashlib.sha256(archive).hexdigest()}"
unpack = true

[packages.broken]
version = "0.0"
build = "echo compiler exploded >&2; exit 1"
""",
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def orch(pipeline_dir: Path) -> Iterator[Orchestrator]:
    settings = EnvforgeConfig(
        catalog_path=pipeline_dir / "catalog.toml",
        store_path=pipeline_dir / "store",
        fetch_cache_path=pipeline_dir / "downloads",
        max_workers=2,
    )
    with Orchestrator(settings) as orchestrator:
        yield orchestrator


@pytest.mark.bash
class TestFullPipeline:
    """Spec text in, activated process environment out."""

    def test_evaluate(self, orch: Orchestrator):
        declared = orch.evaluate(SPEC)
        assert declared.name == "greeting-shell"
        assert declared.package_names == ["greeter", "tool", "archived"]
        assert set(declared.graph) == {"greeter", "libgreet", "tool", "archived"}
        assert declared.catalog_revision == "integration"

    def test_interpolating_an_input_that_was_not_requested_fails(self, orch: Orchestrator):
        with pytest.raises(UnresolvedReferenceError) as excinfo:
            orch.resolve(SPEC)
        assert excinfo.value.variable == "GREETING_FILE"
        assert excinfo.value.reference == "libgreet"

    def test_resolve_builds_everything(self, orch: Orchestrator):
        resolved = orch.resolve(SPEC.replace("greeter tool archived", "greeter tool archived libgreet"))
        names = [p.name for p in resolved.packages]
        assert names == ["greeter", "tool", "archived", "libgreet"]
        paths = {p.name: Path(p.store_path) for p in resolved.packages}
        assert (paths["libgreet"] / "share" / "greeting").read_text() == "hello from libgreet\n"
        assert (paths["archived"] / "bin" / "archived").exists()
        assert (paths["tool"] / "bin" / "tool").exists()
        # libgreet has no bin dirs, so three search path entries
        assert list(resolved.search_paths) == [
            str(paths["greeter"] / "bin"),
            str(paths["tool"] / "bin"),
            str(paths["archived"] / "bin"),
        ]
        assert resolved.variables["GREETER_HOME"] == str(paths["greeter"])
        assert resolved.variables["GREETING_FILE"] == f"{paths['libgreet']}/share/greeting"
        assert resolved.variables["PAGER"] is None
        for pkg in resolved.packages:
            assert orch.store.lookup(pkg.content_hash).status == BuildStatus.BUILT

    def test_activate_and_run(self, orch: Orchestrator):
        source = SPEC.replace("greeter tool archived", "greeter tool archived libgreet")
        env = ProcessEnvironment({"PATH": SYSTEM_PATH, "PAGER": "less", "HOME": "/nonexistent"})
        resolved, env, result = orch.activate(source, env)

        assert result.state is ActivationState.HOOK_RAN
        assert "PAGER" not in env
        assert env.get("GREETER_READY") == "hello from libgreet"
        assert env.search_path[: len(resolved.search_paths)] == list(resolved.search_paths)
        assert env.search_path[-3:] == SYSTEM_PATH.split(os.pathsep)

        for command, expected in (("greet", "hello from libgreet"), ("tool", "tool"), ("archived", "archived")):
            proc = subprocess.run(
                [command], env=env.to_environ(), capture_output=True, text=True, check=True
            )
            assert proc.stdout.strip() == expected

    def test_activation_script_matches_activate(self, orch: Orchestrator, pipeline_dir: Path):
        source = SPEC.replace("greeter tool archived", "greeter tool archived libgreet")
        script = pipeline_dir / "activate.sh"
        script.write_text(orch.activation_script(source))
        proc = subprocess.run(
            ["bash", "-c", f'. {script}; echo "$GREETER_READY|${{PAGER-unset}}"; command -v tool'],
            env={"PATH": SYSTEM_PATH, "PAGER": "less"},
            capture_output=True,
            text=True,
            check=True,
        )
        ready_line, tool_path = proc.stdout.strip().splitlines()
        assert ready_line == "hello from libgreet|unset"
        assert tool_path.startswith(str(pipeline_dir / "store"))

    def test_second_resolve_reuses_the_store(self, orch: Orchestrator):
        source = SPEC.replace("greeter tool archived", "greeter tool archived libgreet")
        first = orch.resolve(source)
        before = {e.content_hash: e.attempt for e in orch.store.list_entries()}
        second = orch.resolve(source)
        assert second == first
        assert {e.content_hash: e.attempt for e in orch.store.list_entries()} == before

    def test_failed_build_is_recorded_and_reported(self, orch: Orchestrator):
        with pytest.raises(BuildFailure, match="compiler exploded") as excinfo:
            orch.resolve("{ packages = [ broken ]; }")
        entry = orch.store.lookup(excinfo.value.content_hash)
        assert entry.status == BuildStatus.FAILED
        assert "compiler exploded" in entry.reason

    def test_failing_hook_leaves_environment_activated(self, orch: Orchestrator):
        env = ProcessEnvironment({"PATH": SYSTEM_PATH})
        _, env, result = orch.activate(
            '{ packages = [ tool ]; EDITOR = "vim"; shellHook = "export HALF=1; false"; }',
            env,
        )
        assert result.state is ActivationState.HOOK_FAILED
        assert result.activated
        assert env.get("EDITOR") == "vim"
        assert env.get("HALF") == "1"
        assert env.search_path[0].endswith("/bin")
