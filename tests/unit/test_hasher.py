"""Tests for the hashing helpers — canonical JSON, digests, content hashes."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path

import pytest

from envforge.core.evaluator import Evaluator
from envforge.core.hasher import (
    canonical_json_bytes,
    compute_content_hash,
    compute_environment_hash,
    normalize_sha256,
    sha256_file,
    sha256_hex,
)
from envforge.models.packages import PackageRecipe, PackageRef

_DIGEST = hashlib.sha256(b"hello").hexdigest()


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == canonical_json_bytes({"a": 2, "b": 1})

    def test_compact(self):
        assert canonical_json_bytes({"a": [1, 2]}) == b'{"a":[1,2]}'


class TestDigests:
    def test_sha256_hex(self):
        assert sha256_hex(b"hello") == _DIGEST

    def test_sha256_file(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_bytes(b"hello")
        assert sha256_file(path) == _DIGEST

    @pytest.mark.parametrize(
        "notation",
        [
            _DIGEST,
            _DIGEST.upper(),
            f"sha256:{_DIGEST}",
            "sha256-" + base64.b64encode(hashlib.sha256(b"hello").digest()).decode(),
        ],
    )
    def test_normalize_accepts(self, notation: str):
        assert normalize_sha256(notation) == _DIGEST

    @pytest.mark.parametrize("notation", ["", "abc", "md5:" + _DIGEST, "sha256-!!!", "sha256-AAAA"])
    def test_normalize_rejects(self, notation: str):
        with pytest.raises(ValueError):
            normalize_sha256(notation)


class TestContentHash:
    def _ref(self, **overrides) -> PackageRef:
        defaults = {
            "name": "hello",
            "version": "2.12",
            "inputs": ("zlib",),
            "recipe": PackageRecipe(build="make install"),
        }
        defaults.update(overrides)
        return PackageRef(**defaults)

    def test_deterministic(self):
        inputs = {"zlib": "a" * 64}
        assert compute_content_hash(self._ref(), inputs) == compute_content_hash(
            self._ref(), inputs
        )

    def test_changes_with_input_hash(self):
        assert compute_content_hash(self._ref(), {"zlib": "a" * 64}) != compute_content_hash(
            self._ref(), {"zlib": "b" * 64}
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"version": "2.13"},
            {"recipe": PackageRecipe(build="make install PREFIX=$out")},
            {"name": "hello2"},
        ],
    )
    def test_changes_with_recipe(self, overrides):
        inputs = {"zlib": "a" * 64}
        assert compute_content_hash(self._ref(), inputs) != compute_content_hash(
            self._ref(**overrides), inputs
        )

    def test_description_does_not_matter(self):
        inputs = {"zlib": "a" * 64}
        assert compute_content_hash(self._ref(), inputs) == compute_content_hash(
            self._ref(description="another description"), inputs
        )


class TestEnvironmentHash:
    def test_depends_on_variables(self, evaluator: Evaluator):
        one = evaluator.evaluate('{ packages = [ git ]; A = "1"; }')
        two = evaluator.evaluate('{ packages = [ git ]; A = "2"; }')
        hashes = {"git": "c" * 64}
        assert compute_environment_hash(one, hashes) != compute_environment_hash(two, hashes)

    def test_depends_on_package_order(self, evaluator: Evaluator):
        one = evaluator.evaluate("{ packages = [ git nodejs ]; }")
        two = evaluator.evaluate("{ packages = [ nodejs git ]; }")
        hashes = {"git": "c" * 64, "nodejs": "d" * 64}
        assert compute_environment_hash(one, hashes) != compute_environment_hash(two, hashes)

    def test_stable(self, evaluator: Evaluator):
        source = '{ packages = [ git ]; shellHook = "echo ${git}"; }'
        hashes = {"git": "c" * 64}
        assert compute_environment_hash(
            evaluator.evaluate(source), hashes
        ) == compute_environment_hash(evaluator.evaluate(source), hashes)
