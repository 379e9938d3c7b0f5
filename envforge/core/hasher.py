"""Canonical hashing helpers for content addressing and integrity checks."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from envforge.models.environment import DeclaredEnvironment
    from envforge.models.packages import PackageRef

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")
_CHUNK_SIZE = 1 << 16


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def normalize_sha256(expected: str) -> str:
    """Normalise a SHA-256 in any accepted notation to lowercase hex.

    Accepted: ``sha256:<hex>``, bare ``<hex>``, and SRI ``sha256-<base64>``.
    Raises ``ValueError`` for anything else.
    """
    value = expected.strip()
    if value.startswith("sha256-"):
        try:
            raw = base64.b64decode(value[len("sha256-"):], validate=True)
        except binascii.Error as exc:
            raise ValueError(f"Malformed SRI hash: {expected!r}") from exc
        if len(raw) != 32:
            raise ValueError(f"SRI hash has wrong length: {expected!r}")
        return raw.hex()
    value = value.removeprefix("sha256:").lower()
    if not _HEX_DIGEST.match(value):
        raise ValueError(f"Not a SHA-256 digest: {expected!r}")
    return value


def compute_content_hash(ref: PackageRef, input_hashes: Mapping[str, str]) -> str:
    """SHA-256 of canonical(name + version + recipe + input content hashes).

    ``input_hashes`` must hold the already computed hash of every input of
    ``ref``.  Two packages with identical resolved input trees hash equal.
    """
    payload = {
        "name": ref.name,
        "version": ref.version,
        "recipe": ref.recipe.fingerprint(),
        "inputs": {name: input_hashes[name] for name in ref.inputs},
    }
    return sha256_hex(canonical_json_bytes(payload))


def compute_environment_hash(
    declared: DeclaredEnvironment, package_hashes: Mapping[str, str]
) -> str:
    """SHA-256 of a declared environment with its packages' content hashes.

    Used as the key of the resolved-environment cache.
    """
    payload = {
        "name": declared.name,
        "catalog_revision": declared.catalog_revision,
        "packages": [
            [p.name, package_hashes[p.name], list(p.bin_dirs)]
            for p in declared.packages
        ],
        "variables": {
            name: value.model_dump(mode="json")
            for name, value in declared.variables.items()
        },
        "shell_hook": (
            declared.shell_hook.model_dump(mode="json")
            if declared.shell_hook is not None
            else None
        ),
    }
    return sha256_hex(canonical_json_bytes(payload))
