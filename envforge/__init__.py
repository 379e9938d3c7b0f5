"""Envforge: declarative, reproducible shell environments.

A spec names packages, environment variables and a shell hook.  Envforge
evaluates it against a pinned package catalog, builds every package into
a content-addressed store (each input tree at most once, even across
concurrent resolves), and activates the result in a process environment.

  - Nix-style attribute-set specs with ``${pkg}`` interpolation
  - SHA-256 pinned fetches, verified before anything reaches the store
  - Content hashes over the full input tree; identical trees share outputs
  - SQLite-indexed store with an at-most-one-build reservation protocol
  - Ordered activation: variables, search path, then the shell hook
"""

__version__ = "0.1.0"
__description__ = "Declarative environment resolver and activator"

from envforge.core.orchestrator import Orchestrator
from envforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
