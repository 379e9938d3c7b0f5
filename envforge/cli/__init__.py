"""Envforge CLI — Typer-based command-line interface.

Provides the ``envforge`` command with subcommands for resolving and
activating environment specs, printing activation scripts, prefetching
sources, and inspecting the content store.

All human-readable output uses Rich; scripts and JSON are written plainly
to stdout so they can be piped.
"""
