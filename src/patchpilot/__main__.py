"""Module entrypoint for ``python -m patchpilot``."""

from __future__ import annotations

from patchpilot.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
