"""Module entrypoint for ``python -m codex_store``."""

from __future__ import annotations

from codex_store.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
