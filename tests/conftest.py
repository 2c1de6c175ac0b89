"""Pytest configuration for test isolation.

Puts the workspace packages on ``sys.path`` so tests run from a plain
checkout, clears ``STATEMENT_IMPORT_*`` overrides from the environment so
settings always start from their defaults, and disposes cached SQLAlchemy
engines after each test (every DB test uses its own SQLite file).
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# `packages/` and the db lib precede the repo root so local packages resolve first.
sys.path[:0] = [
    p
    for p in [str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT)]
    if p not in sys.path
]

from db.client import dispose_engines  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    import os

    for name in list(os.environ):
        if name.startswith("STATEMENT_IMPORT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    # The SDK refuses to build a client without a key; tests never reach the network.
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    yield
    dispose_engines()
