"""Runtime settings for the import pipeline.

Defaults match the production tuning of the hosted service. Every field can
be overridden through a ``STATEMENT_IMPORT_*`` environment variable; the CLI
loads ``.env`` before calling :meth:`ImportSettings.from_env`.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

_ENV_PREFIX = "STATEMENT_IMPORT_"

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def _parse_bool(raw: str) -> bool:
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")


@dataclass(frozen=True, slots=True)
class ImportSettings:
    openai_model: str = "gpt-4o-mini"
    temperature: float = 0.3
    llm_max_attempts: int = 2

    ocr_timeout_seconds: float = 45.0
    llm_timeout_seconds: float = 60.0
    fused_timeout_seconds: float = 90.0
    store_timeout_seconds: float = 30.0

    max_upload_bytes: int = MAX_UPLOAD_BYTES
    history_window: int = 500

    ocr_pool_size: int = 2
    ocr_language: str = "eng"
    ocr_preprocess: bool = True
    ocr_max_width: int = 2000

    def __post_init__(self) -> None:
        for name in (
            "ocr_timeout_seconds",
            "llm_timeout_seconds",
            "fused_timeout_seconds",
            "store_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_upload_bytes <= 0:
            raise ValueError("max_upload_bytes must be positive")
        if self.history_window <= 0:
            raise ValueError("history_window must be positive")
        if self.ocr_pool_size < 0:
            raise ValueError("ocr_pool_size must be >= 0")
        if self.llm_max_attempts < 1:
            raise ValueError("llm_max_attempts must be >= 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ImportSettings:
        """Build settings from ``STATEMENT_IMPORT_<FIELD>`` variables.

        Unset variables keep their defaults. A value that fails to parse
        raises ``ValueError`` naming the offending variable.
        """

        env = os.environ if environ is None else environ
        parsers: dict[type, Callable[[str], Any]] = {
            int: int,
            float: float,
            bool: _parse_bool,
            str: str.strip,
        }
        defaults = cls()
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            var = _ENV_PREFIX + f.name.upper()
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            parse = parsers[type(getattr(defaults, f.name))]
            try:
                overrides[f.name] = parse(raw)
            except ValueError as e:
                raise ValueError(f"invalid value for {var}: {e}") from e
        return cls(**overrides)


__all__ = ["ImportSettings", "MAX_UPLOAD_BYTES"]
