"""Configuration helpers and feature flag evaluation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional


_TRUE_VALUES = {"1", "true", "yes", "on"}


@lru_cache(maxsize=None)
def feature_enabled(name: str, default: bool = False) -> bool:
    """Return True when the named feature flag is enabled via environment variable.

    Feature names map to environment variables using the pattern:
        feature.trace.ancestors → SPANMACRO_FEATURE_TRACE_ANCESTORS
    Values are interpreted case-insensitively; "1", "true", "yes", "on" enable the flag.
    """

    env_key = "SPANMACRO_" + name.upper().replace(".", "_")
    raw = os.getenv(env_key)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class EngineConfig:
    """Execution knobs for a single replace_macros() run."""
    # Searched (re.search) in every import source; non-matching imports are left alone
    import_source_pattern: str = r"\.macro$|/macro$"
    # Total budget for the final join; None waits forever
    timeout_s: Optional[float] = None
    # Guardrail on input size (characters)
    max_source_chars: int = 100 * 1024 * 1024
    trace_ancestors: bool = field(default_factory=lambda: feature_enabled("feature.trace.ancestors"))
