"""
podplacement/shared/settings.py
────────────────────────────────
Engine tunables: registry timeouts, retry budget, worker pool size, cache TTL.

Defaults are module constants so tests and callers can reference them by
name. EngineSettings bundles them into one validated object; from_env()
lets a deployment override any of them with PODPLACEMENT_* variables.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

# ── Defaults ──────────────────────────────────────────────────────────────────

DEFAULT_REGISTRY_TIMEOUT_S: float = 10.0
"""Timeout for one registry HTTP call (connect + read), in seconds."""

DEFAULT_MAX_CANDIDATES: int = 5
"""Maximum number of endpoints (mirrors + source) tried for one image."""

DEFAULT_MAX_RETRIES: int = 5
"""Reconcile attempts for a pod whose registries are unreachable.

After this many transient failures the gate is removed without mutation
and an ArchitectureResolutionFailed event is recorded.
"""

DEFAULT_BACKOFF_BASE_S: float = 2.0
"""First retry delay. Doubles on every further attempt."""

DEFAULT_BACKOFF_MAX_S: float = 120.0
"""Upper bound for a single retry delay."""

DEFAULT_WORKERS: int = 4
"""Concurrent pod reconciles."""

DEFAULT_PROBE_CONCURRENCY: int = 8
"""Concurrent image probes shared by all workers."""

DEFAULT_CACHE_TTL_S: float = 300.0
"""Lifetime of a cached (image, endpoint) → architectures answer."""

DEFAULT_CACHE_MAX_ENTRIES: int = 1000

DEFAULT_RESYNC_INTERVAL_S: float = 30.0
"""How often a running controller re-lists gated pods and refreshes config status."""

DEFAULT_WATCH_TIMEOUT_S: int = 300
"""Server-side timeout of one pod watch request before it is re-established."""

ENV_PREFIX = "PODPLACEMENT_"


class EngineSettings(BaseModel):
    """Validated engine tunables. Construct directly or via from_env()."""
    registry_timeout_s: float = Field(DEFAULT_REGISTRY_TIMEOUT_S, gt=0)
    max_candidates: int = Field(DEFAULT_MAX_CANDIDATES, ge=1)
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=1)
    backoff_base_s: float = Field(DEFAULT_BACKOFF_BASE_S, ge=0)
    backoff_max_s: float = Field(DEFAULT_BACKOFF_MAX_S, ge=0)
    workers: int = Field(DEFAULT_WORKERS, ge=1)
    probe_concurrency: int = Field(DEFAULT_PROBE_CONCURRENCY, ge=1)
    cache_ttl_s: float = Field(DEFAULT_CACHE_TTL_S, ge=0)
    cache_max_entries: int = Field(DEFAULT_CACHE_MAX_ENTRIES, ge=1)
    resync_interval_s: float = Field(DEFAULT_RESYNC_INTERVAL_S, gt=0)
    watch_timeout_s: int = Field(DEFAULT_WATCH_TIMEOUT_S, ge=1)

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base × 2^(attempt−1), capped."""
        if attempt < 1:
            return 0.0
        return min(self.backoff_base_s * (2 ** (attempt - 1)), self.backoff_max_s)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from PODPLACEMENT_<FIELD> variables, e.g.
        PODPLACEMENT_MAX_RETRIES=3. Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                overrides[name] = raw
        return cls(**overrides)
