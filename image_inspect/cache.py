"""
image_inspect/cache.py
──────────────────────
ArchitectureCache: thread-safe TTL cache of probe answers.

Key:    (image as written in the pod, endpoint that answered)
Value:  architectures + the policy fingerprint they were obtained under

The answer depends on policy (which mirrors, which TLS trust), not just on
the digest, so every image remembers the fingerprint of the candidate list
that produced its entries. A lookup under a different fingerprint drops
every entry for that image before reporting a miss.

Blocked / allowed membership is never served from here: the resolver runs
before the cache lookup on every resolution.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from podplacement.shared.settings import DEFAULT_CACHE_MAX_ENTRIES, DEFAULT_CACHE_TTL_S

logger = logging.getLogger(__name__)

_Entry = Tuple[FrozenSet[str], float]


class ArchitectureCache:

    def __init__(
        self,
        ttl_s: float = DEFAULT_CACHE_TTL_S,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], _Entry] = {}
        self._fingerprints: Dict[str, str] = {}

    def get(self, image: str, fingerprint: str) -> Optional[Tuple[str, FrozenSet[str]]]:
        """
        Fresh (endpoint, architectures) for `image` under `fingerprint`, or None.
        """
        now = self._clock()
        with self._lock:
            known = self._fingerprints.get(image)
            if known is None:
                return None
            if known != fingerprint:
                logger.debug("Policy changed for %s; invalidating cached architectures", image)
                self._invalidate_locked(image)
                return None
            for (img, endpoint), (archs, stored_at) in list(self._entries.items()):
                if img != image:
                    continue
                if now - stored_at < self._ttl_s:
                    return endpoint, archs
                del self._entries[(img, endpoint)]
            return None

    def put(self, image: str, endpoint: str, fingerprint: str, architectures: FrozenSet[str]) -> None:
        now = self._clock()
        with self._lock:
            if self._fingerprints.get(image) not in (None, fingerprint):
                self._invalidate_locked(image)
            if len(self._entries) >= self._max_entries:
                self._evict_locked(now)
            self._fingerprints[image] = fingerprint
            self._entries[(image, endpoint)] = (frozenset(architectures), now)

    def invalidate(self, image: str) -> None:
        with self._lock:
            self._invalidate_locked(image)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._fingerprints.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Private helpers (caller holds the lock) ──────────────────────────────

    def _invalidate_locked(self, image: str) -> None:
        for key in [k for k in self._entries if k[0] == image]:
            del self._entries[key]
        self._fingerprints.pop(image, None)

    def _evict_locked(self, now: float) -> None:
        expired = [k for k, (_, t) in self._entries.items() if now - t >= self._ttl_s]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1][1])
            for key, _ in oldest[: max(1, self._max_entries // 10)]:
                del self._entries[key]
        live_images = {k[0] for k in self._entries}
        for image in [i for i in self._fingerprints if i not in live_images]:
            del self._fingerprints[image]
