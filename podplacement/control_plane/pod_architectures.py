"""
podplacement/control_plane/pod_architectures.py
─────────────────────────────────────────────────
Resolve and probe every image of one pod, then intersect.

Per image:
    RegistryAccessResolver.resolve() → candidates → ImageArchitectureProber.probe()

Images are probed in parallel on a shared, bounded executor, and the pod
result is only built once every probe has finished or failed: a partial
intersection is never returned.

How failures fold into the pod result
──────────────────────────────────────
  permanent failure (policy denied, manifest invalid, not found,
  bad reference)          → contributes an empty set; the intersection is
                            empty and the outcome is final
  transient failure only  → result.transient is True; the caller retries
                            the whole pod later

A permanent failure wins over a transient one: once one image can't
contribute anything, retrying the others can't change the outcome.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

from image_inspect.credentials import CredentialStore
from image_inspect.errors import ImageInspectionError
from image_inspect.prober import ImageArchitectureProber
from image_inspect.registry_access import RegistryAccessResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageInspectionResult:
    image: str
    architectures: FrozenSet[str] = frozenset()
    error: Optional[ImageInspectionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def transient(self) -> bool:
        return self.error is not None and self.error.transient


@dataclass(frozen=True)
class PodArchitectureResult:
    results: Tuple[ImageInspectionResult, ...]

    @property
    def failures(self) -> List[ImageInspectionResult]:
        """Images that failed permanently."""
        return [r for r in self.results if not r.ok and not r.transient]

    @property
    def transient(self) -> bool:
        """True if the pod should be retried: some probe is transient, none permanent."""
        return not self.failures and any(r.transient for r in self.results)

    @property
    def architectures(self) -> FrozenSet[str]:
        """Intersection over all images. Failed images contribute the empty set."""
        if not self.results:
            return frozenset()
        sets = [r.architectures if r.ok else frozenset() for r in self.results]
        out = sets[0]
        for s in sets[1:]:
            out = out & s
        return out


def inspect_pod_images(
    images: Sequence[str],
    resolver: RegistryAccessResolver,
    credentials: CredentialStore,
    prober: ImageArchitectureProber,
    executor: Optional[Executor] = None,
) -> PodArchitectureResult:
    """
    Probe every image and wait for all of them.

    Args:
        images:      Unique image references of the pod.
        resolver:    Resolver built from the current registry policy.
        credentials: Merged pod + cluster pull secrets.
        prober:      Shared prober (and its cache).
        executor:    Where probes run. None runs them inline, one by one.

    Unexpected (non ImageInspectionError) exceptions propagate once every
    probe has completed.
    """
    def inspect(image: str) -> ImageInspectionResult:
        try:
            candidates = resolver.resolve(image, credentials)
            archs = prober.probe(candidates)
        except ImageInspectionError as exc:
            log = logger.debug if exc.transient else logger.warning
            log("Inspecting image %s failed: %s", image, exc.reason)
            return ImageInspectionResult(image=image, error=exc)
        return ImageInspectionResult(image=image, architectures=archs)

    if executor is None:
        return PodArchitectureResult(results=tuple(inspect(image) for image in images))

    futures = [executor.submit(inspect, image) for image in images]
    # wait for every probe before surfacing any unexpected error
    errors = [f.exception() for f in futures]
    for exc in errors:
        if exc is not None:
            raise exc
    return PodArchitectureResult(results=tuple(f.result() for f in futures))
