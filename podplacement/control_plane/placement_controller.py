"""
podplacement/control_plane/placement_controller.py
────────────────────────────────────────────────────
PlacementController: phase two of the gate-then-patch protocol.

State machine (per pod)
────────────────────────
    Gated ──reconcile()──► Mutated      affinity written + gate removed
                       ├─► Unmutated    gate removed, spec untouched:
                       │                  empty intersection, conflict,
                       │                  exempt, out of scope by now,
                       │                  or retries exhausted
                       └─► Gated        transient failure, requeued with
                                        exponential backoff

Every exit from Gated goes through ONE JSON patch built by
pod_admission.ungate_patch(): the gate is never observed removed without
the affinity already in place.

reconcile() pipeline
─────────────────────
  1. Re-read the pod. Gone, terminating or no longer gated → nothing to do.
  2. Re-read all configuration and the scope check (it may have changed
     since admission).
  3. Re-read registry policy and pull secrets, build a resolver.
  4. Probe every image in parallel (pod_architectures), wait for all.
  5. Pod deleted meanwhile → discard the result.
  6. Transient → requeue; attempt max_retries → ungate unmutated with an
     ArchitectureResolutionFailed event.
  7. merge_affinity() → patch → event.

Feeding the queue
──────────────────
run() starts a pod watch on the `gated` label: ADDED / MODIFIED gated pods
are queued, DELETED ones are cancelled. Every resync_interval_s it also
re-lists gated pods (anything a broken watch missed) and refreshes the
status conditions of the placement configs. A pod already queued, in
flight or waiting out a backoff is never queued again by either path, so
retry delays hold.

Thread safety
──────────────
Workers share the delay queue, retry counters and the in-flight set, all
guarded by one lock. A key is claimed (checked and marked in flight) under
a single acquisition, so it is never reconciled by two workers at once.
Cluster state is only read through the store and only written via
patch_pod(), record_event() and update_config_status().
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from image_inspect.cache import ArchitectureCache
from image_inspect.credentials import CredentialStore
from image_inspect.prober import ImageArchitectureProber
from image_inspect.registry_access import RegistryAccessResolver
from podplacement.cluster.store import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    WATCH_DELETED,
    ClusterStore,
    PatchFailedError,
    PlacementConfig,
    PodNotFoundError,
)
from podplacement.control_plane.affinity_merge import MergeOutcome, merge_affinity
from podplacement.control_plane.config_status import cluster_config_status, pod_placement_config_status
from podplacement.control_plane.pod_admission import is_pod_in_scope, ungate_patch
from podplacement.control_plane.pod_architectures import inspect_pod_images
from podplacement.shared.log_config import configure_logging
from podplacement.shared.models import (
    SCHEDULING_GATE_LABEL,
    SCHEDULING_GATE_LABEL_VALUE_GATED,
    Affinity,
    ConfigSnapshot,
    ConfigStatus,
    LogVerbosity,
    PlacementState,
    Pod,
)
from podplacement.shared.settings import EngineSettings

logger = logging.getLogger(__name__)

_GATED_SELECTOR = {SCHEDULING_GATE_LABEL: SCHEDULING_GATE_LABEL_VALUE_GATED}

# ── Event reasons ─────────────────────────────────────────────────────────────

EVENT_REASON_AFFINITY_SET = "ArchitectureAwareNodeAffinitySet"
EVENT_REASON_NO_COMMON_ARCHITECTURE = "NoCommonArchitecture"
EVENT_REASON_AFFINITY_CONFLICT = "NodeAffinityConflict"
EVENT_REASON_RESOLUTION_FAILED = "ArchitectureResolutionFailed"
EVENT_REASON_INSPECTION_ERROR = "ImageArchitectureInspectionError"

POLL_INTERVAL_S: float = 1.0
"""How long an idle worker blocks on the queue before re-checking the stop flag."""

IN_FLIGHT_RECHECK_S: float = 1.0
"""Delay before retrying a key that another worker is still reconciling."""

WATCH_RETRY_S: float = 5.0
"""Pause before re-establishing a pod watch that failed."""

WATCH_JOIN_TIMEOUT_S: float = 2.0
"""How long run() waits for the watch thread on shutdown."""


@dataclass(frozen=True)
class ReconcileResult:
    """
    pod_key       → "namespace/name".
    state         → state after this pass; None if the pod was gone or not gated.
    reason        → short explanation.
    requeue_after → seconds until the next attempt, when requeued.
    """
    pod_key: str
    state: Optional[PlacementState]
    reason: str = ""
    requeue_after: Optional[float] = None

    @property
    def requeued(self) -> bool:
        return self.requeue_after is not None


class _DelayQueue:
    """
    Deduplicating delay queue. A key is held at most once; adding a key
    that is already waiting keeps the earlier due time.
    """

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, str]] = []
        self._due: Dict[str, float] = {}
        self._seq = itertools.count()
        self._closed = False

    def add(self, key: str, delay: float = 0.0) -> None:
        due = self._clock() + max(delay, 0.0)
        with self._cond:
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._heap, (due, next(self._seq), key))
            self._cond.notify()

    def forget(self, key: str) -> None:
        with self._cond:
            self._due.pop(key, None)

    def get(self, block: bool = False, timeout: Optional[float] = None) -> Optional[str]:
        """Next key whose delay has elapsed, or None."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._closed:
                # drop entries superseded by forget() or an earlier add()
                while self._heap and self._due.get(self._heap[0][2]) != self._heap[0][0]:
                    heapq.heappop(self._heap)
                wait = POLL_INTERVAL_S
                if self._heap:
                    due, _, key = self._heap[0]
                    remaining = due - self._clock()
                    if remaining <= 0:
                        heapq.heappop(self._heap)
                        del self._due[key]
                        return key
                    wait = min(wait, remaining)
                if not block:
                    return None
                if deadline is not None:
                    left = deadline - time.monotonic()
                    if left <= 0:
                        return None
                    wait = min(wait, left)
                self._cond.wait(wait)
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def __contains__(self, key: str) -> bool:
        with self._cond:
            return key in self._due


class PlacementController:
    """
    Resolves gated pods and removes their gate.

    Public API:
        enqueue(pod_key, delay)       → None
        enqueue_gated_pods()          → int   (resync)
        on_pod_deleted(pod_key)       → None  (cancellation)
        on_pod_event(type, pod)       → None  (watch callback)
        sync_config_status()          → int   (status conditions written)
        reconcile(pod_key)            → ReconcileResult
        process_next(block, timeout)  → Optional[ReconcileResult]
        drain()                       → List[ReconcileResult]
        run(stop_event)               → None  (blocks until stop_event is set)
        close()                       → None

    Args:
        store:    ClusterStore to read from and patch through.
        settings: Engine tunables. Defaults to EngineSettings().
        prober:   Shared ImageArchitectureProber. Built from settings,
                  with an ArchitectureCache, when omitted.
        clock:    Monotonic clock for the delay queue.
    """

    def __init__(
        self,
        store: ClusterStore,
        settings: Optional[EngineSettings] = None,
        prober: Optional[ImageArchitectureProber] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.settings = settings or EngineSettings()
        self._prober = prober or ImageArchitectureProber(
            timeout_s=self.settings.registry_timeout_s,
            max_candidates=self.settings.max_candidates,
            cache=ArchitectureCache(
                ttl_s=self.settings.cache_ttl_s,
                max_entries=self.settings.cache_max_entries,
            ),
        )
        self._queue = _DelayQueue(clock)
        self._lock = threading.Lock()
        self._attempts: Dict[str, int] = {}
        self._in_flight: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._verbosity: Optional[LogVerbosity] = None
        self._probe_executor = ThreadPoolExecutor(
            max_workers=self.settings.probe_concurrency, thread_name_prefix="image-probe"
        )
        logger.info(
            "PlacementController initialised (workers=%d, max_retries=%d).",
            self.settings.workers, self.settings.max_retries,
        )

    # ── Queue API ──────────────────────────────────────────────────────────────

    def enqueue(self, pod_key: str, delay: float = 0.0) -> None:
        self._queue.add(pod_key, delay)

    def enqueue_gated_pods(self) -> int:
        """
        Queue every pod still carrying the `gated` label that is not already
        queued, in flight or backing off. Returns how many were queued.
        """
        pods = self._store.list_pods(_GATED_SELECTOR)
        count = 0
        for pod in pods:
            if pod.has_scheduling_gate() and self._enqueue_if_idle(pod.key):
                count += 1
        if count:
            logger.info("Queued %d gated pod(s) for resolution", count)
        return count

    def on_pod_event(self, event_type: str, pod: Pod) -> None:
        """Watch callback for pods carrying the `gated` label."""
        if event_type == WATCH_DELETED:
            # also sent when our own patch moves the label to `removed`
            if pod.has_scheduling_gate():
                self.on_pod_deleted(pod.key)
            return
        if pod.metadata.deletion_timestamp:
            self.on_pod_deleted(pod.key)
            return
        if pod.has_scheduling_gate() and self._enqueue_if_idle(pod.key):
            logger.debug("Pod %s %s; queued", pod.key, event_type.lower())

    def on_pod_deleted(self, pod_key: str) -> None:
        """
        Forget a deleted pod: no retry is scheduled for it, and a reconcile
        already in flight discards its result.
        """
        with self._lock:
            self._attempts.pop(pod_key, None)
            if pod_key in self._in_flight:
                self._cancelled.add(pod_key)
        self._queue.forget(pod_key)
        logger.debug("Pod %s deleted; dropped from the queue", pod_key)

    def pending(self) -> int:
        return len(self._queue)

    def attempts(self, pod_key: str) -> int:
        with self._lock:
            return self._attempts.get(pod_key, 0)

    # ── Workers ────────────────────────────────────────────────────────────────

    def process_next(self, block: bool = False, timeout: Optional[float] = None) -> Optional[ReconcileResult]:
        key = self._queue.get(block=block, timeout=timeout)
        if key is None:
            return None
        if not self._claim(key):
            self._queue.add(key, IN_FLIGHT_RECHECK_S)
            return None
        return self._reconcile_claimed(key)

    def drain(self) -> List[ReconcileResult]:
        """Reconcile queued keys until none is due. For tests and one-shot runs."""
        results: List[ReconcileResult] = []
        while True:
            result = self.process_next()
            if result is None:
                return results
            results.append(result)

    def run(self, stop_event: threading.Event) -> None:
        """
        Run `settings.workers` workers, the pod watch and the periodic
        resync until stop_event is set.
        """
        watch_stop = threading.Event()
        watcher = threading.Thread(
            target=self._watch_loop, args=(watch_stop,), name="placement-pod-watch", daemon=True
        )
        watcher.start()
        with ThreadPoolExecutor(
            max_workers=self.settings.workers, thread_name_prefix="placement-worker"
        ) as pool:
            futures = [pool.submit(self._worker_loop, stop_event) for _ in range(self.settings.workers)]
            self._resync()
            while not stop_event.wait(self.settings.resync_interval_s):
                self._resync()
            watch_stop.set()
            self._queue.close()
            for future in futures:
                future.result()
        watcher.join(timeout=WATCH_JOIN_TIMEOUT_S)
        logger.info("PlacementController stopped")

    def close(self) -> None:
        self._queue.close()
        self._probe_executor.shutdown(wait=True)

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.process_next(block=True, timeout=POLL_INTERVAL_S)

    def _watch_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self._store.watch_pods(
                    _GATED_SELECTOR, self.on_pod_event, stop, self.settings.watch_timeout_s
                )
            except Exception:
                logger.exception("Pod watch failed; re-establishing in %.0fs", WATCH_RETRY_S)
                stop.wait(WATCH_RETRY_S)

    def _resync(self) -> None:
        try:
            self.enqueue_gated_pods()
            self.sync_config_status()
        except Exception:
            logger.exception("Resync failed; next attempt in %.0fs", self.settings.resync_interval_s)

    # ── Config status ──────────────────────────────────────────────────────────

    def sync_config_status(self) -> int:
        """
        Recompute the status conditions of every placement config and write
        the ones that changed. Returns how many objects were written.
        """
        snapshot = self._store.config_snapshot()
        cluster = snapshot.cluster_config
        written = 0
        if cluster is not None:
            gated = len(self._store.list_pods(_GATED_SELECTOR))
            written += self._write_status(cluster, cluster_config_status(cluster, gated))
        namespace_labels: Dict[str, Dict[str, str]] = {}
        for config in snapshot.pod_placement_configs:
            if config.namespace not in namespace_labels:
                namespace_labels[config.namespace] = self._store.namespace_labels(config.namespace)
            status = pod_placement_config_status(config, cluster, namespace_labels[config.namespace])
            written += self._write_status(config, status)
        return written

    def _write_status(self, config: PlacementConfig, status: ConfigStatus) -> int:
        if status.to_api() == config.status.to_api():
            return 0
        self._store.update_config_status(config, status)
        logger.debug("Updated status of %s %s", config.kind, config.name)
        return 1

    # ── Reconcile ──────────────────────────────────────────────────────────────

    def reconcile(self, pod_key: str) -> ReconcileResult:
        """
        One resolution pass for a pod. Never raises: unexpected errors are
        logged and treated as transient, so retries stay bounded. A pod that
        another worker is reconciling right now is left to that worker.
        """
        if not self._claim(pod_key):
            return ReconcileResult(pod_key, None, "already being reconciled")
        return self._reconcile_claimed(pod_key)

    def _reconcile_claimed(self, pod_key: str) -> ReconcileResult:
        try:
            return self._reconcile(pod_key)
        except Exception as e:
            logger.exception("Unexpected error reconciling pod %s", pod_key)
            try:
                return self._retry_or_give_up(pod_key, None, f"{e.__class__.__name__}: {e}")
            except Exception:
                logger.exception("Could not settle pod %s; retrying later", pod_key)
                delay = self.settings.backoff_max_s
                self.enqueue(pod_key, delay)
                return ReconcileResult(pod_key, PlacementState.GATED, "store error", requeue_after=delay)
        finally:
            with self._lock:
                self._in_flight.discard(pod_key)
                self._cancelled.discard(pod_key)

    def _reconcile(self, pod_key: str) -> ReconcileResult:
        namespace, _, name = pod_key.partition("/")
        pod = self._store.get_pod(namespace, name)
        if pod is None or pod.metadata.deletion_timestamp:
            self._forget(pod_key)
            return ReconcileResult(pod_key, None, "pod no longer exists")
        if not pod.has_scheduling_gate():
            self._forget(pod_key)
            return ReconcileResult(pod_key, None, "pod is not gated")

        snapshot = self._store.config_snapshot()
        self._apply_log_verbosity(snapshot)
        scope = is_pod_in_scope(pod, snapshot, self._store.namespace_labels(namespace))
        if scope.state == PlacementState.OUT_OF_SCOPE:
            logger.info("Pod %s is no longer in scope (%s); removing gate", pod_key, scope.reason)
            return self._finish(pod, None, PlacementState.UNMUTATED, scope.reason)

        credentials = CredentialStore.merged(
            self._store.pull_secret_configs(namespace, pod.pull_secret_names()),
            self._store.global_pull_secret(),
        )
        resolver = RegistryAccessResolver(self._store.registry_policy())
        result = inspect_pod_images(
            pod.images(), resolver, credentials, self._prober, self._probe_executor
        )
        if self._is_cancelled(pod_key):
            return ReconcileResult(pod_key, None, "pod deleted during resolution; result discarded")

        if result.transient:
            unreachable = ", ".join(r.image for r in result.results if r.transient)
            return self._retry_or_give_up(pod_key, pod, f"registries unreachable for {unreachable}")

        merge = merge_affinity(result.architectures, pod.spec, scope.placement.scoring)
        if merge.outcome == MergeOutcome.MUTATE:
            return self._finish(
                pod, merge.affinity, PlacementState.MUTATED, merge.reason,
                event=(EVENT_TYPE_NORMAL, EVENT_REASON_AFFINITY_SET),
            )
        if merge.outcome == MergeOutcome.CONFLICT:
            return self._finish(
                pod, None, PlacementState.UNMUTATED, merge.reason,
                event=(EVENT_TYPE_WARNING, EVENT_REASON_AFFINITY_CONFLICT),
            )
        if merge.outcome == MergeOutcome.EMPTY:
            failures = result.failures
            if failures:
                reason = "; ".join(f"{r.image}: {r.error.reason}" for r in failures)
                return self._finish(
                    pod, None, PlacementState.UNMUTATED, reason,
                    event=(EVENT_TYPE_WARNING, EVENT_REASON_INSPECTION_ERROR),
                )
            return self._finish(
                pod, None, PlacementState.UNMUTATED, merge.reason,
                event=(EVENT_TYPE_WARNING, EVENT_REASON_NO_COMMON_ARCHITECTURE),
            )
        # NOOP / EXEMPT
        return self._finish(pod, None, PlacementState.UNMUTATED, merge.reason)

    def _finish(
        self,
        pod: Pod,
        affinity: Optional[Affinity],
        state: PlacementState,
        reason: str,
        event: Optional[Tuple[str, str]] = None,
    ) -> ReconcileResult:
        if self._is_cancelled(pod.key):
            return ReconcileResult(pod.key, None, "pod deleted during resolution; result discarded")
        try:
            self._store.patch_pod(pod.namespace, pod.name, ungate_patch(pod, affinity))
        except PodNotFoundError:
            self._forget(pod.key)
            return ReconcileResult(pod.key, None, "pod no longer exists")
        except PatchFailedError as e:
            # the pod changed under us; re-read it on the next attempt
            return self._retry_or_give_up(pod.key, None, f"patch rejected: {e.reason}")
        self._forget(pod.key)
        if event is not None:
            self._store.record_event(pod, event[0], event[1], reason)
        logger.info("Pod %s → %s (%s)", pod.key, state.value, reason)
        return ReconcileResult(pod.key, state, reason)

    def _retry_or_give_up(self, pod_key: str, pod: Optional[Pod], reason: str) -> ReconcileResult:
        with self._lock:
            attempt = self._attempts.get(pod_key, 0) + 1
            self._attempts[pod_key] = attempt

        if attempt >= self.settings.max_retries:
            if pod is None:
                namespace, _, name = pod_key.partition("/")
                pod = self._store.get_pod(namespace, name)
            if pod is None or not pod.has_scheduling_gate():
                self._forget(pod_key)
                return ReconcileResult(pod_key, None, "pod no longer gated")
            message = f"giving up after {attempt} attempt(s): {reason}"
            logger.warning("Pod %s: %s", pod_key, message)
            try:
                self._store.patch_pod(pod.namespace, pod.name, ungate_patch(pod, None))
            except PodNotFoundError:
                self._forget(pod_key)
                return ReconcileResult(pod_key, None, "pod no longer exists")
            self._forget(pod_key)
            self._store.record_event(pod, EVENT_TYPE_WARNING, EVENT_REASON_RESOLUTION_FAILED, message)
            return ReconcileResult(pod_key, PlacementState.UNMUTATED, message)

        delay = self.settings.backoff_for(attempt)
        logger.debug("Pod %s: %s; retry %d in %.1fs", pod_key, reason, attempt, delay)
        self.enqueue(pod_key, delay)
        return ReconcileResult(pod_key, PlacementState.GATED, reason, requeue_after=delay)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _claim(self, pod_key: str) -> bool:
        with self._lock:
            if pod_key in self._in_flight:
                return False
            self._in_flight.add(pod_key)
            self._cancelled.discard(pod_key)
            return True

    def _enqueue_if_idle(self, pod_key: str) -> bool:
        with self._lock:
            busy = pod_key in self._in_flight or pod_key in self._attempts
        if busy or pod_key in self._queue:
            return False
        self._queue.add(pod_key)
        return True

    def _forget(self, pod_key: str) -> None:
        with self._lock:
            self._attempts.pop(pod_key, None)

    def _is_cancelled(self, pod_key: str) -> bool:
        with self._lock:
            return pod_key in self._cancelled

    def _apply_log_verbosity(self, snapshot: ConfigSnapshot) -> None:
        if snapshot.cluster_config is None:
            return
        verbosity = snapshot.cluster_config.spec.log_verbosity
        if verbosity != self._verbosity:
            configure_logging(verbosity)
            self._verbosity = verbosity
            logger.info("Log verbosity set to %s", verbosity.value)
