"""
Reconciliation Scheduler — the heartbeat of the kernel.

Drives every unit in the Resource Store toward its desired state, wave by
wave, over a delay-aware work queue.

Unit phases:
  Pending → Applying → (Healthy | Degraded | Error) → Pending on spec change
  Deleting → Deleted

One pass (reconcile_once):
  1. Sync the unit arena with the store (new units, spec changes, deletions)
  2. Run due drift checks
  3. Advance deletions, dependents first
  4. Group active units into waves; for each wave ascending, admit a unit
     only when every lower-wave unit and every dependency is Healthy
  5. Prune resources that left the desired set once their wave is Healthy
     and no desired unit still depends on them
  6. Aggregate composite and claim readiness

Failure handling:
  ValidationError / TemplateError   → Error, not retried until the source changes
  ApplyError / timeout / exception  → Error, retried with backoff, Degraded when exhausted
  ConflictError                     → requeued immediately, no backoff
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from converge_kernel.clock import utcnow
from converge_kernel.composition.resolver import CompositionResolver
from converge_kernel.drift.detector import DriftDetector, diff_specs
from converge_kernel.errors import (
    ApplyError,
    ApplyTimeoutError,
    ConflictError,
    DeletionError,
    DependencyCycleError,
    DriftError,
    KernelError,
    UnitNotFoundError,
)
from converge_kernel.execution.adapter import AdapterRegistry
from converge_kernel.grouping.grouper import DependencyGrouper
from converge_kernel.hashing import spec_hash
from converge_kernel.models.adapter import ObservedState
from converge_kernel.models.definitions import DeletionPolicy, ReadinessCheck
from converge_kernel.models.resources import ClaimPhase, ResourceRef, SyncPolicy
from converge_kernel.models.scheduler import SchedulerConfig
from converge_kernel.models.store import StoreCategory, StoreEntry
from converge_kernel.models.units import (
    ObservedStatus,
    ReconcilableUnit,
    SyncStatus,
    UnitKind,
    UnitPhase,
    WaveAssignment,
)
from converge_kernel.reconciler.backoff import ExponentialBackoff
from converge_kernel.reconciler.queue import WorkQueue
from converge_kernel.reconciler.readiness import is_ready
from converge_kernel.store.resource_store import ResourceStore

logger = logging.getLogger(__name__)

_UNIT_KINDS = {
    StoreCategory.CLAIM: UnitKind.CLAIM,
    StoreCategory.COMPOSITE: UnitKind.COMPOSITE,
    StoreCategory.MANAGED: UnitKind.MANAGED,
    StoreCategory.APPLICATION: UnitKind.APPLICATION,
}

REALIZED_KINDS = (UnitKind.MANAGED, UnitKind.APPLICATION)


class ReconciliationScheduler:
    """
    The control loop. Owns the unit arena and the work queue; the store
    stays the single source of truth for specs.
    """

    def __init__(
        self,
        store: ResourceStore,
        resolver: CompositionResolver,
        adapters: AdapterRegistry,
        config: Optional[SchedulerConfig] = None,
        drift_detector: Optional[DriftDetector] = None,
        grouper: Optional[DependencyGrouper] = None,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.adapters = adapters
        self.config = config or SchedulerConfig()
        self.grouper = grouper or DependencyGrouper()
        self.backoff = backoff or ExponentialBackoff.from_config(self.config)
        self.queue = WorkQueue()
        self.drift = drift_detector or DriftDetector(store, adapters)
        self.drift.enqueue = self.queue.add

        self._units: Dict[str, ReconcilableUnit] = {}
        self._tombstones: Dict[str, ReconcilableUnit] = {}
        self._in_flight: Dict[str, Future] = {}
        self._forced: Set[str] = set()
        self._cyclic: Set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="converge-apply",
        )
        self._running = False
        self._passes = 0
        self._lock = threading.RLock()

    # --- Introspection ---

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def passes(self) -> int:
        return self._passes

    def units(self) -> List[ReconcilableUnit]:
        return list(self._units.values())

    def get_unit(self, unit_id: str) -> ReconcilableUnit:
        unit = self._units.get(unit_id) or self._tombstones.get(unit_id)
        if unit is None:
            raise UnitNotFoundError(f"No unit {unit_id}")
        return unit

    def waves(self) -> List[List[str]]:
        """Current wave layout of the active units (cycle members excluded)."""
        with self._lock:
            return self._group(self._active_units(), utcnow())

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Operator actions ---

    def force_sync(self, unit_id: str, current_time: Optional[datetime] = None) -> ReconcilableUnit:
        """Clear retry state and re-apply on the next pass even if the hash is unchanged."""
        if current_time is None:
            current_time = utcnow()
        with self._lock:
            unit = self._units.get(unit_id)
            if unit is None:
                raise UnitNotFoundError(f"No active unit {unit_id}")
            unit.attempts = 0
            unit.fatal_hash = None
            unit.next_attempt_at = None
            self._forced.add(unit_id)
            self.queue.add(unit_id, current_time)
        logger.info("Force sync requested for %s", unit_id)
        return unit

    def delete_unit(
        self,
        unit_id: str,
        force: bool = False,
        current_time: Optional[datetime] = None,
    ) -> List[str]:
        """
        Start deleting a unit and everything that depends on it. With
        ``force`` the unit itself is removed without an external delete.
        Returns the ids entering the deletion path.
        """
        if current_time is None:
            current_time = utcnow()
        with self._lock:
            self._sync_units(current_time)
            if unit_id not in self._units:
                raise UnitNotFoundError(f"No active unit {unit_id}")
            affected = self._begin_deletion(unit_id, current_time)
            if force:
                self._units[unit_id].force_delete = True
            self._process_deletions(current_time)
        return affected

    def diff(self, unit_id: str) -> dict:
        """Desired vs live state of one unit."""
        unit = self.get_unit(unit_id)
        entry = self.store.require(unit_id)
        desired_hash = self._desired_hash(unit, entry)

        if unit.kind in REALIZED_KINDS:
            body = entry.spec.get("body", {})
            observed = self.adapters.get(entry.spec.get("provider")).observe(
                ResourceRef.parse(unit_id)
            )
            live = observed.spec if observed.exists else None
            differences = diff_specs(body, live) if live is not None else ["."]
            return {
                "unit_id": unit_id,
                "desired": body,
                "live": live,
                "exists": observed.exists,
                "differences": differences,
                "in_sync": observed.exists and not differences,
            }

        return {
            "unit_id": unit_id,
            "desired": entry.spec,
            "live": None,
            "exists": True,
            "differences": [] if desired_hash == unit.last_applied_hash else ["."],
            "in_sync": desired_hash == unit.last_applied_hash,
        }

    # --- Main loop ---

    def reconcile_once(self, current_time: Optional[datetime] = None) -> List[dict]:
        """
        Run a single reconciliation pass.
        Returns one result per unit that was acted on.
        """
        if current_time is None:
            current_time = utcnow()
        with self._lock:
            return self._reconcile_pass(current_time)

    def _reconcile_pass(self, current_time: datetime) -> List[dict]:
        self._passes += 1
        results: List[dict] = []

        self._sync_units(current_time)
        for event in self.drift.check_due(self._active_units(), current_time):
            results.append({"unit_id": event.unit_id, "action": "drift", **event.to_dict()})

        ready = self.queue.drain(current_time)
        results.extend(self._process_deletions(current_time))

        active = [u for u in self._active_units() if not self._is_prune_candidate(u)]
        waves = self._group(active, current_time)

        lower_unhealthy: List[str] = []
        for index, wave in enumerate(waves):
            results.extend(self._reconcile_wave(wave, ready, lower_unhealthy, current_time))
            unhealthy = [uid for uid in wave if not self._units[uid].is_healthy]
            if not unhealthy and index + 1 < len(waves):
                # Barrier lifted: re-evaluate waiting units of the next wave now
                ready.update(
                    uid for uid in waves[index + 1]
                    if self._units[uid].phase == UnitPhase.PENDING
                )
            lower_unhealthy = lower_unhealthy + unhealthy

        results.extend(self._process_prunes(current_time))
        results.extend(self._process_deletions(current_time))
        self._aggregate_readiness(current_time)
        return results

    def run_until_settled(
        self, current_time: Optional[datetime] = None, max_passes: int = 20
    ) -> List[dict]:
        """Repeat passes at one instant until nothing more happens."""
        if current_time is None:
            current_time = utcnow()
        results: List[dict] = []
        for _ in range(max_passes):
            pass_results = self.reconcile_once(current_time)
            results.extend(pass_results)
            if not pass_results and not self._has_due_work(current_time):
                break
        return results

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the scheduler loop asynchronously."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await asyncio.to_thread(self.reconcile_once)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.heartbeat_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False

    # --- Arena ---

    def _active_units(self) -> List[ReconcilableUnit]:
        return [u for u in self._units.values() if not u.is_deleting]

    def _has_due_work(self, current_time: datetime) -> bool:
        for unit_id in self.queue.pending():
            due = self.queue.due_at(unit_id)
            if due is not None and due <= current_time:
                return True
        return False

    def _sync_units(self, current_time: datetime) -> None:
        """Create units for new store entries and pick up spec changes."""
        entries = [e for e in self.store.list() if e.category in _UNIT_KINDS]
        for entry in entries:
            unit = self._units.get(entry.key)
            if unit is None:
                kind = _UNIT_KINDS[entry.category]
                unit = ReconcilableUnit(
                    id=entry.key,
                    kind=kind,
                    wave=WaveAssignment(),
                    claim_phase=ClaimPhase.PENDING if kind == UnitKind.CLAIM else None,
                )
                self._units[entry.key] = unit
                self._tombstones.pop(entry.key, None)
                self._transition(unit, current_time, message="Discovered in store")
                self.queue.add(unit.id, current_time)
            self._refresh_declared(unit, entry)

        # Deletions start only once every entry has a unit
        for entry in entries:
            unit = self._units[entry.key]
            if unit.is_deleting:
                continue
            if entry.deletion_requested or self._owner_gone(unit):
                self._begin_deletion(unit.id, current_time)
                continue

            desired = self._desired_hash(unit, entry)
            if desired != unit.attempt_hash and unit.attempt_hash is not None:
                # New desired state: retry budget and fatal marker start over
                unit.attempts = 0
                unit.next_attempt_at = None
                unit.attempt_hash = None
            if desired != unit.last_applied_hash and unit.id not in self.queue:
                if unit.next_attempt_at and unit.next_attempt_at > current_time:
                    self.queue.add(unit.id, unit.next_attempt_at)
                else:
                    self.queue.add(unit.id, current_time)

        known = {e.key for e in entries}
        for unit_id in list(self._units):
            if unit_id not in known and not self._units[unit_id].is_deleting:
                # Removed from the store behind our back
                unit = self._units.pop(unit_id)
                self._transition(unit, current_time, phase=UnitPhase.DELETED,
                                 message="Removed from the store")
                self._tombstones[unit_id] = unit
                self.drift.forget(unit_id)

    def _owner_gone(self, unit: ReconcilableUnit) -> bool:
        """Owned units follow their owner into deletion."""
        if not unit.owner:
            return False
        owner = self._units.get(unit.owner)
        return owner is None or owner.is_deleting

    def _refresh_declared(self, unit: ReconcilableUnit, entry: StoreEntry) -> None:
        """Copy scheduling attributes from the desired spec onto the unit."""
        spec = entry.spec
        unit.owner = entry.owner if unit.kind in (UnitKind.MANAGED, UnitKind.COMPOSITE) else None
        unit.depends_on = list(spec.get("depends_on", []))
        unit.wave.declared = int(spec.get("wave", 0))
        if "sync_policy" in spec:
            unit.sync_policy = SyncPolicy.model_validate(spec["sync_policy"])
        if "deletion_policy" in spec:
            unit.deletion_policy = DeletionPolicy(spec["deletion_policy"])
        if unit.kind == UnitKind.COMPOSITE:
            claim = self.store.get(entry.owner) if entry.owner else None
            if claim is not None:
                unit.sync_policy = SyncPolicy.model_validate(
                    claim.spec.get("sync_policy", {})
                )
                unit.deletion_policy = DeletionPolicy(
                    claim.spec.get("deletion_policy", DeletionPolicy.DELETE.value)
                )

    def _desired_hash(self, unit: ReconcilableUnit, entry: StoreEntry) -> str:
        """
        Claims hash together with the definitions and compositions that
        serve them, so template changes re-resolve unchanged claims.
        """
        if unit.kind != UnitKind.CLAIM:
            return entry.desired_hash
        kind = entry.spec.get("kind")
        inputs = [entry.desired_hash]
        for definition in self.store.list(StoreCategory.DEFINITION):
            if definition.spec.get("claim_kind") == kind:
                inputs.append(definition.desired_hash)
                composite_kind = definition.spec.get("composite_kind")
                inputs.extend(sorted(
                    c.desired_hash for c in self.store.list(StoreCategory.COMPOSITION)
                    if c.spec.get("composite_kind") == composite_kind
                ))
        return spec_hash(inputs)

    def _is_prune_candidate(self, unit: ReconcilableUnit) -> bool:
        entry = self.store.get(unit.id)
        return entry is not None and entry.prune_requested

    def _is_stale(self, unit: ReconcilableUnit) -> bool:
        """Healthy, but a newer desired state has not been applied yet."""
        entry = self.store.get(unit.id)
        return entry is not None and self._desired_hash(unit, entry) != unit.last_applied_hash

    def _dependents(self, unit_id: str) -> List[str]:
        """Units that declare ``unit_id`` as a dependency or owner."""
        return [
            u.id for u in self._units.values()
            if u.owner == unit_id or unit_id in u.depends_on
        ]

    def _group(self, units: List[ReconcilableUnit], current_time: datetime) -> List[List[str]]:
        """Group into waves; cycle members are failed and left out."""
        self._cyclic = set()
        remaining = list(units)
        while True:
            try:
                return self.grouper.group(remaining)
            except DependencyCycleError as e:
                logger.error("%s", e)
                for unit_id in e.unit_ids:
                    unit = self._units[unit_id]
                    self._cyclic.add(unit_id)
                    self.queue.discard(unit_id)
                    self._transition(
                        unit, current_time,
                        phase=UnitPhase.ERROR,
                        sync=SyncStatus.ERROR,
                        message=str(e),
                    )
                remaining = [u for u in remaining if u.id not in self._cyclic]

    # --- Waves ---

    def _blockers(self, unit: ReconcilableUnit, lower_unhealthy: List[str]) -> List[str]:
        blockers = list(lower_unhealthy)
        deps = list(unit.depends_on) + ([unit.owner] if unit.owner else [])
        for dep in deps:
            dep_unit = self._units.get(dep)
            if dep_unit is None or not dep_unit.is_healthy:
                if dep not in blockers:
                    blockers.append(dep)
        return blockers

    def _blocked_message(self, blockers: List[str]) -> str:
        failed = [
            b for b in blockers
            if b in self._units and self._units[b].phase in (UnitPhase.ERROR, UnitPhase.DEGRADED)
        ]
        if failed:
            first = self._units[failed[0]]
            return f"Blocked by failed dependency {first.id}: {first.message}"
        shown = ", ".join(blockers[:3])
        more = f" and {len(blockers) - 3} more" if len(blockers) > 3 else ""
        return f"Waiting for {shown}{more} to become Healthy"

    def _reconcile_wave(
        self,
        wave: List[str],
        ready: Set[str],
        lower_unhealthy: List[str],
        current_time: datetime,
    ) -> List[dict]:
        results: List[dict] = []
        to_apply: List[Tuple[ReconcilableUnit, StoreEntry, str]] = []

        for unit_id in wave:
            if unit_id not in ready:
                continue
            unit = self._units[unit_id]
            entry = self.store.get(unit_id)
            if entry is None:
                continue
            desired = self._desired_hash(unit, entry)

            if unit.fatal_hash == desired and unit_id not in self._forced:
                continue
            if unit.next_attempt_at and current_time < unit.next_attempt_at:
                self.queue.add(unit_id, unit.next_attempt_at)
                continue

            blockers = self._blockers(unit, lower_unhealthy)
            drifted = self._drifted(unit, entry)
            needs_apply = (
                desired != unit.last_applied_hash
                or unit_id in self._forced
                or unit.observed_status == ObservedStatus.MISSING
                or (drifted and unit.sync_policy.self_heal)
            )

            if blockers:
                if needs_apply or not unit.is_healthy:
                    self._transition(
                        unit, current_time,
                        phase=UnitPhase.PENDING,
                        sync=SyncStatus.OUT_OF_SYNC,
                        message=self._blocked_message(blockers),
                    )
                    self.queue.add(
                        unit_id,
                        current_time + timedelta(seconds=self.config.requeue_interval_seconds),
                    )
                continue

            if needs_apply:
                if unit_id in self._in_flight and not self._in_flight[unit_id].done():
                    self._transition(
                        unit, current_time,
                        message="Previous apply still running; will retry",
                    )
                    self.queue.add(
                        unit_id,
                        current_time + timedelta(seconds=self.config.requeue_interval_seconds),
                    )
                    continue
                self._in_flight.pop(unit_id, None)
                to_apply.append((unit, entry, desired))
                continue

            if not unit.is_healthy:
                # Applied already (possibly by another writer); only readiness is left
                if unit.kind in REALIZED_KINDS:
                    results.extend(self._poll_readiness(unit, entry, current_time))
                else:
                    self._transition(unit, current_time, phase=UnitPhase.HEALTHY,
                                     observed=ObservedStatus.HEALTHY,
                                     sync=SyncStatus.SYNCED, message="Already applied")
                continue

            if drifted:
                error = DriftError(unit_id, spec_hash(entry.spec.get("body", {})), unit.observed_hash)
                self._transition(
                    unit, current_time,
                    sync=SyncStatus.OUT_OF_SYNC,
                    message=f"{error}; self-heal disabled, manual sync required",
                )
                continue

            if unit.phase == UnitPhase.HEALTHY and unit.sync_status != SyncStatus.SYNCED:
                self._transition(unit, current_time, sync=SyncStatus.SYNCED,
                                 message="Live state matches desired state")

        results.extend(self._apply_all(to_apply, ready, current_time))
        return results

    def _drifted(self, unit: ReconcilableUnit, entry: StoreEntry) -> bool:
        if unit.kind not in REALIZED_KINDS or unit.observed_hash is None:
            return False
        return unit.observed_hash != spec_hash(entry.spec.get("body", {}))

    # --- Apply ---

    def _apply_all(
        self,
        batch: List[Tuple[ReconcilableUnit, StoreEntry, str]],
        ready: Set[str],
        current_time: datetime,
    ) -> List[dict]:
        """Apply one wave's admitted units; realized kinds run in parallel."""
        results: List[dict] = []
        futures: Dict[str, Future] = {}

        for unit, entry, desired in batch:
            unit.attempt_hash = desired
            unit.applying_since = current_time
            self._forced.discard(unit.id)
            self._transition(
                unit, current_time,
                phase=UnitPhase.APPLYING,
                sync=SyncStatus.SYNCING,
                message="Applying desired state",
            )
            if unit.kind in REALIZED_KINDS:
                futures[unit.id] = self._executor.submit(self._realize, unit.id, entry)

        if futures:
            wait(list(futures.values()), timeout=self.config.apply_timeout_seconds)

        for unit, entry, desired in batch:
            try:
                if unit.kind == UnitKind.CLAIM:
                    self.resolver.resolve(self.store.get_claim(unit.id), revision=entry.revision)
                    observed = None
                elif unit.kind == UnitKind.COMPOSITE:
                    observed = None
                else:
                    future = futures[unit.id]
                    if not future.done():
                        self._in_flight[unit.id] = future
                        raise ApplyTimeoutError(
                            f"Apply of {unit.id} exceeded {self.config.apply_timeout_seconds}s"
                        )
                    observed = future.result()
                self.store.record_applied(unit.id, unit.last_applied_hash, desired)
            except ConflictError as e:
                results.append(self._on_conflict(unit, e, current_time))
                continue
            except KernelError as e:
                results.append(self._on_failure(unit, e, desired, current_time))
                continue
            except Exception as e:
                results.append(self._on_failure(unit, ApplyError(str(e)), desired, current_time))
                continue

            unit.last_applied_hash = desired
            unit.attempts = 0
            unit.next_attempt_at = None
            unit.fatal_hash = None
            results.append(self._on_applied(unit, entry, observed, ready, current_time))

        return results

    def _realize(self, unit_id: str, entry: StoreEntry) -> ObservedState:
        """Worker-thread body: push the desired body through its adapter."""
        adapter = self.adapters.get(entry.spec.get("provider"))
        return adapter.apply(ResourceRef.parse(unit_id), entry.spec.get("body", {}))

    def _on_applied(
        self,
        unit: ReconcilableUnit,
        entry: StoreEntry,
        observed: Optional[ObservedState],
        ready: Set[str],
        current_time: datetime,
    ) -> dict:
        if observed is not None:
            unit.observed_hash = spec_hash(observed.spec)
            self.store.record_observed(unit.id, observed, unit.observed_hash)
            checks = [ReadinessCheck.model_validate(c) for c in entry.spec.get("readiness_checks", [])]
            if not is_ready(observed, checks):
                self._transition(
                    unit, current_time,
                    phase=UnitPhase.APPLYING,
                    observed=ObservedStatus.PROGRESSING,
                    sync=SyncStatus.SYNCED,
                    message="Applied; waiting for readiness",
                )
                self.queue.add(
                    unit.id,
                    current_time + timedelta(seconds=self.config.readiness_poll_seconds),
                )
                return {"unit_id": unit.id, "action": "applied", "phase": unit.phase.value}

        message = {
            UnitKind.CLAIM: "Resolved into composite resource",
            UnitKind.COMPOSITE: "Composite resource recorded",
        }.get(unit.kind, "Applied and healthy")
        if unit.kind == UnitKind.CLAIM and unit.claim_phase == ClaimPhase.PENDING:
            unit.claim_phase = ClaimPhase.BOUND
        self._transition(
            unit, current_time,
            phase=UnitPhase.HEALTHY,
            observed=ObservedStatus.HEALTHY,
            sync=SyncStatus.SYNCED,
            message=message,
        )
        ready.update(self._dependents(unit.id))
        return {"unit_id": unit.id, "action": "applied", "phase": unit.phase.value}

    def _poll_readiness(
        self, unit: ReconcilableUnit, entry: StoreEntry, current_time: datetime
    ) -> List[dict]:
        try:
            observed = self.adapters.get(entry.spec.get("provider")).observe(
                ResourceRef.parse(unit.id)
            )
        except Exception as e:
            logger.warning("Readiness poll of %s failed: %s", unit.id, e)
            self.queue.add(
                unit.id, current_time + timedelta(seconds=self.config.readiness_poll_seconds)
            )
            return []

        checks = [ReadinessCheck.model_validate(c) for c in entry.spec.get("readiness_checks", [])]
        if not observed.exists:
            self._transition(unit, current_time, observed=ObservedStatus.MISSING,
                             message="External object disappeared while becoming ready")
            self.queue.add(unit.id, current_time)
            return []
        if is_ready(observed, checks):
            self._transition(unit, current_time, phase=UnitPhase.HEALTHY,
                             observed=ObservedStatus.HEALTHY,
                             sync=SyncStatus.SYNCED, message="Ready")
            for dependent in self._dependents(unit.id):
                self.queue.add(dependent, current_time)
            return [{"unit_id": unit.id, "action": "ready", "phase": unit.phase.value}]

        self._transition(unit, current_time, phase=UnitPhase.APPLYING,
                         observed=ObservedStatus.PROGRESSING, message="Waiting for readiness")
        self.queue.add(
            unit.id, current_time + timedelta(seconds=self.config.readiness_poll_seconds)
        )
        return []

    def _on_conflict(self, unit: ReconcilableUnit, error: ConflictError, current_time: datetime) -> dict:
        entry = self.store.get(unit.id)
        if entry is not None:
            unit.last_applied_hash = entry.last_applied_hash
        self._transition(unit, current_time, phase=UnitPhase.PENDING,
                         sync=SyncStatus.OUT_OF_SYNC, message=f"{error}; retrying")
        self.queue.add(unit.id, current_time)
        return {"unit_id": unit.id, "action": "conflict", "phase": unit.phase.value}

    def _on_failure(
        self, unit: ReconcilableUnit, error: KernelError, desired: str, current_time: datetime
    ) -> dict:
        name = type(error).__name__
        if not error.retryable:
            unit.fatal_hash = desired
            logger.error("Fatal error on %s: %s", unit.id, error)
            self._transition(unit, current_time, phase=UnitPhase.ERROR,
                             sync=SyncStatus.ERROR, message=f"{name}: {error}")
            return {"unit_id": unit.id, "action": "failed", "phase": unit.phase.value,
                    "error": name, "fatal": True}

        unit.attempts += 1
        if not self.backoff.should_retry(unit.attempts):
            unit.fatal_hash = desired
            logger.error("Giving up on %s after %d attempts: %s", unit.id, unit.attempts, error)
            self._transition(
                unit, current_time,
                phase=UnitPhase.DEGRADED,
                observed=ObservedStatus.DEGRADED,
                sync=SyncStatus.ERROR,
                message=f"{name} after {unit.attempts} attempts: {error}",
            )
            return {"unit_id": unit.id, "action": "failed", "phase": unit.phase.value,
                    "error": name, "fatal": False}

        delay = self.backoff.next_delay(unit.attempts - 1)
        unit.next_attempt_at = current_time + timedelta(seconds=delay)
        self.queue.add(unit.id, unit.next_attempt_at)
        logger.warning("Apply of %s failed (attempt %d): %s; retrying in %.1fs",
                       unit.id, unit.attempts, error, delay)
        self._transition(
            unit, current_time,
            phase=UnitPhase.ERROR,
            sync=SyncStatus.ERROR,
            message=(
                f"{name} (attempt {unit.attempts}/{self.backoff.max_attempts}): "
                f"{error}; retrying in {delay:.1f}s"
            ),
        )
        return {"unit_id": unit.id, "action": "failed", "phase": unit.phase.value,
                "error": name, "fatal": False}

    # --- Pruning ---

    def _process_prunes(self, current_time: datetime) -> List[dict]:
        results: List[dict] = []
        for unit in list(self._units.values()):
            if unit.is_deleting or not self._is_prune_candidate(unit):
                continue
            if not unit.sync_policy.auto_prune:
                message = "No longer in the desired set; pruning disabled"
                if unit.message != message:
                    self._transition(unit, current_time, sync=SyncStatus.OUT_OF_SYNC,
                                     message=message)
                continue

            holders = self._prune_holders(unit)
            if holders:
                self._transition(
                    unit, current_time,
                    sync=SyncStatus.OUT_OF_SYNC,
                    message=f"Prune deferred; {holders[0]} still depends on it",
                )
                continue

            wave = unit.wave.effective
            waiting = [
                u.id for u in self._active_units()
                if u.id != unit.id
                and u.wave.effective == wave
                and not self._is_prune_candidate(u)
                and (not u.is_healthy or self._is_stale(u))
            ]
            if waiting:
                self._transition(
                    unit, current_time,
                    sync=SyncStatus.OUT_OF_SYNC,
                    message=f"Prune deferred until wave {wave} is Healthy",
                )
                continue

            logger.info("Pruning %s", unit.id)
            self._begin_deletion(unit.id, current_time)
            results.append({"unit_id": unit.id, "action": "prune", "phase": unit.phase.value})
        return results

    def _prune_holders(self, unit: ReconcilableUnit) -> List[str]:
        """Still-desired units that a prune of ``unit`` would cascade into."""
        holders = []
        for uid in self._cascade(unit.id):
            other = self._units[uid]
            if uid == unit.id or other.is_deleting:
                continue
            if self._is_prune_candidate(other) and other.sync_policy.auto_prune:
                continue
            holders.append(uid)
        return sorted(holders)

    # --- Deletion ---

    def _cascade(self, unit_id: str) -> List[str]:
        """A unit and everything that transitively depends on or is owned by it."""
        affected: List[str] = []
        pending = [unit_id]
        while pending:
            current = pending.pop()
            if current not in self._units or current in affected:
                continue
            affected.append(current)
            pending.extend(self._dependents(current))
        return affected

    def _begin_deletion(self, unit_id: str, current_time: datetime) -> List[str]:
        """Move a unit and its transitive dependents into the deletion path."""
        affected = self._cascade(unit_id)
        for uid in affected:
            unit = self._units[uid]
            if unit.phase == UnitPhase.DELETING:
                continue
            # Queued and not-yet-started applies are cancelled; running ones finish first
            self.queue.discard(uid)
            future = self._in_flight.get(uid)
            if future is not None and future.cancel():
                del self._in_flight[uid]
            unit.next_attempt_at = None
            self._forced.discard(uid)
            self.drift.forget(uid)
            entry = self.store.get(uid)
            if entry is not None and not entry.deletion_requested:
                self.store.request_deletion(uid)
            if unit.kind == UnitKind.CLAIM:
                unit.claim_phase = ClaimPhase.DELETING
            self._transition(unit, current_time, phase=UnitPhase.DELETING,
                             sync=SyncStatus.OUT_OF_SYNC, message="Deletion in progress")
        return affected

    def _process_deletions(self, current_time: datetime) -> List[dict]:
        """Advance deleting units in reverse-wave order until nothing moves."""
        results: List[dict] = []
        progress = True
        while progress:
            progress = False
            deleting = sorted(
                (u for u in self._units.values() if u.phase == UnitPhase.DELETING),
                key=lambda u: (-u.wave.effective, u.id),
            )
            for unit in deleting:
                if self._finish_deletion(unit, current_time):
                    results.append({"unit_id": unit.id, "action": "deleted",
                                    "phase": UnitPhase.DELETED.value})
                    progress = True
        return results

    def _finish_deletion(self, unit: ReconcilableUnit, current_time: datetime) -> bool:
        if any(self._units[d].phase != UnitPhase.DELETED for d in self._dependents(unit.id)):
            return False
        future = self._in_flight.get(unit.id)
        if future is not None and not future.done():
            self._transition(unit, current_time, message="Waiting for in-flight apply before deleting")
            return False
        self._in_flight.pop(unit.id, None)

        if not unit.force_delete:
            if unit.stuck:
                return False
            if unit.next_attempt_at and current_time < unit.next_attempt_at:
                return False
            try:
                self._delete_external(unit)
            except Exception as e:
                self._on_delete_failure(unit, e, current_time)
                return False

        self.store.remove(unit.id)
        self.drift.forget(unit.id)
        self.queue.discard(unit.id)
        if unit.kind == UnitKind.CLAIM:
            unit.claim_phase = ClaimPhase.DELETED
        message = "Force-deleted; external object may remain" if unit.force_delete else "Deleted"
        self._transition(unit, current_time, phase=UnitPhase.DELETED, message=message)
        self._tombstones[unit.id] = self._units.pop(unit.id)
        logger.info("%s %s", message, unit.id)
        return True

    def _delete_external(self, unit: ReconcilableUnit) -> None:
        if unit.kind not in REALIZED_KINDS:
            return
        if unit.deletion_policy == DeletionPolicy.ORPHAN:
            logger.info("Orphaning external object of %s", unit.id)
            return
        entry = self.store.get(unit.id)
        if entry is None:
            return
        adapter = self.adapters.get(entry.spec.get("provider"))
        future = self._executor.submit(adapter.delete, ResourceRef.parse(unit.id))
        done, _ = wait([future], timeout=self.config.apply_timeout_seconds)
        if not done:
            raise DeletionError(
                f"Delete of {unit.id} exceeded {self.config.apply_timeout_seconds}s"
            )
        future.result()

    def _on_delete_failure(self, unit: ReconcilableUnit, error: Exception, current_time: datetime) -> None:
        unit.delete_attempts += 1
        if unit.delete_attempts >= self.config.max_delete_attempts:
            unit.stuck = True
            logger.error("Deletion of %s stuck after %d attempts: %s",
                         unit.id, unit.delete_attempts, error)
            self._transition(
                unit, current_time,
                observed=ObservedStatus.DEGRADED,
                message=(
                    f"Deletion stuck after {unit.delete_attempts} attempts: {error}; "
                    f"force-delete to remove without cleanup"
                ),
            )
            return
        delay = self.backoff.next_delay(unit.delete_attempts - 1)
        unit.next_attempt_at = current_time + timedelta(seconds=delay)
        self._transition(
            unit, current_time,
            message=f"Delete failed (attempt {unit.delete_attempts}): {error}; retrying in {delay:.1f}s",
        )

    # --- Readiness aggregation ---

    def _aggregate_readiness(self, current_time: datetime) -> None:
        """Composite ready = every child ready; claim follows its composite."""
        for unit in self._active_units():
            if unit.kind != UnitKind.COMPOSITE:
                continue
            entry = self.store.get(unit.id)
            if entry is None:
                continue
            expected = [ResourceRef.model_validate(r).key for r in entry.spec.get("resource_refs", [])]
            ready_children = [
                key for key in expected
                if key in self._units and self._units[key].is_healthy
            ]
            unit.ready = unit.is_healthy and len(ready_children) == len(expected)

            claim = self._units.get(unit.owner) if unit.owner else None
            if claim is None or claim.is_deleting:
                continue
            claim.ready = unit.ready
            if unit.ready and claim.claim_phase != ClaimPhase.READY:
                claim.claim_phase = ClaimPhase.READY
                self._transition(claim, current_time, message="Composite resource is ready")
            elif not unit.ready and claim.claim_phase == ClaimPhase.READY:
                claim.claim_phase = ClaimPhase.BOUND
                self._transition(
                    claim, current_time,
                    message=f"{len(ready_children)} of {len(expected)} resources ready",
                )
            self.store.record_status(claim.id, claim.status())
            self.store.record_status(unit.id, unit.status())

    # --- Transitions ---

    def _transition(
        self,
        unit: ReconcilableUnit,
        current_time: datetime,
        phase: Optional[UnitPhase] = None,
        observed: Optional[ObservedStatus] = None,
        sync: Optional[SyncStatus] = None,
        message: Optional[str] = None,
    ) -> None:
        changed = False
        if phase is not None and phase != unit.phase:
            logger.info("%s: %s -> %s", unit.id, unit.phase.value, phase.value)
            unit.phase = phase
            changed = True
        if observed is not None and observed != unit.observed_status:
            unit.observed_status = observed
            changed = True
        if sync is not None and sync != unit.sync_status:
            unit.sync_status = sync
            changed = True
        if message is not None:
            unit.message = message
        if changed or unit.last_transition_time is None:
            unit.last_transition_time = current_time
        self.store.record_status(unit.id, unit.status())
