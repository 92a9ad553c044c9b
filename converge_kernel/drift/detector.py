"""
Drift Detector — compares live external state against the Resource Store.

Runs on its own per-unit timer, independent of the apply path, and on
external change notifications. It only writes observed state; whether a
drifted unit is re-applied (self-heal) or surfaced as OutOfSync is the
scheduler's decision.

Observation outcomes:
  live hash == desired body hash  → in sync
  live hash != desired body hash  → DriftEvent, unit requeued
  object missing                  → observed Missing, unit requeued for recreation
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from converge_kernel.clock import utcnow
from converge_kernel.execution.adapter import AdapterRegistry
from converge_kernel.hashing import spec_hash
from converge_kernel.models.resources import ResourceRef
from converge_kernel.models.scheduler import DriftConfig
from converge_kernel.models.units import ObservedStatus, ReconcilableUnit, UnitKind, UnitPhase
from converge_kernel.store.resource_store import ResourceStore

logger = logging.getLogger(__name__)

REALIZED_KINDS = (UnitKind.MANAGED, UnitKind.APPLICATION)


class DriftEvent:
    """A detected deviation between live and desired state."""

    def __init__(
        self,
        unit_id: str,
        reason: str,
        description: str,
        self_heal: bool,
        desired_hash: Optional[str] = None,
        observed_hash: Optional[str] = None,
    ):
        self.unit_id = unit_id
        self.reason = reason                # "drifted" | "missing" | "observe_failed"
        self.description = description
        self.self_heal = self_heal
        self.desired_hash = desired_hash
        self.observed_hash = observed_hash
        self.detected_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "reason": self.reason,
            "description": self.description,
            "self_heal": self.self_heal,
            "desired_hash": self.desired_hash,
            "observed_hash": self.observed_hash,
            "detected_at": self.detected_at.isoformat(),
        }


def diff_specs(desired: Any, live: Any, prefix: str = "") -> List[str]:
    """Field paths whose values differ between two documents."""
    if isinstance(desired, dict) and isinstance(live, dict):
        paths: List[str] = []
        for key in sorted(set(desired) | set(live)):
            path = f"{prefix}.{key}" if prefix else str(key)
            if key not in desired or key not in live:
                paths.append(path)
            else:
                paths.extend(diff_specs(desired[key], live[key], path))
        return paths
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        paths = []
        for i, (d, l) in enumerate(zip(desired, live)):
            paths.extend(diff_specs(d, l, f"{prefix}[{i}]"))
        return paths
    return [] if desired == live else [prefix or "."]


class DriftDetector:
    """Periodic observer of realized units."""

    def __init__(
        self,
        store: ResourceStore,
        adapters: AdapterRegistry,
        config: Optional[DriftConfig] = None,
        enqueue: Optional[Callable[[str, datetime], None]] = None,
    ):
        self.store = store
        self.adapters = adapters
        self.config = config or DriftConfig()
        self.enqueue = enqueue
        self._next_check: Dict[str, datetime] = {}
        self._notified: Set[str] = set()
        self._events: List[DriftEvent] = []

    def notify(self, unit_id: str) -> None:
        """External change notification: check this unit on the next pass."""
        self._notified.add(unit_id)

    def forget(self, unit_id: str) -> None:
        self._next_check.pop(unit_id, None)
        self._notified.discard(unit_id)

    def recent_events(self, limit: int = 20) -> List[DriftEvent]:
        return self._events[-limit:]

    def _eligible(self, unit: ReconcilableUnit) -> bool:
        return (
            unit.kind in REALIZED_KINDS
            and unit.last_applied_hash is not None
            and not unit.is_deleting
            and unit.phase != UnitPhase.APPLYING
        )

    def check_due(
        self, units: Iterable[ReconcilableUnit], current_time: Optional[datetime] = None
    ) -> List[DriftEvent]:
        """Observe every eligible unit whose timer expired or that was notified."""
        if current_time is None:
            current_time = utcnow()
        interval = timedelta(seconds=self.config.interval_seconds)

        events = []
        for unit in units:
            if not self._eligible(unit):
                continue
            due = self._next_check.get(unit.id)
            if due is None and unit.id not in self._notified:
                self._next_check[unit.id] = current_time + interval
                continue
            if unit.id not in self._notified and current_time < due:
                continue

            self._notified.discard(unit.id)
            self._next_check[unit.id] = current_time + interval
            event = self.check(unit, current_time)
            if event:
                events.append(event)
        return events

    def check(self, unit: ReconcilableUnit, current_time: datetime) -> Optional[DriftEvent]:
        """Observe one unit and record what was seen."""
        entry = self.store.get(unit.id)
        if entry is None:
            return None
        body = entry.spec.get("body", {})
        provider = entry.spec.get("provider")
        desired_hash = spec_hash(body)
        ref = ResourceRef.parse(unit.id)

        try:
            observed = self.adapters.get(provider).observe(ref)
        except Exception as e:
            logger.warning("Observing %s failed: %s", unit.id, e)
            unit.observed_status = ObservedStatus.UNKNOWN
            return self._emit(DriftEvent(
                unit_id=unit.id,
                reason="observe_failed",
                description=f"Could not observe {unit.id}: {e}",
                self_heal=unit.sync_policy.self_heal,
                desired_hash=desired_hash,
            ), current_time)

        if not observed.exists:
            unit.observed_status = ObservedStatus.MISSING
            unit.observed_hash = None
            self.store.record_observed(unit.id, None, None)
            logger.warning("External object for %s is missing", unit.id)
            return self._emit(DriftEvent(
                unit_id=unit.id,
                reason="missing",
                description=f"External object for {unit.id} no longer exists",
                self_heal=unit.sync_policy.self_heal,
                desired_hash=desired_hash,
            ), current_time)

        observed_hash = spec_hash(observed.spec)
        unit.observed_hash = observed_hash
        self.store.record_observed(unit.id, observed, observed_hash)

        if observed_hash == desired_hash:
            return None

        changed = diff_specs(body, observed.spec)
        logger.warning("Drift on %s at %s", unit.id, ", ".join(changed))
        return self._emit(DriftEvent(
            unit_id=unit.id,
            reason="drifted",
            description=f"Live state of {unit.id} differs at: {', '.join(changed)}",
            self_heal=unit.sync_policy.self_heal,
            desired_hash=desired_hash,
            observed_hash=observed_hash,
        ), current_time)

    def _emit(self, event: DriftEvent, current_time: datetime) -> DriftEvent:
        self._events.append(event)
        if self.enqueue:
            self.enqueue(event.unit_id, current_time)
        return event
