"""Reconcilable units — the scheduler's per-resource state machines."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from converge_kernel.models.definitions import DeletionPolicy
from converge_kernel.models.resources import ClaimPhase, SyncPolicy


class UnitKind(str, Enum):
    CLAIM = "Claim"
    COMPOSITE = "Composite"
    MANAGED = "Managed"
    APPLICATION = "Application"


class UnitPhase(str, Enum):
    PENDING = "Pending"
    APPLYING = "Applying"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    ERROR = "Error"
    DELETING = "Deleting"
    DELETED = "Deleted"


class ObservedStatus(str, Enum):
    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    MISSING = "Missing"


class SyncStatus(str, Enum):
    OUT_OF_SYNC = "OutOfSync"
    SYNCED = "Synced"
    SYNCING = "Syncing"
    ERROR = "Error"


class WaveAssignment(BaseModel):
    """Declared wave from the source, computed wave from the dependency graph."""

    declared: int = 0
    computed: Optional[int] = None

    @property
    def effective(self) -> int:
        return self.declared if self.computed is None else self.computed


class ReconcilableUnit(BaseModel):
    """
    One unit in the scheduler arena. The id is the store key of the
    resource the unit wraps.
    """

    id: str
    kind: UnitKind
    owner: Optional[str] = None                 # Owning unit id (lookup only)
    wave: WaveAssignment = WaveAssignment()
    depends_on: List[str] = []
    sync_policy: SyncPolicy = SyncPolicy()
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE

    phase: UnitPhase = UnitPhase.PENDING
    observed_status: ObservedStatus = ObservedStatus.UNKNOWN
    sync_status: SyncStatus = SyncStatus.OUT_OF_SYNC
    message: str = "Waiting for first reconciliation"
    last_transition_time: Optional[datetime] = None

    last_applied_hash: Optional[str] = None
    observed_hash: Optional[str] = None

    # Aggregated readiness (claims and composites)
    ready: Optional[bool] = None
    claim_phase: Optional[ClaimPhase] = None

    # Retry bookkeeping
    attempts: int = 0
    attempt_hash: Optional[str] = None        # Desired hash the attempts count against
    next_attempt_at: Optional[datetime] = None
    fatal_hash: Optional[str] = None            # Desired hash that failed fatally
    applying_since: Optional[datetime] = None
    delete_attempts: int = 0
    stuck: bool = False
    force_delete: bool = False

    @property
    def is_healthy(self) -> bool:
        return self.phase == UnitPhase.HEALTHY

    @property
    def is_deleting(self) -> bool:
        return self.phase in (UnitPhase.DELETING, UnitPhase.DELETED)

    def status(self) -> "UnitStatus":
        return UnitStatus(
            id=self.id,
            kind=self.kind,
            phase=self.phase,
            wave=self.wave.effective,
            sync_status=self.sync_status,
            observed_status=self.observed_status,
            last_applied_hash=self.last_applied_hash,
            last_transition_time=self.last_transition_time,
            message=self.message,
            ready=self.ready,
            claim_phase=self.claim_phase,
        )


class UnitStatus(BaseModel):
    """Read-only status export for observability tooling."""

    id: str
    kind: UnitKind
    phase: UnitPhase
    wave: int
    sync_status: SyncStatus
    observed_status: ObservedStatus
    last_applied_hash: Optional[str] = None
    last_transition_time: Optional[datetime] = None
    message: str
    ready: Optional[bool] = None
    claim_phase: Optional[ClaimPhase] = None
