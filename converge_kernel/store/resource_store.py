"""
Resource Store — the single source of truth for desired and observed state.

Written by: Source ingestion + Composition Resolver (desired specs),
            Reconciliation Scheduler (applied hash, status),
            Drift Detector (observed state).
Queried by: everything.

Behavioral Contract:
- Every entry is addressed by its resource key and versioned by the hash of
  its desired spec; ``generation`` increases on every desired change.
- Writes of ``last_applied_hash`` are compare-and-set: a writer holding a
  stale hash gets ConflictError and must re-read.
- Batch writes are all-or-nothing.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from converge_kernel.clock import utcnow
from converge_kernel.errors import ConflictError, UnitNotFoundError
from converge_kernel.hashing import spec_hash
from converge_kernel.models.adapter import ObservedState
from converge_kernel.models.definitions import Composition, ResourceDefinition
from converge_kernel.models.resources import (
    Application,
    Claim,
    CompositeResource,
    ManagedResource,
)
from converge_kernel.models.store import StoreCategory, StoreEntry
from converge_kernel.models.units import UnitStatus

logger = logging.getLogger(__name__)

# (key, category, spec, owner)
DesiredWrite = Tuple[str, StoreCategory, dict, Optional[str]]


class ResourceStore:
    """
    In-memory resource store guarded by a single lock.
    Production would back this with a transactional database.
    """

    def __init__(self):
        self._entries: Dict[str, StoreEntry] = {}
        self._lock = threading.RLock()

    # --- Desired state ---

    def put_desired(
        self,
        key: str,
        category: StoreCategory,
        spec: dict,
        owner: Optional[str] = None,
        revision: Optional[int] = None,
    ) -> StoreEntry:
        """Insert or update the desired spec for a key."""
        with self._lock:
            return self._put(key, category, spec, owner, revision)

    def put_desired_batch(
        self, writes: Iterable[DesiredWrite], revision: Optional[int] = None
    ) -> List[StoreEntry]:
        """Write several desired specs under one lock acquisition."""
        writes = list(writes)
        with self._lock:
            for key, category, _, _ in writes:
                existing = self._entries.get(key)
                if existing and existing.category != category:
                    raise ConflictError(key, category.value, existing.category.value)
            return [
                self._put(key, category, spec, owner, revision)
                for key, category, spec, owner in writes
            ]

    def _put(
        self,
        key: str,
        category: StoreCategory,
        spec: dict,
        owner: Optional[str],
        revision: Optional[int],
    ) -> StoreEntry:
        now = utcnow()
        desired_hash = spec_hash(spec)
        entry = self._entries.get(key)

        if entry is None:
            entry = StoreEntry(
                key=key,
                category=category,
                spec=spec,
                desired_hash=desired_hash,
                revision=revision,
                owner=owner,
                created_at=now,
                updated_at=now,
            )
            self._entries[key] = entry
            logger.debug("Stored new %s %s", category.value, key)
            return entry

        if entry.category != category:
            raise ConflictError(key, category.value, entry.category.value)

        if entry.desired_hash != desired_hash:
            entry.spec = spec
            entry.desired_hash = desired_hash
            entry.generation += 1
            entry.updated_at = now
            logger.debug("Updated %s to generation %d", key, entry.generation)
        if revision is not None:
            entry.revision = revision
        entry.owner = owner
        # A re-declared resource is desired again
        entry.deletion_requested = False
        entry.prune_requested = False
        return entry

    def request_deletion(self, key: str) -> StoreEntry:
        with self._lock:
            entry = self.require(key)
            entry.deletion_requested = True
            entry.updated_at = utcnow()
            return entry

    def request_prune(self, key: str) -> StoreEntry:
        with self._lock:
            entry = self.require(key)
            entry.prune_requested = True
            entry.updated_at = utcnow()
            return entry

    def remove(self, key: str) -> bool:
        """Remove an entry from the store."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                logger.debug("Removed %s", key)
                return True
            return False

    # --- Scheduler writes ---

    def record_applied(
        self, key: str, expected_hash: Optional[str], new_hash: Optional[str]
    ) -> StoreEntry:
        """Compare-and-set the last applied hash."""
        with self._lock:
            entry = self.require(key)
            if entry.last_applied_hash != expected_hash:
                raise ConflictError(key, expected_hash, entry.last_applied_hash)
            entry.last_applied_hash = new_hash
            entry.updated_at = utcnow()
            return entry

    def record_status(self, key: str, status: UnitStatus) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry.status = status

    # --- Drift detector writes ---

    def record_observed(
        self, key: str, observed: Optional[ObservedState], observed_hash: Optional[str]
    ) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry.observed = observed.model_dump(mode="json") if observed else {}
                entry.observed_hash = observed_hash

    # --- Queries ---

    def get(self, key: str) -> Optional[StoreEntry]:
        return self._entries.get(key)

    def require(self, key: str) -> StoreEntry:
        entry = self._entries.get(key)
        if entry is None:
            raise UnitNotFoundError(f"No resource stored under {key}")
        return entry

    def list(self, category: Optional[StoreCategory] = None) -> List[StoreEntry]:
        with self._lock:
            return [
                e for e in self._entries.values()
                if category is None or e.category == category
            ]

    def owned_by(self, owner_key: str) -> List[StoreEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.owner == owner_key]

    def definitions(self) -> List[ResourceDefinition]:
        return [
            ResourceDefinition.model_validate(e.spec)
            for e in self.list(StoreCategory.DEFINITION)
        ]

    def definition_for_claim_kind(self, claim_kind: str) -> List[ResourceDefinition]:
        return [d for d in self.definitions() if d.claim_kind == claim_kind]

    def compositions_for(self, composite_kind: str) -> List[Composition]:
        return [
            c for c in (
                Composition.model_validate(e.spec)
                for e in self.list(StoreCategory.COMPOSITION)
            )
            if c.composite_kind == composite_kind
        ]

    def claims_of_kind(self, claim_kind: str) -> List[Claim]:
        return [
            c for c in (
                Claim.model_validate(e.spec) for e in self.list(StoreCategory.CLAIM)
            )
            if c.kind == claim_kind
        ]

    def get_claim(self, key: str) -> Claim:
        return Claim.model_validate(self.require(key).spec)

    def get_composite(self, key: str) -> CompositeResource:
        return CompositeResource.model_validate(self.require(key).spec)

    def get_managed(self, key: str) -> ManagedResource:
        return ManagedResource.model_validate(self.require(key).spec)

    def get_application(self, key: str) -> Application:
        return Application.model_validate(self.require(key).spec)

    def get_state_snapshot(self) -> dict:
        """Get a serializable snapshot of every entry."""
        with self._lock:
            return {
                key: entry.model_dump(mode="json")
                for key, entry in self._entries.items()
            }
