"""
External Provisioner Adapters — the boundary where desired specs become
external objects.

Behavioral Contract:
- apply(ref, spec) is idempotent for identical specs and returns the live
  ObservedState, including a stable external id
- delete(ref) succeeds when the object is already gone
- observe(ref) returns ObservedState(exists=False) for missing objects
- Adapters raise ApplyError (or any exception, which the scheduler treats as
  an apply failure); they never write to the Resource Store
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from converge_kernel.clock import utcnow
from converge_kernel.composition.paths import set_path
from converge_kernel.errors import ValidationError
from converge_kernel.models.adapter import ObservedState
from converge_kernel.models.resources import ResourceRef

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "in-memory"


class ProvisionerAdapter(Protocol):
    """Protocol for adapters — pluggable backends."""

    def apply(self, ref: ResourceRef, spec: Dict[str, Any]) -> ObservedState: ...

    def delete(self, ref: ResourceRef) -> None: ...

    def observe(self, ref: ResourceRef) -> ObservedState: ...


class InMemoryProvisioner:
    """
    Reference adapter that keeps external objects in memory.
    Also lets callers simulate out-of-band changes for drift scenarios.
    """

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self._objects: Dict[str, dict] = {}
        self._lock = threading.Lock()
        self.apply_calls: List[str] = []
        self.delete_calls: List[str] = []

    def apply(self, ref: ResourceRef, spec: Dict[str, Any]) -> ObservedState:
        with self._lock:
            self.apply_calls.append(ref.key)
            obj = self._objects.get(ref.key)
            if obj is None:
                obj = {
                    "external_id": f"ext-{uuid4().hex[:12]}",
                    "ready": self.auto_ready,
                    "fields": {},
                }
                self._objects[ref.key] = obj
                logger.debug("Created external object %s", ref.key)
            obj["spec"] = copy.deepcopy(spec)
            return self._observed(ref, obj)

    def delete(self, ref: ResourceRef) -> None:
        with self._lock:
            self.delete_calls.append(ref.key)
            self._objects.pop(ref.key, None)

    def observe(self, ref: ResourceRef) -> ObservedState:
        with self._lock:
            obj = self._objects.get(ref.key)
            if obj is None:
                return ObservedState(ref=ref, exists=False, observed_at=utcnow())
            return self._observed(ref, obj)

    def _observed(self, ref: ResourceRef, obj: dict) -> ObservedState:
        return ObservedState(
            ref=ref,
            exists=True,
            external_id=obj["external_id"],
            ready=obj["ready"],
            spec=copy.deepcopy(obj["spec"]),
            fields=copy.deepcopy(obj["fields"]),
            observed_at=utcnow(),
        )

    # --- Simulation helpers ---

    def exists(self, ref: ResourceRef) -> bool:
        return ref.key in self._objects

    def live_spec(self, ref: ResourceRef) -> Optional[dict]:
        obj = self._objects.get(ref.key)
        return copy.deepcopy(obj["spec"]) if obj else None

    def set_ready(self, ref: ResourceRef, ready: bool) -> None:
        with self._lock:
            self._objects[ref.key]["ready"] = ready

    def set_field(self, ref: ResourceRef, name: str, value: Any) -> None:
        with self._lock:
            self._objects[ref.key]["fields"][name] = value

    def mutate(self, ref: ResourceRef, path: str, value: Any) -> None:
        """Change a live object behind the kernel's back."""
        with self._lock:
            set_path(self._objects[ref.key]["spec"], path, value)

    def remove_out_of_band(self, ref: ResourceRef) -> None:
        with self._lock:
            self._objects.pop(ref.key, None)


class AdapterRegistry:
    """Maps provider names to adapters."""

    def __init__(self, default: Optional[ProvisionerAdapter] = None):
        self._adapters: Dict[str, ProvisionerAdapter] = {}
        self.register(DEFAULT_PROVIDER, default or InMemoryProvisioner())

    def register(self, name: str, adapter: ProvisionerAdapter) -> None:
        """Register an adapter under a provider name."""
        self._adapters[name] = adapter

    def get(self, name: str) -> ProvisionerAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(f"No adapter registered for provider {name!r}")
        return adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)
