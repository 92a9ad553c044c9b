"""Claims, composite resources, managed resources and applications."""

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel

from converge_kernel.models.definitions import DeletionPolicy, ReadinessCheck


class ResourceRef(BaseModel):
    """Stable address of a stored resource. ``key`` doubles as the unit id."""

    kind: str
    name: str
    namespace: Optional[str] = None

    @property
    def key(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ResourceRef":
        parts = key.split("/")
        if len(parts) == 3:
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        if len(parts) == 2:
            return cls(kind=parts[0], name=parts[1])
        raise ValueError(f"Not a resource key: {key!r}")

    def __str__(self) -> str:
        return self.key


class SyncPolicy(BaseModel):
    auto_prune: bool = False
    self_heal: bool = False


class ClaimPhase(str, Enum):
    PENDING = "Pending"
    BOUND = "Bound"         # Composite resource created
    READY = "Ready"         # Composite resource ready
    DELETING = "Deleting"
    DELETED = "Deleted"


class Claim(BaseModel):
    """A user-authored, namespaced request for an instance of a claim kind."""

    kind: str
    name: str
    namespace: str
    labels: Dict[str, str] = {}
    parameters: Dict[str, Any] = {}
    composition_ref: Optional[str] = None
    composition_selector: Dict[str, str] = {}
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    sync_policy: SyncPolicy = SyncPolicy()
    wave: int = 0
    depends_on: List[str] = []                  # Unit ids

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name, namespace=self.namespace)


class CompositeResource(BaseModel):
    """Cluster-scoped materialization of a claim."""

    kind: str
    name: str
    claim_ref: ResourceRef
    composition: str
    parameters: Dict[str, Any] = {}
    resource_refs: List[ResourceRef] = []

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name)


class ManagedResource(BaseModel):
    """Desired spec of one leaf external object."""

    name: str
    template: str                               # Template name inside the composition
    owner: ResourceRef                          # Owning composite resource
    provider: str
    body: Dict[str, Any]                        # Rendered template body
    readiness_checks: List[ReadinessCheck] = []
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    sync_policy: SyncPolicy = SyncPolicy()
    wave: int = 0
    depends_on: List[str] = []                  # Unit ids of sibling resources

    KIND: ClassVar[str] = "Managed"

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.KIND, name=self.name)


class Application(BaseModel):
    """An externally-defined unit realized directly through an adapter."""

    name: str
    namespace: str = "default"
    labels: Dict[str, str] = {}
    provider: str = "in-memory"
    body: Dict[str, Any] = {}                   # e.g., chart, repo path, destination
    readiness_checks: List[ReadinessCheck] = []
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    sync_policy: SyncPolicy = SyncPolicy()
    wave: int = 0
    depends_on: List[str] = []

    KIND: ClassVar[str] = "Application"

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.KIND, name=self.name, namespace=self.namespace)
