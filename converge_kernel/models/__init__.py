"""Converge Kernel data models."""

from converge_kernel.models.adapter import ObservedState
from converge_kernel.models.definitions import (
    Composition,
    DeletionPolicy,
    FieldSchema,
    FieldType,
    Patch,
    PatchType,
    ReadinessCheck,
    ReadinessCheckType,
    ResourceDefinition,
    ResourceTemplate,
    Transform,
    TransformType,
)
from converge_kernel.models.resources import (
    Application,
    Claim,
    ClaimPhase,
    CompositeResource,
    ManagedResource,
    ResourceRef,
    SyncPolicy,
)
from converge_kernel.models.scheduler import DriftConfig, SchedulerConfig, SourceConfig
from converge_kernel.models.source import Revision, SourceDocument
from converge_kernel.models.store import StoreCategory, StoreEntry
from converge_kernel.models.units import (
    ObservedStatus,
    ReconcilableUnit,
    SyncStatus,
    UnitKind,
    UnitPhase,
    UnitStatus,
    WaveAssignment,
)

__all__ = [
    "Application",
    "Claim",
    "ClaimPhase",
    "CompositeResource",
    "Composition",
    "DeletionPolicy",
    "DriftConfig",
    "FieldSchema",
    "FieldType",
    "ManagedResource",
    "ObservedState",
    "ObservedStatus",
    "Patch",
    "PatchType",
    "ReadinessCheck",
    "ReadinessCheckType",
    "ReconcilableUnit",
    "ResourceDefinition",
    "ResourceRef",
    "ResourceTemplate",
    "Revision",
    "SchedulerConfig",
    "SourceConfig",
    "SourceDocument",
    "StoreCategory",
    "StoreEntry",
    "SyncPolicy",
    "SyncStatus",
    "Transform",
    "TransformType",
    "UnitKind",
    "UnitPhase",
    "UnitStatus",
    "WaveAssignment",
]
