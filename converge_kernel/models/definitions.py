"""Definitions and Compositions — the operator-authored templates."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeletionPolicy(str, Enum):
    DELETE = "Delete"   # Remove the external object with its owner
    ORPHAN = "Orphan"   # Leave the external object live


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class FieldSchema(BaseModel):
    """Schema for one top-level claim parameter."""

    type: FieldType
    required: bool = False
    default: Optional[Any] = None
    enum: List[Any] = []
    description: str = ""


class ResourceDefinition(BaseModel):
    """
    Declares a claim kind's schema and the composite kind it maps to.
    Immutable once claims of the kind exist, except for additive fields.
    """

    name: str
    claim_kind: str                             # e.g., "PostgresInstance"
    composite_kind: str                         # e.g., "XPostgresInstance"
    parameters: Dict[str, FieldSchema] = {}
    default_composition_ref: Optional[str] = None


class PatchType(str, Enum):
    FROM_CLAIM_FIELD_PATH = "FromClaimFieldPath"
    FROM_COMPOSITE_FIELD_PATH = "FromCompositeFieldPath"
    COMBINE = "Combine"


class TransformType(str, Enum):
    MAP = "map"             # Dictionary lookup
    FORMAT = "format"       # str.format with the value as {0}
    MULTIPLY = "multiply"   # Numeric scaling
    CONVERT = "convert"     # Type conversion: string | integer | number | boolean


class Transform(BaseModel):
    type: TransformType
    mapping: Dict[str, Any] = {}
    fmt: Optional[str] = None
    factor: Optional[float] = None
    to_type: Optional[FieldType] = None


class Patch(BaseModel):
    """
    A typed copy operation into a template field path.

    FromClaimFieldPath reads ``from_field_path`` on the claim
    (e.g. "parameters.size" or "metadata.name"). FromCompositeFieldPath reads
    ``from_field_path`` on the already-rendered sibling ``from_resource``.
    Combine formats the claim values at ``variables`` with ``fmt``.
    """

    type: PatchType = PatchType.FROM_CLAIM_FIELD_PATH
    from_field_path: Optional[str] = None
    from_resource: Optional[str] = None
    variables: List[str] = []
    fmt: Optional[str] = None
    to_field_path: str
    transforms: List[Transform] = []
    required: bool = False


class ReadinessCheckType(str, Enum):
    MATCH_CONDITION = "MatchCondition"   # Adapter-reported readiness
    MATCH_STRING = "MatchString"         # Live field equals a value
    NON_EMPTY = "NonEmpty"               # Live field is present and non-empty
    NONE = "None"                        # Ready as soon as it exists


class ReadinessCheck(BaseModel):
    type: ReadinessCheckType = ReadinessCheckType.MATCH_CONDITION
    field_path: Optional[str] = None
    match_string: Optional[str] = None


class ResourceTemplate(BaseModel):
    """One generated resource inside a Composition."""

    name: str
    base: Dict[str, Any]
    patches: List[Patch] = []
    required_fields: List[str] = []
    readiness_checks: List[ReadinessCheck] = [ReadinessCheck()]
    wave: int = 0
    depends_on: List[str] = []                  # Sibling template names
    deletion_policy: Optional[DeletionPolicy] = None
    provider: str = "in-memory"


class Composition(BaseModel):
    """A named template set bound to one composite kind."""

    name: str
    composite_kind: str
    labels: Dict[str, str] = {}
    priority: int = Field(default=0, ge=0)
    resources: List[ResourceTemplate]
