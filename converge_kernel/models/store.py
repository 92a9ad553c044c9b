"""Resource Store entries — desired state plus last-observed state."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from converge_kernel.models.units import UnitStatus


class StoreCategory(str, Enum):
    DEFINITION = "definition"
    COMPOSITION = "composition"
    CLAIM = "claim"
    COMPOSITE = "composite"
    MANAGED = "managed"
    APPLICATION = "application"


class StoreEntry(BaseModel):
    """A single addressable resource in the store."""

    key: str
    category: StoreCategory
    spec: Dict[str, Any]                    # Desired state
    desired_hash: str
    generation: int = 1                     # Bumped on every desired change
    revision: Optional[int] = None          # Source revision that wrote it
    owner: Optional[str] = None             # Owner key (lookup only)

    # Written by the scheduler
    last_applied_hash: Optional[str] = None
    status: Optional[UnitStatus] = None

    # Written by the drift detector
    observed: Dict[str, Any] = {}
    observed_hash: Optional[str] = None

    deletion_requested: bool = False
    prune_requested: bool = False
    created_at: datetime
    updated_at: datetime
