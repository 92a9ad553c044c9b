"""Observed State — what an adapter reports about a live external object."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from converge_kernel.models.resources import ResourceRef


class ObservedState(BaseModel):
    """Live view of one external object."""

    ref: ResourceRef
    exists: bool = True
    external_id: Optional[str] = None       # Stable identity assigned by the adapter
    ready: bool = False
    spec: Dict[str, Any] = {}               # Live body as the external system reports it
    fields: Dict[str, Any] = {}             # Status fields (e.g., endpoint, conditions)
    message: str = ""
    observed_at: Optional[datetime] = None
