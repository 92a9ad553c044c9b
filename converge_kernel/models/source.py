"""Source documents and revisions — the versioned desired-state input."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class SourceDocument(BaseModel):
    """One manifest document as committed to the source."""

    kind: str
    metadata: Dict[str, Any] = {}
    spec: Dict[str, Any] = {}
    origin: Optional[str] = None            # File path the document came from

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.get("namespace")

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.metadata.get("labels") or {})


class Revision(BaseModel):
    """
    One ingestion of the source. Revision ids increase monotonically and
    every record is chained to the previous one.
    """

    id: int
    commit: str                             # Commit id or content digest
    digest: str
    documents: List[SourceDocument]
    resource_keys: List[str] = []
    removed_keys: List[str] = []
    rollback_of: Optional[int] = None
    ingested_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None
