"""
Source Ingestor — writes one revision of the source of truth into the
Resource Store.

Behavioral Contract:
- Writes are ordered definitions → compositions → claims → applications
  and all-or-nothing: a rejected revision leaves the store untouched
- Non-additive definition changes are rejected while claims of the kind exist
- Claims that disappear from the source are marked for deletion;
  applications that disappear are flagged for pruning (the scheduler
  honors their auto_prune policy)
- Every accepted ingestion is appended to the revision log
"""

import logging
from typing import List, Optional

from converge_kernel.clock import utcnow
from converge_kernel.errors import DefinitionChangeError, UnitNotFoundError
from converge_kernel.composition.schema import check_definition_update
from converge_kernel.lineage.revisions import RevisionLog
from converge_kernel.models.definitions import ResourceDefinition
from converge_kernel.models.source import Revision, SourceDocument
from converge_kernel.models.store import StoreCategory
from converge_kernel.source.manifests import ParsedSource, documents_digest, parse_documents
from converge_kernel.store.resource_store import DesiredWrite, ResourceStore

logger = logging.getLogger(__name__)

SOURCE_CATEGORIES = (
    StoreCategory.DEFINITION,
    StoreCategory.COMPOSITION,
    StoreCategory.CLAIM,
    StoreCategory.APPLICATION,
)


class SourceIngestor:
    """Applies source revisions to the Resource Store."""

    def __init__(self, store: ResourceStore, revision_log: Optional[RevisionLog] = None):
        self.store = store
        self.revision_log = revision_log or RevisionLog()

    def ingest(
        self,
        documents: List[SourceDocument],
        commit: Optional[str] = None,
        rollback_of: Optional[int] = None,
    ) -> Revision:
        """Validate and write a full document set as the new desired state."""
        known_kinds = [d.claim_kind for d in self.store.definitions()]
        parsed = parse_documents(documents, known_claim_kinds=known_kinds)
        self._check_definitions(parsed)

        digest = documents_digest(documents)
        revision_id = self.revision_log.next_id()
        removed = self._removed_keys(parsed)

        writes: List[DesiredWrite] = []
        writes.extend(
            (key, StoreCategory.DEFINITION, d.model_dump(mode="json"), None)
            for key, d in sorted(parsed.definitions.items())
        )
        writes.extend(
            (key, StoreCategory.COMPOSITION, c.model_dump(mode="json"), None)
            for key, c in sorted(parsed.compositions.items())
        )
        writes.extend(
            (key, StoreCategory.CLAIM, c.model_dump(mode="json"), None)
            for key, c in sorted(parsed.claims.items())
        )
        writes.extend(
            (key, StoreCategory.APPLICATION, a.model_dump(mode="json"), None)
            for key, a in sorted(parsed.applications.items())
        )
        self.store.put_desired_batch(writes, revision=revision_id)

        for key in removed:
            self._retire(key)

        revision = self.revision_log.append(Revision(
            id=revision_id,
            commit=commit or digest[:12],
            digest=digest,
            documents=documents,
            resource_keys=parsed.keys(),
            removed_keys=removed,
            rollback_of=rollback_of,
            ingested_at=utcnow(),
        ))
        logger.info(
            "Ingested revision %d (%s): %d resources, %d removed",
            revision.id, revision.commit, len(revision.resource_keys), len(removed),
        )
        return revision

    def rollback(self, revision_id: int) -> Revision:
        """Re-ingest a past revision's documents as a new revision."""
        past = self.revision_log.get(revision_id)
        if past is None:
            raise UnitNotFoundError(f"No revision {revision_id}")
        logger.info("Rolling back to revision %d (%s)", past.id, past.commit)
        return self.ingest(past.documents, commit=past.commit, rollback_of=past.id)

    def _check_definitions(self, parsed: ParsedSource) -> None:
        """Reject breaking definition changes and removals while claims exist."""
        stored = {e.key: e for e in self.store.list(StoreCategory.DEFINITION)}

        def claims_exist(claim_kind: str) -> bool:
            if any(c.kind == claim_kind for c in parsed.claims.values()):
                return True
            return any(
                not e.deletion_requested and e.spec.get("kind") == claim_kind
                for e in self.store.list(StoreCategory.CLAIM)
            )

        for key, new in parsed.definitions.items():
            if key in stored:
                old = ResourceDefinition.model_validate(stored[key].spec)
                check_definition_update(old, new, claims_exist(old.claim_kind))

        for key, entry in stored.items():
            if key in parsed.definitions:
                continue
            claim_kind = entry.spec.get("claim_kind")
            if any(c.kind == claim_kind for c in parsed.claims.values()):
                raise DefinitionChangeError(
                    f"Definition {entry.spec.get('name')} was removed but claims of "
                    f"kind {claim_kind} are still declared"
                )

    def _removed_keys(self, parsed: ParsedSource) -> List[str]:
        declared = set(parsed.keys())
        return sorted(
            e.key for category in SOURCE_CATEGORIES
            for e in self.store.list(category)
            if e.key not in declared
            and not (e.deletion_requested or e.prune_requested)
        )

    def _retire(self, key: str) -> None:
        entry = self.store.get(key)
        if entry is None:
            return
        if entry.category == StoreCategory.CLAIM:
            logger.info("Claim %s removed from source; requesting deletion", key)
            self.store.request_deletion(key)
        elif entry.category == StoreCategory.APPLICATION:
            if not entry.prune_requested:
                logger.info("Application %s removed from source; flagged for pruning", key)
                self.store.request_prune(key)
        else:
            # Definitions and compositions are not reconciled; drop them directly
            logger.info("%s removed from source", key)
            self.store.remove(key)
