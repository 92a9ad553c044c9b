"""
Manifest parsing — YAML documents into typed desired-state resources.

Document shape:

    kind: <ResourceDefinition | Composition | Application | claim kind>
    metadata:
      name: ...
      namespace: ...        # claims and applications
      labels: {...}
    spec: {...}
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pydantic
import yaml

from converge_kernel.errors import ManifestError
from converge_kernel.hashing import spec_hash
from converge_kernel.models.definitions import Composition, ResourceDefinition
from converge_kernel.models.resources import Application, Claim
from converge_kernel.models.source import SourceDocument

logger = logging.getLogger(__name__)

DEFINITION_KIND = "ResourceDefinition"
COMPOSITION_KIND = "Composition"
APPLICATION_KIND = "Application"
DEFAULT_NAMESPACE = "default"

MANIFEST_SUFFIXES = (".yaml", ".yml")


def load_documents(text: str, origin: Optional[str] = None) -> List[SourceDocument]:
    """Parse a (possibly multi-document) YAML string."""
    try:
        raw_documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {origin or '<input>'}: {e}")

    documents = []
    for raw in raw_documents:
        if raw is None:
            continue
        if not isinstance(raw, dict) or "kind" not in raw:
            raise ManifestError(
                f"Document in {origin or '<input>'} is not a mapping with a kind"
            )
        try:
            documents.append(SourceDocument(
                kind=raw["kind"],
                metadata=raw.get("metadata") or {},
                spec=raw.get("spec") or {},
                origin=origin,
            ))
        except pydantic.ValidationError as e:
            raise ManifestError(f"Malformed document in {origin or '<input>'}: {e}")
    return documents


def documents_digest(documents: List[SourceDocument]) -> str:
    """Content digest of a document set; origins do not contribute."""
    return spec_hash([d.model_dump(mode="json", exclude={"origin"}) for d in documents])


class DirectorySource:
    """Reads every manifest under a directory tree, in sorted path order."""

    def __init__(self, path: str):
        self.path = Path(path)

    def files(self) -> List[Path]:
        if not self.path.exists():
            raise ManifestError(f"Source path does not exist: {self.path}")
        if self.path.is_file():
            return [self.path]
        return sorted(
            p for p in self.path.rglob("*")
            if p.is_file() and p.suffix in MANIFEST_SUFFIXES
        )

    def read(self) -> Tuple[List[SourceDocument], str]:
        """All documents plus their content digest."""
        documents: List[SourceDocument] = []
        for file_path in self.files():
            with open(file_path, "r") as f:
                documents.extend(load_documents(f.read(), origin=str(file_path)))
        logger.debug("Read %d documents from %s", len(documents), self.path)
        return documents, documents_digest(documents)


def _qualify(dep: str, namespace: str) -> str:
    """Bare dependency names refer to applications in the same namespace."""
    if "/" in dep:
        return dep
    return f"{APPLICATION_KIND}/{namespace}/{dep}"


class ParsedSource:
    """Typed resources of one source revision, grouped by category."""

    def __init__(self):
        self.definitions: Dict[str, ResourceDefinition] = {}
        self.compositions: Dict[str, Composition] = {}
        self.claims: Dict[str, Claim] = {}
        self.applications: Dict[str, Application] = {}

    def keys(self) -> List[str]:
        return sorted(
            list(self.definitions) + list(self.compositions)
            + list(self.claims) + list(self.applications)
        )


def definition_key(name: str) -> str:
    return f"{DEFINITION_KIND}/{name}"


def composition_key(name: str) -> str:
    return f"{COMPOSITION_KIND}/{name}"


def parse_documents(
    documents: List[SourceDocument], known_claim_kinds: Optional[List[str]] = None
) -> ParsedSource:
    """
    Turn documents into typed resources. Claim kinds are the ones declared
    by definitions in this document set plus ``known_claim_kinds``.
    """
    parsed = ParsedSource()
    claim_kinds = set(known_claim_kinds or [])

    def add(bucket: dict, key: str, resource, document: SourceDocument) -> None:
        if key in bucket:
            raise ManifestError(f"Duplicate resource {key} (in {document.origin or '<input>'})")
        bucket[key] = resource

    try:
        for document in documents:
            if not document.name:
                raise ManifestError(
                    f"{document.kind} in {document.origin or '<input>'} has no metadata.name"
                )
            if document.kind == DEFINITION_KIND:
                definition = ResourceDefinition(name=document.name, **document.spec)
                add(parsed.definitions, definition_key(definition.name), definition, document)
                claim_kinds.add(definition.claim_kind)

        for document in documents:
            if document.kind == DEFINITION_KIND:
                continue
            if document.kind == COMPOSITION_KIND:
                composition = Composition(
                    name=document.name, labels=document.labels, **document.spec
                )
                add(parsed.compositions, composition_key(composition.name), composition, document)
            elif document.kind == APPLICATION_KIND:
                namespace = document.namespace or DEFAULT_NAMESPACE
                spec = dict(document.spec)
                spec["depends_on"] = [_qualify(d, namespace) for d in spec.get("depends_on", [])]
                application = Application(
                    name=document.name, namespace=namespace, labels=document.labels, **spec
                )
                add(parsed.applications, application.ref.key, application, document)
            elif document.kind in claim_kinds:
                namespace = document.namespace or DEFAULT_NAMESPACE
                spec = dict(document.spec)
                spec["depends_on"] = [_qualify(d, namespace) for d in spec.get("depends_on", [])]
                claim = Claim(
                    kind=document.kind,
                    name=document.name,
                    namespace=namespace,
                    labels=document.labels,
                    **spec,
                )
                add(parsed.claims, claim.ref.key, claim, document)
            else:
                raise ManifestError(
                    f"Unknown kind {document.kind} in {document.origin or '<input>'}: "
                    f"no ResourceDefinition declares it"
                )
    except (pydantic.ValidationError, TypeError) as e:
        raise ManifestError(f"Invalid manifest: {e}")

    return parsed
