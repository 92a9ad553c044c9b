"""
Composition Resolver — turns one Claim into a Composite Resource and its
Managed Resource specs.

Behavioral Contract:
- Exactly one ResourceDefinition must serve the claim kind
- Composition selection is deterministic: explicit reference, then the
  highest-priority label match, then the definition default, then the only
  eligible composition; anything else is AmbiguousComposition
- Templates render in declaration order; patches may read from earlier
  siblings only (PatchOrderingError otherwise)
- Rendering is pure and byte-stable for unchanged inputs
- Generated names are <namespace>.<claim> and <xr>.<template>; no part may
  contain a dot, and a claim never writes over another claim's resources
- Writes are all-or-nothing; nothing is written when rendering fails
- Never contacts an adapter
"""

import copy
import logging
from typing import List, Optional, Tuple

from converge_kernel.composition.patches import PatchContext, apply_patch
from converge_kernel.composition.paths import MISSING, get_path
from converge_kernel.composition.schema import validate_claim
from converge_kernel.errors import (
    AmbiguousComposition,
    DefinitionNotFoundError,
    TemplateRenderError,
    ValidationError,
)
from converge_kernel.models.definitions import Composition, ResourceDefinition
from converge_kernel.models.resources import (
    Claim,
    CompositeResource,
    ManagedResource,
    ResourceRef,
)
from converge_kernel.models.store import StoreCategory
from converge_kernel.store.resource_store import ResourceStore

logger = logging.getLogger(__name__)

ALWAYS_REQUIRED = ("kind", "metadata.name")
COMPOSITE_LABEL = "converge.io/composite"
CLAIM_LABEL = "converge.io/claim"
NAME_SEPARATOR = "."


def composite_name(claim: Claim) -> str:
    return f"{claim.namespace}{NAME_SEPARATOR}{claim.name}"


def managed_name(xr_name: str, template_name: str) -> str:
    return f"{xr_name}{NAME_SEPARATOR}{template_name}"


def _check_name_parts(claim: Claim, composition: Composition) -> None:
    """Generated names stay unique only while no part contains the separator."""
    parts = [("namespace", claim.namespace), ("name", claim.name)]
    parts.extend(("template", t.name) for t in composition.resources)
    bad = [f"{label} {value!r}" for label, value in parts if NAME_SEPARATOR in value]
    if bad:
        raise ValidationError(
            f"Claim {claim.ref.key}: {', '.join(bad)} must not contain {NAME_SEPARATOR!r}"
        )


def _claim_view(claim: Claim, parameters: dict) -> dict:
    """The document patches read from."""
    return {
        "metadata": {
            "name": claim.name,
            "namespace": claim.namespace,
            "labels": dict(claim.labels),
        },
        "parameters": parameters,
    }


class CompositionResolver:
    """Resolves claims against the definitions and compositions in the store."""

    def __init__(self, store: ResourceStore):
        self.store = store

    def definition_for(self, claim: Claim) -> ResourceDefinition:
        definitions = self.store.definition_for_claim_kind(claim.kind)
        if not definitions:
            raise DefinitionNotFoundError(
                f"No ResourceDefinition declares claim kind {claim.kind}"
            )
        if len(definitions) > 1:
            raise ValidationError(
                f"Claim kind {claim.kind} is declared by multiple definitions: "
                + ", ".join(sorted(d.name for d in definitions))
            )
        return definitions[0]

    def select_composition(
        self, claim: Claim, definition: ResourceDefinition
    ) -> Composition:
        """Pick the composition a claim resolves through."""
        eligible = self.store.compositions_for(definition.composite_kind)
        by_name = {c.name: c for c in eligible}

        if claim.composition_ref:
            if claim.composition_ref not in by_name:
                raise DefinitionNotFoundError(
                    f"Claim {claim.ref.key} references composition "
                    f"{claim.composition_ref}, which does not serve "
                    f"{definition.composite_kind}"
                )
            return by_name[claim.composition_ref]

        if claim.composition_selector:
            matched = [
                c for c in eligible
                if all(c.labels.get(k) == v for k, v in claim.composition_selector.items())
            ]
            if not matched:
                raise DefinitionNotFoundError(
                    f"No composition for {definition.composite_kind} matches "
                    f"selector {claim.composition_selector}"
                )
            return self._highest_priority(claim, matched)

        if definition.default_composition_ref and definition.default_composition_ref in by_name:
            return by_name[definition.default_composition_ref]

        if not eligible:
            raise DefinitionNotFoundError(
                f"No composition serves {definition.composite_kind}"
            )
        return self._highest_priority(claim, eligible)

    def _highest_priority(self, claim: Claim, candidates: List[Composition]) -> Composition:
        top = max(c.priority for c in candidates)
        winners = [c for c in candidates if c.priority == top]
        if len(winners) > 1:
            raise AmbiguousComposition(claim.ref.key, [c.name for c in winners])
        return winners[0]

    def render(self, claim: Claim) -> Tuple[CompositeResource, List[ManagedResource]]:
        """Render the composite resource and managed specs without writing."""
        definition = self.definition_for(claim)
        parameters = validate_claim(claim, definition)
        composition = self.select_composition(claim, definition)
        _check_name_parts(claim, composition)

        xr_name = composite_name(claim)
        xr_ref = ResourceRef(kind=definition.composite_kind, name=xr_name)
        template_order = [t.name for t in composition.resources]
        if len(set(template_order)) != len(template_order):
            raise TemplateRenderError(
                composition.name, "*", "template names must be unique"
            )

        ctx = PatchContext(
            composition=composition.name,
            claim_view=_claim_view(claim, parameters),
            template_order=template_order,
        )

        managed: List[ManagedResource] = []
        for template in composition.resources:
            body = copy.deepcopy(template.base)
            metadata = body.setdefault("metadata", {})
            if not isinstance(metadata, dict):
                raise ctx.error(template, "metadata must be a mapping")
            metadata.setdefault("name", managed_name(xr_name, template.name))
            labels = metadata.setdefault("labels", {})
            labels[COMPOSITE_LABEL] = xr_name
            labels[CLAIM_LABEL] = f"{claim.namespace}.{claim.name}"

            for patch in template.patches:
                apply_patch(body, patch, template, ctx)

            for path in ALWAYS_REQUIRED + tuple(template.required_fields):
                if get_path(body, path) in (MISSING, None):
                    raise ctx.error(template, f"required field {path} is not set after patching")

            depends_on = []
            for dep in template.depends_on:
                if dep not in template_order or dep == template.name:
                    raise ctx.error(template, f"depends_on names unknown sibling {dep!r}")
                depends_on.append(
                    ResourceRef(kind=ManagedResource.KIND, name=managed_name(xr_name, dep)).key
                )

            ctx.rendered[template.name] = body
            managed.append(
                ManagedResource(
                    name=managed_name(xr_name, template.name),
                    template=template.name,
                    owner=xr_ref,
                    provider=template.provider,
                    body=body,
                    readiness_checks=template.readiness_checks,
                    deletion_policy=template.deletion_policy or claim.deletion_policy,
                    sync_policy=claim.sync_policy,
                    wave=template.wave,
                    depends_on=depends_on,
                )
            )

        xr = CompositeResource(
            kind=definition.composite_kind,
            name=xr_name,
            claim_ref=claim.ref,
            composition=composition.name,
            parameters=parameters,
            resource_refs=[m.ref for m in managed],
        )
        return xr, managed

    def resolve(
        self, claim: Claim, revision: Optional[int] = None
    ) -> Tuple[CompositeResource, List[ManagedResource]]:
        """
        Render and write the composite resource and its managed specs.
        Managed resources dropped since the previous resolution are flagged
        for pruning.
        """
        xr, managed = self.render(claim)

        previous: List[str] = []
        existing = self.store.get(xr.ref.key)
        if existing is not None:
            if existing.owner != claim.ref.key:
                raise ValidationError(
                    f"Composite resource {xr.ref.key} belongs to {existing.owner}, "
                    f"not {claim.ref.key}"
                )
            previous = [r.key for r in self.store.get_composite(xr.ref.key).resource_refs]
        for m in managed:
            entry = self.store.get(m.ref.key)
            if entry is not None and entry.owner != xr.ref.key:
                raise ValidationError(
                    f"Managed resource {m.ref.key} belongs to {entry.owner}, not {xr.ref.key}"
                )

        writes = [(xr.ref.key, StoreCategory.COMPOSITE, xr.model_dump(mode="json"), claim.ref.key)]
        writes.extend(
            (m.ref.key, StoreCategory.MANAGED, m.model_dump(mode="json"), xr.ref.key)
            for m in managed
        )
        self.store.put_desired_batch(writes, revision=revision)

        current = {m.ref.key for m in managed}
        for key in previous:
            if key not in current and self.store.get(key) is not None:
                self.store.request_prune(key)
                logger.info("Managed resource %s dropped from %s; flagged for pruning", key, xr.ref.key)

        logger.info(
            "Resolved %s via %s into %d managed resources",
            claim.ref.key, xr.composition, len(managed),
        )
        return xr, managed
