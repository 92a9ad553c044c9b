"""
Error taxonomy for the converge kernel.

Every error carries an ``exit_code`` so the CLI can report a distinguishing
status, and a ``retryable`` flag the scheduler uses to classify failures:

- ValidationError / TemplateError / DependencyCycleError: fatal. Recorded on
  the unit status, never retried until the source changes.
- ApplyError (and ApplyTimeoutError): transient. Retried with backoff.
- ConflictError: stale optimistic write. Retried immediately.
- DriftError: informational unless self-heal is enabled.
"""

from typing import Iterable, List, Optional


class KernelError(Exception):
    """Base exception for the converge kernel."""

    exit_code: int = 1
    retryable: bool = False


# --- Fatal: source must be corrected ---

class ValidationError(KernelError):
    """Desired state violates a schema or cannot be disambiguated."""

    exit_code = 2


class SchemaValidationError(ValidationError):
    """Claim parameters violate the ResourceDefinition schema."""

    def __init__(self, claim_key: str, problems: List[str]):
        self.claim_key = claim_key
        self.problems = problems
        super().__init__(
            f"Claim {claim_key} failed schema validation: " + "; ".join(problems)
        )


class AmbiguousComposition(ValidationError):
    """More than one Composition is eligible and none wins."""

    def __init__(self, claim_key: str, candidates: Iterable[str]):
        self.claim_key = claim_key
        self.candidates = sorted(candidates)
        super().__init__(
            f"Claim {claim_key} matches multiple compositions with equal "
            f"priority: {', '.join(self.candidates)}"
        )


class DefinitionNotFoundError(ValidationError):
    """No ResourceDefinition (or Composition) can serve a claim."""
    pass


class DefinitionChangeError(ValidationError):
    """A non-additive change to a definition that already has claims."""
    pass


class ManifestError(ValidationError):
    """A source document could not be parsed into a known resource."""
    pass


# --- Fatal: composition authoring defects ---

class TemplateError(KernelError):
    """Composition authoring defect."""

    exit_code = 3


class TemplateRenderError(TemplateError):
    """A patch or required field cannot be rendered."""

    def __init__(self, composition: str, template: str, detail: str):
        self.composition = composition
        self.template = template
        super().__init__(f"Composition {composition}, template {template}: {detail}")


class PatchOrderingError(TemplateRenderError):
    """A patch reads from a sibling template declared later in the list."""
    pass


# --- Fatal: configuration-time ---

class DependencyCycleError(KernelError):
    """The dependency graph contains at least one cycle."""

    exit_code = 4

    def __init__(self, unit_ids: Iterable[str]):
        self.unit_ids = sorted(set(unit_ids))
        super().__init__(
            "Dependency cycle between units: " + ", ".join(self.unit_ids)
        )


# --- Transient ---

class ApplyError(KernelError):
    """An adapter failed to realize or remove a resource."""

    exit_code = 5
    retryable = True


class ApplyTimeoutError(ApplyError):
    """An adapter call exceeded the configured apply timeout."""
    pass


class DeletionError(ApplyError):
    """An external delete did not complete."""
    pass


class ConflictError(KernelError):
    """A store write lost an optimistic-concurrency race."""

    exit_code = 6
    retryable = True

    def __init__(self, key: str, expected: Optional[str], actual: Optional[str]):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale write to {key}: expected hash {expected!r}, found {actual!r}"
        )


class DriftError(KernelError):
    """Live state diverges from desired state."""

    exit_code = 7

    def __init__(self, unit_id: str, desired_hash: Optional[str], observed_hash: Optional[str]):
        self.unit_id = unit_id
        self.desired_hash = desired_hash
        self.observed_hash = observed_hash
        super().__init__(
            f"Unit {unit_id} drifted: desired {desired_hash}, observed {observed_hash}"
        )


class UnitNotFoundError(KernelError):
    """No unit or store entry exists under the given id."""

    exit_code = 8
