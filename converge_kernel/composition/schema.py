"""
Claim schema validation and definition evolution rules.

Claim parameters are validated against a pydantic model built from the
ResourceDefinition, in strict mode so "3" never passes for an integer.
"""

from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, ValidationError as PydanticValidationError, create_model

from converge_kernel.errors import DefinitionChangeError, SchemaValidationError
from converge_kernel.models.definitions import FieldType, ResourceDefinition
from converge_kernel.models.resources import Claim

_PY_TYPES = {
    FieldType.STRING: str,
    FieldType.INTEGER: int,
    FieldType.NUMBER: float,
    FieldType.BOOLEAN: bool,
    FieldType.OBJECT: dict,
    FieldType.ARRAY: list,
}


def _parameters_model(definition: ResourceDefinition):
    fields: Dict[str, Any] = {}
    for name, schema in definition.parameters.items():
        annotation = _PY_TYPES[schema.type]
        if schema.required:
            fields[name] = (annotation, ...)
        else:
            fields[name] = (Optional[annotation], schema.default)
    return create_model(
        f"{definition.claim_kind}Parameters",
        __config__=ConfigDict(extra="allow", strict=True),
        **fields,
    )


def validate_claim(claim: Claim, definition: ResourceDefinition) -> Dict[str, Any]:
    """
    Validate claim parameters and return them with schema defaults applied.
    Raises SchemaValidationError listing every problem found.
    """
    problems: List[str] = []
    model = _parameters_model(definition)
    try:
        model.model_validate(claim.parameters)
    except PydanticValidationError as e:
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            problems.append(f"{location}: {err['msg']}")

    for name, schema in definition.parameters.items():
        value = claim.parameters.get(name)
        if schema.enum and value is not None and value not in schema.enum:
            problems.append(f"{name}: {value!r} is not one of {schema.enum}")

    if problems:
        raise SchemaValidationError(claim.ref.key, problems)

    resolved = {
        name: schema.default
        for name, schema in definition.parameters.items()
        if schema.default is not None
    }
    resolved.update(claim.parameters)
    return resolved


def check_definition_update(
    old: ResourceDefinition, new: ResourceDefinition, claims_exist: bool
) -> None:
    """
    Reject non-additive changes to a definition that already has claims.
    Additive means: kinds unchanged, every existing field kept with the same
    type, and new fields optional or defaulted.
    """
    if not claims_exist:
        return

    problems: List[str] = []
    if old.claim_kind != new.claim_kind:
        problems.append(f"claim_kind changed from {old.claim_kind} to {new.claim_kind}")
    if old.composite_kind != new.composite_kind:
        problems.append(
            f"composite_kind changed from {old.composite_kind} to {new.composite_kind}"
        )
    for name, field in old.parameters.items():
        replacement = new.parameters.get(name)
        if replacement is None:
            problems.append(f"field {name} removed")
        elif replacement.type != field.type:
            problems.append(
                f"field {name} changed type from {field.type.value} to {replacement.type.value}"
            )
        elif replacement.required and not field.required:
            problems.append(f"field {name} became required")
    for name, field in new.parameters.items():
        if name not in old.parameters and field.required and field.default is None:
            problems.append(f"new field {name} is required without a default")

    if problems:
        raise DefinitionChangeError(
            f"Definition {old.name} has existing claims; only additive changes "
            f"are allowed: " + "; ".join(problems)
        )
