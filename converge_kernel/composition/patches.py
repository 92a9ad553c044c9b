"""
Patch engine — the closed set of typed operations a Composition may use.

No template can execute code: every patch is a copy, a combine or a chain of
transforms over explicit field paths.
"""

import copy
from typing import Any, Dict, List

from converge_kernel.composition.paths import MISSING, get_path, set_path
from converge_kernel.errors import PatchOrderingError, TemplateRenderError
from converge_kernel.models.definitions import (
    FieldType,
    Patch,
    PatchType,
    ResourceTemplate,
    Transform,
    TransformType,
)


def _convert(value: Any, to_type: FieldType) -> Any:
    if to_type == FieldType.STRING:
        return str(value)
    if to_type == FieldType.INTEGER:
        return int(value)
    if to_type == FieldType.NUMBER:
        return float(value)
    if to_type == FieldType.BOOLEAN:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1")
        return bool(value)
    raise ValueError(f"cannot convert to {to_type.value}")


def apply_transform(value: Any, transform: Transform) -> Any:
    """Apply one transform. Raises ValueError when the value does not fit."""
    if transform.type == TransformType.MAP:
        lookup = str(value)
        if lookup not in transform.mapping:
            raise ValueError(f"no mapping for {lookup!r}")
        return transform.mapping[lookup]

    if transform.type == TransformType.FORMAT:
        if transform.fmt is None:
            raise ValueError("format transform without fmt")
        return transform.fmt.format(value)

    if transform.type == TransformType.MULTIPLY:
        if transform.factor is None:
            raise ValueError("multiply transform without factor")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"cannot multiply non-numeric value {value!r}")
        result = value * transform.factor
        return int(result) if isinstance(value, int) and result.is_integer() else result

    if transform.type == TransformType.CONVERT:
        if transform.to_type is None:
            raise ValueError("convert transform without to_type")
        return _convert(value, transform.to_type)

    raise ValueError(f"unknown transform {transform.type}")


class PatchContext:
    """Everything a patch may read while one composition renders."""

    def __init__(
        self,
        composition: str,
        claim_view: dict,
        template_order: List[str],
    ):
        self.composition = composition
        self.claim_view = claim_view
        self.template_order = template_order
        self.rendered: Dict[str, dict] = {}

    def error(self, template: ResourceTemplate, detail: str) -> TemplateRenderError:
        return TemplateRenderError(self.composition, template.name, detail)

    def sibling(self, template: ResourceTemplate, name: str) -> dict:
        """Return an already-rendered sibling body."""
        if name in self.rendered:
            return self.rendered[name]
        if name not in self.template_order:
            raise self.error(template, f"patch references unknown resource {name!r}")
        raise PatchOrderingError(
            self.composition,
            template.name,
            f"patch references {name!r}, which is declared after "
            f"{template.name!r}; declare templates in dependency order",
        )


def _source_value(patch: Patch, template: ResourceTemplate, ctx: PatchContext) -> Any:
    if patch.type == PatchType.FROM_CLAIM_FIELD_PATH:
        if not patch.from_field_path:
            raise ctx.error(template, "FromClaimFieldPath patch without from_field_path")
        return get_path(ctx.claim_view, patch.from_field_path)

    if patch.type == PatchType.FROM_COMPOSITE_FIELD_PATH:
        if not patch.from_resource or not patch.from_field_path:
            raise ctx.error(
                template,
                "FromCompositeFieldPath patch needs from_resource and from_field_path",
            )
        return get_path(ctx.sibling(template, patch.from_resource), patch.from_field_path)

    if patch.type == PatchType.COMBINE:
        if not patch.variables or patch.fmt is None:
            raise ctx.error(template, "Combine patch needs variables and fmt")
        values = [get_path(ctx.claim_view, v) for v in patch.variables]
        if any(v is MISSING for v in values):
            return MISSING
        return patch.fmt.format(*values)

    raise ctx.error(template, f"unknown patch type {patch.type}")


def apply_patch(body: dict, patch: Patch, template: ResourceTemplate, ctx: PatchContext) -> None:
    """Render one patch into ``body``."""
    try:
        value = _source_value(patch, template, ctx)
    except ValueError as e:
        raise ctx.error(template, str(e))
    if value is MISSING:
        if patch.required:
            raise ctx.error(
                template,
                f"required patch source {patch.from_field_path or patch.variables} is not set",
            )
        return

    for transform in patch.transforms:
        try:
            value = apply_transform(value, transform)
        except (ValueError, TypeError, IndexError, KeyError) as e:
            raise ctx.error(
                template,
                f"{transform.type.value} transform failed for "
                f"{patch.to_field_path}: {e}",
            )

    try:
        set_path(body, patch.to_field_path, copy.deepcopy(value))
    except KeyError:
        raise ctx.error(template, f"patch target path {patch.to_field_path!r} does not exist")
    except ValueError as e:
        raise ctx.error(template, str(e))
