"""Readiness checks — when a realized resource counts as Healthy."""

from typing import List

from converge_kernel.composition.paths import MISSING, get_path
from converge_kernel.models.adapter import ObservedState
from converge_kernel.models.definitions import ReadinessCheck, ReadinessCheckType


def _live_view(observed: ObservedState) -> dict:
    return {"spec": observed.spec, "status": observed.fields}


def check_passes(observed: ObservedState, check: ReadinessCheck) -> bool:
    if not observed.exists:
        return False
    if check.type == ReadinessCheckType.NONE:
        return True
    if check.type == ReadinessCheckType.MATCH_CONDITION:
        return observed.ready
    if not check.field_path:
        return False

    value = get_path(_live_view(observed), check.field_path)
    if check.type == ReadinessCheckType.MATCH_STRING:
        return value is not MISSING and str(value) == check.match_string
    if check.type == ReadinessCheckType.NON_EMPTY:
        return value not in (MISSING, None, "", [], {})
    return False


def is_ready(observed: ObservedState, checks: List[ReadinessCheck]) -> bool:
    """All checks pass; with no checks the adapter's own readiness decides."""
    if not checks:
        return observed.exists and observed.ready
    return all(check_passes(observed, c) for c in checks)
