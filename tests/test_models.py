"""Tests for core data models."""

from datetime import datetime

import pydantic
import pytest

from converge_kernel.hashing import canonical_json, spec_hash
from converge_kernel.models.definitions import (
    Composition,
    DeletionPolicy,
    ReadinessCheck,
    ReadinessCheckType,
    ResourceTemplate,
)
from converge_kernel.models.resources import Application, Claim, ManagedResource, ResourceRef
from converge_kernel.models.source import SourceDocument
from converge_kernel.models.units import (
    ReconcilableUnit,
    SyncStatus,
    UnitKind,
    UnitPhase,
    WaveAssignment,
)


class TestResourceRef:
    def test_namespaced_key(self):
        ref = ResourceRef(kind="Database", name="orders", namespace="shop")
        assert ref.key == "Database/shop/orders"
        assert str(ref) == "Database/shop/orders"

    def test_cluster_scoped_key(self):
        assert ResourceRef(kind="Managed", name="shop-orders-db").key == "Managed/shop-orders-db"

    def test_parse_round_trip(self):
        for key in ("Database/shop/orders", "XDatabase/shop-orders"):
            assert ResourceRef.parse(key).key == key

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            ResourceRef.parse("just-a-name")


class TestResources:
    def test_claim_defaults(self):
        claim = Claim(kind="Database", name="orders", namespace="shop")
        assert claim.deletion_policy == DeletionPolicy.DELETE
        assert claim.sync_policy.auto_prune is False
        assert claim.sync_policy.self_heal is False
        assert claim.ref.key == "Database/shop/orders"

    def test_application_ref(self):
        assert Application(name="web").ref.key == "Application/default/web"

    def test_managed_ref_is_cluster_scoped(self):
        managed = ManagedResource(
            name="shop-orders-db",
            template="db",
            owner=ResourceRef(kind="XDatabase", name="shop-orders"),
            provider="in-memory",
            body={},
        )
        assert managed.ref.key == "Managed/shop-orders-db"

    def test_template_defaults_to_condition_readiness(self):
        template = ResourceTemplate(name="db", base={})
        assert template.readiness_checks == [ReadinessCheck(type=ReadinessCheckType.MATCH_CONDITION)]
        assert template.deletion_policy is None

    def test_composition_priority_non_negative(self):
        with pytest.raises(pydantic.ValidationError):
            Composition(name="k1", composite_kind="XDatabase", priority=-1, resources=[])


class TestUnits:
    def test_wave_effective(self):
        wave = WaveAssignment(declared=2)
        assert wave.effective == 2
        wave.computed = 4
        assert wave.effective == 4

    def test_new_unit_is_pending(self):
        unit = ReconcilableUnit(id="Application/default/web", kind=UnitKind.APPLICATION)
        assert unit.phase == UnitPhase.PENDING
        assert unit.sync_status == SyncStatus.OUT_OF_SYNC
        assert not unit.is_healthy
        assert not unit.is_deleting

    def test_units_do_not_share_defaults(self):
        a = ReconcilableUnit(id="a", kind=UnitKind.APPLICATION)
        b = ReconcilableUnit(id="b", kind=UnitKind.APPLICATION)
        a.wave.computed = 3
        a.depends_on.append("c")
        assert b.wave.computed is None
        assert b.depends_on == []

    def test_status_export(self):
        unit = ReconcilableUnit(
            id="Managed/m1",
            kind=UnitKind.MANAGED,
            wave=WaveAssignment(declared=1, computed=3),
            phase=UnitPhase.HEALTHY,
            last_transition_time=datetime(2026, 3, 1, 12, 0),
        )
        status = unit.status()
        assert status.wave == 3
        assert status.phase == UnitPhase.HEALTHY
        assert status.model_dump(mode="json")["last_transition_time"] == "2026-03-01T12:00:00"


class TestHashing:
    def test_key_order_does_not_matter(self):
        assert spec_hash({"a": 1, "b": [1, 2]}) == spec_hash({"b": [1, 2], "a": 1})

    def test_values_matter(self):
        assert spec_hash({"a": 1}) != spec_hash({"a": 2})

    def test_canonical_json_is_compact(self):
        assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'


class TestSourceDocument:
    def test_metadata_accessors(self):
        doc = SourceDocument(
            kind="Application",
            metadata={"name": "web", "namespace": "shop", "labels": {"tier": "front"}},
        )
        assert doc.name == "web"
        assert doc.namespace == "shop"
        assert doc.labels == {"tier": "front"}

    def test_missing_metadata(self):
        doc = SourceDocument(kind="Application")
        assert doc.name == ""
        assert doc.namespace is None
        assert doc.labels == {}
