"""Tests for the Composition Resolver, patches and claim schemas."""

import pytest

from converge_kernel.composition.paths import MISSING, get_path, set_path
from converge_kernel.composition.resolver import CLAIM_LABEL, COMPOSITE_LABEL, CompositionResolver
from converge_kernel.composition.schema import check_definition_update, validate_claim
from converge_kernel.errors import (
    AmbiguousComposition,
    DefinitionChangeError,
    DefinitionNotFoundError,
    PatchOrderingError,
    SchemaValidationError,
    TemplateRenderError,
    ValidationError,
)
from converge_kernel.models.definitions import (
    Composition,
    DeletionPolicy,
    FieldSchema,
    FieldType,
    Patch,
    PatchType,
    ResourceDefinition,
    ResourceTemplate,
    Transform,
    TransformType,
)
from converge_kernel.models.resources import Claim
from converge_kernel.models.store import StoreCategory
from converge_kernel.store.resource_store import ResourceStore


def _make_definition(**overrides) -> ResourceDefinition:
    data = dict(
        name="xdatabases.example.org",
        claim_kind="Database",
        composite_kind="XDatabase",
        parameters={
            "size": FieldSchema(type=FieldType.STRING, required=True, enum=["small", "large"]),
            "replicas": FieldSchema(type=FieldType.INTEGER, default=1),
        },
    )
    data.update(overrides)
    return ResourceDefinition(**data)


def _network_template() -> ResourceTemplate:
    return ResourceTemplate(
        name="network",
        base={"kind": "Network", "spec": {}},
        patches=[
            Patch(from_field_path="parameters.size", to_field_path="spec.tier",
                  transforms=[Transform(type=TransformType.MAP,
                                        mapping={"small": "t-small", "large": "t-large"})]),
        ],
    )


def _instance_template() -> ResourceTemplate:
    return ResourceTemplate(
        name="instance",
        base={"kind": "Instance", "spec": {}},
        patches=[
            Patch(type=PatchType.FROM_COMPOSITE_FIELD_PATH, from_resource="network",
                  from_field_path="metadata.name", to_field_path="spec.networkRef"),
            Patch(from_field_path="parameters.replicas", to_field_path="spec.replicas",
                  transforms=[Transform(type=TransformType.MULTIPLY, factor=2)]),
            Patch(type=PatchType.COMBINE, variables=["metadata.namespace", "metadata.name"],
                  fmt="{0}/{1}", to_field_path="spec.owner"),
        ],
        depends_on=["network"],
        wave=1,
    )


def _make_composition(name="k1", resources=None, priority=0, labels=None) -> Composition:
    return Composition(
        name=name,
        composite_kind="XDatabase",
        priority=priority,
        labels=labels or {},
        resources=resources if resources is not None else [_network_template(), _instance_template()],
    )


def _make_claim(**overrides) -> Claim:
    data = dict(kind="Database", name="c1", namespace="default", parameters={"size": "small"})
    data.update(overrides)
    return Claim(**data)


def _seed(store: ResourceStore, definition=None, compositions=None) -> None:
    definition = definition or _make_definition()
    store.put_desired(f"ResourceDefinition/{definition.name}", StoreCategory.DEFINITION,
                      definition.model_dump(mode="json"))
    for composition in compositions if compositions is not None else [_make_composition()]:
        store.put_desired(f"Composition/{composition.name}", StoreCategory.COMPOSITION,
                          composition.model_dump(mode="json"))


class TestPaths:
    def test_get_nested_and_indexed(self):
        doc = {"spec": {"containers": [{"image": "nginx"}]}}
        assert get_path(doc, "spec.containers[0].image") == "nginx"
        assert get_path(doc, "spec.containers[3].image") is MISSING

    def test_set_requires_parent(self):
        doc = {"spec": {}}
        set_path(doc, "spec.size", "small")
        assert doc["spec"]["size"] == "small"
        with pytest.raises(KeyError):
            set_path(doc, "status.size", "small")

    def test_invalid_path(self):
        with pytest.raises(ValueError):
            get_path({}, "spec..size")


class TestSchemaValidation:
    def test_defaults_applied(self):
        params = validate_claim(_make_claim(), _make_definition())
        assert params == {"size": "small", "replicas": 1}

    def test_missing_required_field(self):
        with pytest.raises(SchemaValidationError) as exc:
            validate_claim(_make_claim(parameters={}), _make_definition())
        assert any("size" in p for p in exc.value.problems)

    def test_strict_types(self):
        claim = _make_claim(parameters={"size": "small", "replicas": "3"})
        with pytest.raises(SchemaValidationError):
            validate_claim(claim, _make_definition())

    def test_enum_enforced(self):
        claim = _make_claim(parameters={"size": "huge"})
        with pytest.raises(SchemaValidationError) as exc:
            validate_claim(claim, _make_definition())
        assert "huge" in str(exc.value)

    def test_additive_definition_change_allowed(self):
        old = _make_definition()
        params = dict(old.parameters)
        params["backup"] = FieldSchema(type=FieldType.BOOLEAN, default=False)
        check_definition_update(old, _make_definition(parameters=params), claims_exist=True)

    def test_breaking_definition_change_rejected(self):
        old = _make_definition()
        params = dict(old.parameters)
        params["replicas"] = FieldSchema(type=FieldType.STRING)
        with pytest.raises(DefinitionChangeError):
            check_definition_update(old, _make_definition(parameters=params), claims_exist=True)

    def test_breaking_change_allowed_without_claims(self):
        old = _make_definition()
        check_definition_update(old, _make_definition(parameters={}), claims_exist=False)


class TestCompositionSelection:
    def setup_method(self):
        self.store = ResourceStore()
        self.resolver = CompositionResolver(self.store)

    def test_explicit_reference_wins(self):
        _seed(self.store, compositions=[
            _make_composition("k1", priority=10), _make_composition("k2"),
        ])
        claim = _make_claim(composition_ref="k2")
        definition = self.resolver.definition_for(claim)
        assert self.resolver.select_composition(claim, definition).name == "k2"

    def test_selector_picks_highest_priority(self):
        _seed(self.store, compositions=[
            _make_composition("aws", priority=1, labels={"provider": "aws"}),
            _make_composition("aws-fast", priority=5, labels={"provider": "aws"}),
            _make_composition("gcp", priority=9, labels={"provider": "gcp"}),
        ])
        claim = _make_claim(composition_selector={"provider": "aws"})
        definition = self.resolver.definition_for(claim)
        assert self.resolver.select_composition(claim, definition).name == "aws-fast"

    def test_equal_priority_is_ambiguous(self):
        _seed(self.store, compositions=[_make_composition("k1"), _make_composition("k2")])
        with pytest.raises(AmbiguousComposition) as exc:
            self.resolver.render(_make_claim())
        assert exc.value.candidates == ["k1", "k2"]

    def test_definition_default(self):
        _seed(
            self.store,
            definition=_make_definition(default_composition_ref="k2"),
            compositions=[_make_composition("k1"), _make_composition("k2")],
        )
        xr, _ = self.resolver.render(_make_claim())
        assert xr.composition == "k2"

    def test_unknown_claim_kind(self):
        _seed(self.store)
        with pytest.raises(DefinitionNotFoundError):
            self.resolver.render(_make_claim(kind="Queue"))


class TestRender:
    def setup_method(self):
        self.store = ResourceStore()
        self.resolver = CompositionResolver(self.store)
        _seed(self.store)

    def test_render_patches(self):
        xr, managed = self.resolver.render(_make_claim())
        assert xr.name == "default.c1"
        assert [m.template for m in managed] == ["network", "instance"]

        network, instance = managed
        assert network.body["metadata"]["name"] == "default.c1.network"
        assert network.body["metadata"]["labels"][COMPOSITE_LABEL] == "default.c1"
        assert network.body["metadata"]["labels"][CLAIM_LABEL] == "default.c1"
        assert network.body["spec"]["tier"] == "t-small"
        assert instance.body["spec"]["networkRef"] == "default.c1.network"
        assert instance.body["spec"]["replicas"] == 2
        assert instance.body["spec"]["owner"] == "default/c1"
        assert instance.depends_on == ["Managed/default.c1.network"]
        assert instance.wave == 1

    def test_render_is_stable(self):
        _, first = self.resolver.render(_make_claim())
        _, second = self.resolver.render(_make_claim())
        assert [m.body for m in first] == [m.body for m in second]

    def test_render_does_not_mutate_template_base(self):
        self.resolver.render(_make_claim())
        composition = self.store.compositions_for("XDatabase")[0]
        assert composition.resources[0].base == {"kind": "Network", "spec": {}}

    def test_deletion_policy_inherited_from_claim(self):
        _, managed = self.resolver.render(_make_claim(deletion_policy=DeletionPolicy.ORPHAN))
        assert all(m.deletion_policy == DeletionPolicy.ORPHAN for m in managed)

    def test_sibling_copy_is_independent(self):
        source = ResourceTemplate(name="a", base={"kind": "A", "spec": {"cfg": {"x": 1}}})
        target = ResourceTemplate(
            name="b",
            base={"kind": "B", "spec": {}},
            patches=[
                Patch(type=PatchType.FROM_COMPOSITE_FIELD_PATH, from_resource="a",
                      from_field_path="spec.cfg", to_field_path="spec.cfg"),
                Patch(from_field_path="parameters.size", to_field_path="spec.cfg.size"),
            ],
        )
        _seed(self.store, compositions=[_make_composition("k1", resources=[source, target])])

        _, (a, b) = self.resolver.render(_make_claim())

        assert a.body["spec"]["cfg"] == {"x": 1}
        assert b.body["spec"]["cfg"] == {"x": 1, "size": "small"}

    def test_claim_copy_is_independent(self):
        templates = [
            ResourceTemplate(
                name=name,
                base={"kind": "Bucket", "spec": {}},
                patches=[Patch(from_field_path="parameters.tags", to_field_path="spec.tags")],
            )
            for name in ("first", "second")
        ]
        templates[0].patches.append(
            Patch(from_field_path="parameters.size", to_field_path="spec.tags.size")
        )
        _seed(self.store, compositions=[_make_composition("k1", resources=templates)])
        claim = _make_claim(parameters={"size": "small", "tags": {"team": "data"}})

        _, (first, second) = self.resolver.render(claim)

        assert first.body["spec"]["tags"] == {"team": "data", "size": "small"}
        assert second.body["spec"]["tags"] == {"team": "data"}
        assert claim.parameters["tags"] == {"team": "data"}

    def test_missing_required_field(self):
        template = ResourceTemplate(
            name="bucket", base={"kind": "Bucket", "spec": {}}, required_fields=["spec.region"]
        )
        _seed(self.store, compositions=[_make_composition("k1", resources=[template])])
        with pytest.raises(TemplateRenderError) as exc:
            self.resolver.render(_make_claim())
        assert "spec.region" in str(exc.value)

    def test_bad_transform_is_render_error(self):
        template = ResourceTemplate(
            name="bucket",
            base={"kind": "Bucket", "spec": {}},
            patches=[Patch(from_field_path="parameters.size", to_field_path="spec.count",
                           transforms=[Transform(type=TransformType.MULTIPLY, factor=3)])],
        )
        _seed(self.store, compositions=[_make_composition("k1", resources=[template])])
        with pytest.raises(TemplateRenderError):
            self.resolver.render(_make_claim())


class TestResolve:
    def setup_method(self):
        self.store = ResourceStore()
        self.resolver = CompositionResolver(self.store)

    def test_resolve_writes_composite_and_managed(self):
        _seed(self.store)
        self.resolver.resolve(_make_claim(), revision=1)

        xr = self.store.get("XDatabase/default.c1")
        assert xr.owner == "Database/default/c1"
        assert xr.revision == 1
        for name in ("network", "instance"):
            entry = self.store.get(f"Managed/default.c1.{name}")
            assert entry.owner == "XDatabase/default.c1"

    def test_resolve_is_idempotent(self):
        _seed(self.store)
        self.resolver.resolve(_make_claim())
        self.resolver.resolve(_make_claim())
        assert self.store.get("Managed/default.c1.network").generation == 1
        assert self.store.get("XDatabase/default.c1").generation == 1

    def test_later_sibling_patch_writes_nothing(self):
        reversed_order = [_instance_template(), _network_template()]
        _seed(self.store, compositions=[_make_composition("k1", resources=reversed_order)])

        with pytest.raises(PatchOrderingError) as exc:
            self.resolver.resolve(_make_claim())

        assert "network" in str(exc.value)
        assert self.store.list(StoreCategory.COMPOSITE) == []
        assert self.store.list(StoreCategory.MANAGED) == []

    def test_dropped_template_flagged_for_prune(self):
        _seed(self.store)
        self.resolver.resolve(_make_claim())

        _seed(self.store, compositions=[_make_composition("k1", resources=[_network_template()])])
        self.resolver.resolve(_make_claim())

        assert self.store.get("Managed/default.c1.instance").prune_requested is True
        assert self.store.get("Managed/default.c1.network").prune_requested is False

    def test_names_distinct_across_namespaces(self):
        _seed(self.store)
        xr_a, managed_a = self.resolver.resolve(_make_claim(namespace="a", name="b-c"))
        xr_b, managed_b = self.resolver.resolve(_make_claim(namespace="a-b", name="c"))

        assert xr_a.ref.key == "XDatabase/a.b-c"
        assert xr_b.ref.key == "XDatabase/a-b.c"
        assert not {m.ref.key for m in managed_a} & {m.ref.key for m in managed_b}
        assert self.store.get(xr_a.ref.key).owner == "Database/a/b-c"
        assert self.store.get(xr_b.ref.key).owner == "Database/a-b/c"

    def test_separator_in_name_rejected(self):
        _seed(self.store)
        with pytest.raises(ValidationError) as exc:
            self.resolver.resolve(_make_claim(name="orders.v2"))
        assert "orders.v2" in str(exc.value)
        assert self.store.list(StoreCategory.COMPOSITE) == []

    def test_composite_owned_by_another_claim(self):
        _seed(self.store)
        self.store.put_desired("XDatabase/default.c1", StoreCategory.COMPOSITE, {},
                               owner="Database/other/c1")

        with pytest.raises(ValidationError) as exc:
            self.resolver.resolve(_make_claim())

        assert "Database/other/c1" in str(exc.value)
        assert self.store.get("XDatabase/default.c1").owner == "Database/other/c1"
        assert self.store.list(StoreCategory.MANAGED) == []
