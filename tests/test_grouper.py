"""Tests for the Dependency Grouper."""

import pytest

from converge_kernel.errors import DependencyCycleError
from converge_kernel.grouping.grouper import DependencyGrouper
from converge_kernel.models.units import ReconcilableUnit, UnitKind, WaveAssignment


def _unit(unit_id, depends_on=None, wave=0, owner=None, kind=UnitKind.APPLICATION):
    return ReconcilableUnit(
        id=unit_id,
        kind=kind,
        owner=owner,
        depends_on=depends_on or [],
        wave=WaveAssignment(declared=wave),
    )


class TestWaveAssignment:
    def setup_method(self):
        self.grouper = DependencyGrouper()

    def test_independent_units_share_wave(self):
        waves = self.grouper.group([_unit("a"), _unit("b")])
        assert waves == [["a", "b"]]

    def test_dependency_pushes_wave(self):
        units = [_unit("db"), _unit("api", depends_on=["db"]), _unit("web", depends_on=["api"])]
        assert self.grouper.group(units) == [["db"], ["api"], ["web"]]

    def test_declared_wave_is_a_floor(self):
        units = [_unit("db"), _unit("api", depends_on=["db"], wave=5)]
        waves = self.grouper.assign_waves(units)
        assert waves == {"db": 0, "api": 5}
        assert units[1].wave.computed == 5
        assert units[1].wave.declared == 5

    def test_negative_declared_wave(self):
        units = [_unit("crds", wave=-1), _unit("app")]
        assert self.grouper.group(units) == [["crds"], ["app"]]

    def test_ownership_is_an_edge(self):
        units = [
            _unit("Database/default/c1", kind=UnitKind.CLAIM),
            _unit("XDatabase/default.c1", owner="Database/default/c1", kind=UnitKind.COMPOSITE),
            _unit("Managed/m1", owner="XDatabase/default.c1", kind=UnitKind.MANAGED),
        ]
        waves = self.grouper.assign_waves(units)
        assert waves == {"Database/default/c1": 0, "XDatabase/default.c1": 1, "Managed/m1": 2}

    def test_unknown_dependency_ignored(self):
        waves = self.grouper.assign_waves([_unit("api", depends_on=["elsewhere"])])
        assert waves == {"api": 0}


class TestCycles:
    def setup_method(self):
        self.grouper = DependencyGrouper()

    def test_cycle_names_every_member(self):
        units = [
            _unit("a", depends_on=["c"]),
            _unit("b", depends_on=["a"]),
            _unit("c", depends_on=["b"]),
            _unit("d", depends_on=["a"]),
        ]
        with pytest.raises(DependencyCycleError) as exc:
            self.grouper.group(units)
        assert exc.value.unit_ids == ["a", "b", "c"]

    def test_self_loop(self):
        with pytest.raises(DependencyCycleError) as exc:
            self.grouper.group([_unit("a", depends_on=["a"])])
        assert exc.value.unit_ids == ["a"]

    def test_two_separate_cycles(self):
        units = [
            _unit("a", depends_on=["b"]), _unit("b", depends_on=["a"]),
            _unit("x", depends_on=["y"]), _unit("y", depends_on=["x"]),
        ]
        graph = self.grouper.dependencies(units)
        assert self.grouper.find_cycles(graph) == ["a", "b", "x", "y"]
