"""
Dependency Grouper — assigns every unit to an ordinal wave.

A unit's effective wave is

    max(declared, 1 + max(effective(dep) for dep in dependencies))

where dependencies are the explicit ``depends_on`` edges plus the implicit
ownership edges (managed resource → composite, composite → claim).
Cycles are fatal and reported with every unit that sits on one; they are
never broken silently. Dependencies on ids outside the grouped set do not
affect layering.
"""

from graphlib import TopologicalSorter
from typing import Dict, Iterable, List, Set

from converge_kernel.errors import DependencyCycleError
from converge_kernel.models.units import ReconcilableUnit


def _strongly_connected(graph: Dict[str, Set[str]]) -> List[List[str]]:
    """Iterative Tarjan over ``graph`` (node -> dependencies)."""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    stack: List[str] = []
    on_stack: Set[str] = set()
    components: List[List[str]] = []
    counter = 0

    for root in sorted(graph):
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(sorted(graph[root])))]

        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child not in index:
                    index[child] = low[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(graph[child]))))
                    descended = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index[child])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)

    return components


class DependencyGrouper:
    """Computes wave membership for a set of units."""

    def dependencies(self, units: Iterable[ReconcilableUnit]) -> Dict[str, Set[str]]:
        """Explicit plus implicit edges, restricted to the given units."""
        units = list(units)
        ids = {u.id for u in units}
        graph: Dict[str, Set[str]] = {}
        for unit in units:
            deps = set(unit.depends_on)
            if unit.owner:
                deps.add(unit.owner)
            graph[unit.id] = {d for d in deps if d in ids}
        return graph

    def find_cycles(self, graph: Dict[str, Set[str]]) -> List[str]:
        """Every unit that sits on a cycle."""
        cyclic: List[str] = []
        for component in _strongly_connected(graph):
            if len(component) > 1 or component[0] in graph[component[0]]:
                cyclic.extend(component)
        return sorted(cyclic)

    def assign_waves(self, units: Iterable[ReconcilableUnit]) -> Dict[str, int]:
        """
        Compute effective waves and record them on the units.
        Raises DependencyCycleError naming every unit on a cycle.
        """
        units = list(units)
        graph = self.dependencies(units)
        cyclic = self.find_cycles(graph)
        if cyclic:
            raise DependencyCycleError(cyclic)

        by_id = {u.id: u for u in units}
        waves: Dict[str, int] = {}
        for unit_id in TopologicalSorter(graph).static_order():
            unit = by_id[unit_id]
            wave = unit.wave.declared
            for dep in graph[unit_id]:
                wave = max(wave, waves[dep] + 1)
            waves[unit_id] = wave
            unit.wave.computed = wave
        return waves

    def group(self, units: Iterable[ReconcilableUnit]) -> List[List[str]]:
        """Ordered waves, ascending. Order inside a wave carries no meaning."""
        waves = self.assign_waves(units)
        layers: Dict[int, List[str]] = {}
        for unit_id, wave in waves.items():
            layers.setdefault(wave, []).append(unit_id)
        return [sorted(layers[w]) for w in sorted(layers)]
