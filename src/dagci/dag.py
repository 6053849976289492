# dag.py
from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .conditions import Condition, parse_condition
from .errors import ConfigurationError
from .model import DEFAULT_CONDITION, Job


@dataclass
class JobGraph:
    """
    Validated job graph.

    `order` is a deterministic topological order: among jobs whose
    dependencies are all placed, the earliest declared goes first. The
    scheduler uses it as dispatch priority.
    """
    jobs: Dict[str, Job]
    adj: Dict[str, List[str]]        # dep -> dependents (declaration order)
    order: List[str]
    conditions: Dict[str, Condition]
    step_conditions: Dict[Tuple[str, int], Condition] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.jobs

    def __len__(self) -> int:
        return len(self.jobs)

    def needs(self, name: str) -> List[str]:
        return list(self.jobs[name].needs)

    def dependents(self, name: str) -> List[str]:
        return list(self.adj.get(name, []))

    def ancestors(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.jobs[name].needs)
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self.jobs[n].needs)
        return seen

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages). Every job in a level depends only on
        jobs of earlier levels; each level is in declaration order.
        """
        depth: Dict[str, int] = {}
        for name in self.order:
            needs = self.jobs[name].needs
            depth[name] = 1 + max((depth[d] for d in needs), default=-1)
        out: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.order:
            out[depth[name]].append(name)
        for level in out:
            level.sort(key=self._declared.__getitem__)
        return out

    @property
    def _declared(self) -> Dict[str, int]:
        return {name: i for i, name in enumerate(self.jobs)}


def _find_cycle(jobs: Mapping[str, Job], stuck: Iterable[str]) -> List[str]:
    """Walk `needs` edges from a stuck job until a job repeats."""
    stuck_set = set(stuck)
    start = next(n for n in jobs if n in stuck_set)
    path: List[str] = []
    index: Dict[str, int] = {}
    node = start
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = next(d for d in jobs[node].needs if d in stuck_set)
    return path[index[node]:] + [node]


def topo_order(jobs: Mapping[str, Job]) -> List[str]:
    """
    Kahn's algorithm with a declaration-order priority queue.

    Raises ConfigurationError naming a job on the cycle when the graph is
    not acyclic.
    """
    declared = {name: i for i, name in enumerate(jobs)}
    indeg: Dict[str, int] = {name: len(set(j.needs)) for name, j in jobs.items()}
    adj: Dict[str, List[str]] = {name: [] for name in jobs}
    for name, j in jobs.items():
        for dep in dict.fromkeys(j.needs):
            adj[dep].append(name)

    heap = [(declared[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[str] = []

    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (declared[child], child))

    if len(order) != len(jobs):
        stuck = [n for n, d in indeg.items() if d > 0]
        cycle = _find_cycle(jobs, stuck)
        raise ConfigurationError(
            f"Dependency cycle detected at job '{cycle[0]}': {' -> '.join(cycle)}",
            job=cycle[0],
            details={"cycle": cycle},
        )
    return order


def build_graph(
    jobs: Sequence[Job],
    *,
    categories: Optional[Iterable[str]] = None,
) -> JobGraph:
    """
    Build and validate a JobGraph.

    Validates: unique ids, resolvable needs, no cycles, parseable
    conditions, and `consumes` references that point at ancestors.
    """
    by_name: Dict[str, Job] = {}
    for j in jobs:
        if not j.name:
            raise ConfigurationError("Job without a name")
        if j.name in by_name:
            raise ConfigurationError(f"Duplicate job name: {j.name}", job=j.name)
        by_name[j.name] = j

    for j in jobs:
        if j.name in j.needs:
            raise ConfigurationError(
                f"Dependency cycle detected at job '{j.name}': job needs itself",
                job=j.name,
                details={"cycle": [j.name, j.name]},
            )
        for dep in j.needs:
            if dep not in by_name:
                raise ConfigurationError(
                    f"Job '{j.name}' depends on missing job '{dep}'",
                    job=j.name,
                    details={"known_jobs": sorted(by_name)},
                )

    order = topo_order(by_name)

    adj: Dict[str, List[str]] = {name: [] for name in by_name}
    for j in jobs:
        for dep in dict.fromkeys(j.needs):
            adj[dep].append(j.name)

    category_names = list(categories) if categories is not None else None
    conditions: Dict[str, Condition] = {}
    step_conditions: Dict[Tuple[str, int], Condition] = {}
    for j in jobs:
        conditions[j.name] = parse_condition(
            j.condition or DEFAULT_CONDITION,
            needs=j.needs,
            categories=category_names,
            job=j.name,
        )
        for i, step in enumerate(j.steps):
            if step.condition:
                step_conditions[(j.name, i)] = parse_condition(
                    step.condition,
                    needs=j.needs,
                    categories=category_names,
                    job=j.name,
                )

    graph = JobGraph(
        jobs=by_name,
        adj=adj,
        order=order,
        conditions=conditions,
        step_conditions=step_conditions,
    )
    _validate_consumes(graph)
    return graph


def _validate_consumes(graph: JobGraph) -> None:
    for name, j in graph.jobs.items():
        ancestors = None
        for step in j.steps:
            for env_name, ref in step.consumes.items():
                producer, _, output = ref.partition(".")
                if not producer or not output:
                    raise ConfigurationError(
                        f"Invalid output reference {ref!r} (expected '<job>.<output>')",
                        job=name,
                        details={"step": step.name, "env": env_name},
                    )
                if ancestors is None:
                    ancestors = graph.ancestors(name)
                if producer not in ancestors:
                    raise ConfigurationError(
                        f"Step '{step.name}' consumes '{ref}' but '{producer}' is not upstream of '{name}'",
                        job=name,
                        details={"step": step.name, "env": env_name},
                    )
