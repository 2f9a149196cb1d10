"""
Dependency Resolver
===================

Orders chunks into execution phases using topological sorting (Kahn's
algorithm).

Key Features:
- Phases contain chunks whose prerequisites all ran in earlier phases
- Input order is preserved within a phase
- Circular dependencies raise before anything is scheduled
- Prerequisites that name no chunk are reported and ignored
- Chunk ids must be unique
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class CircularDependencyError(RuntimeError):
    """Raised when chunk dependencies contain a cycle."""

    def __init__(self, chunk_ids: List[Hashable], cycles: Optional[List[Tuple]] = None):
        self.chunk_ids = list(chunk_ids)
        self.cycles = cycles or []
        super().__init__(
            f"Circular dependency detected in chunks: {', '.join(str(cid) for cid in self.chunk_ids)}"
        )


@dataclass
class ExecutionPlan:
    """
    Result of dependency resolution.

    Attributes:
        phases: Lists of chunks; every chunk's prerequisites are in earlier phases
        execution_order: Flattened chunk ids in phase order
        missing_deps: Chunk id -> prerequisite ids that name no chunk
        phase_indices: Input positions of the chunks in each phase
    """
    phases: List[List[Dict[str, Any]]]
    execution_order: List[Hashable]
    missing_deps: Dict[Hashable, List[Hashable]] = field(default_factory=dict)
    phase_indices: List[List[int]] = field(default_factory=list)

    @property
    def phase_ids(self) -> List[List[Hashable]]:
        return [[chunk['id'] for chunk in phase] for phase in self.phases]


def chunk_id(chunk: Mapping[str, Any], index: int) -> Hashable:
    """Chunk identifier, falling back to its position when it has no ``id``."""
    identifier = chunk.get('id')
    return identifier if identifier is not None else index


class DependencyResolver:
    """Computes execution phases for chunks from a ``{chunk_id: [prerequisite_ids]}`` map."""

    def resolve(
        self,
        chunks: List[Dict[str, Any]],
        dependency_map: Optional[Mapping[Hashable, Iterable[Hashable]]] = None
    ) -> ExecutionPlan:
        """
        Build the execution plan.

        Args:
            chunks: Chunk mappings, each identified by its ``id``
            dependency_map: Chunk id -> ids that must complete first

        Returns:
            ExecutionPlan with phases in dependency order

        Raises:
            ValueError: If two chunks resolve to the same id
            CircularDependencyError: If the dependencies contain a cycle
        """
        if not chunks:
            return ExecutionPlan(phases=[], execution_order=[])

        dependency_map = dependency_map or {}
        ids = [chunk_id(chunk, index) for index, chunk in enumerate(chunks)]
        duplicates = sorted(str(cid) for cid, count in Counter(ids).items() if count > 1)
        if duplicates:
            raise ValueError(f"Duplicate chunk id(s): {', '.join(duplicates)}")

        chunk_map = dict(zip(ids, chunks))
        position = {cid: index for index, cid in enumerate(ids)}

        # adjacency[cid] = chunks that depend on cid
        adjacency: Dict[Hashable, List[Hashable]] = {cid: [] for cid in ids}
        in_degree: Dict[Hashable, int] = {cid: 0 for cid in ids}
        missing_deps: Dict[Hashable, List[Hashable]] = {}

        for cid in ids:
            for dep_id in dependency_map.get(cid, []) or []:
                if dep_id not in chunk_map:
                    missing_deps.setdefault(cid, []).append(dep_id)
                    continue
                adjacency[dep_id].append(cid)
                in_degree[cid] += 1

        if missing_deps:
            logger.warning(f"Ignoring dependencies on unknown chunks: {missing_deps}")

        phases: List[List[Dict[str, Any]]] = []
        phase_indices: List[List[int]] = []
        execution_order: List[Hashable] = []
        queue = [cid for cid in ids if in_degree[cid] == 0]

        while queue:
            phases.append([chunk_map[cid] for cid in queue])
            phase_indices.append([position[cid] for cid in queue])
            execution_order.extend(queue)

            next_queue = []
            for cid in queue:
                for dependent_id in adjacency[cid]:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_queue.append(dependent_id)

            next_queue.sort(key=lambda cid: position[cid])
            queue = next_queue

        remaining = [cid for cid in ids if in_degree[cid] > 0]
        if remaining:
            cycles = self._detect_cycles(remaining, dependency_map, chunk_map)
            logger.warning(f"Circular dependencies detected: {cycles or remaining}")
            raise CircularDependencyError(remaining, cycles)

        logger.debug(f"Resolved {len(chunks)} chunks into {len(phases)} phases: {[len(p) for p in phases]}")
        return ExecutionPlan(
            phases=phases,
            execution_order=execution_order,
            missing_deps=missing_deps,
            phase_indices=phase_indices
        )

    def _detect_cycles(
        self,
        remaining: List[Hashable],
        dependency_map: Mapping[Hashable, Iterable[Hashable]],
        chunk_map: Dict[Hashable, Dict[str, Any]]
    ) -> List[Tuple]:
        """Find the cycles among unscheduled chunks with a DFS."""
        cycles: List[Tuple] = []
        visited = set()
        rec_stack = set()

        def dfs(cid: Hashable, path: List[Hashable]) -> None:
            visited.add(cid)
            rec_stack.add(cid)
            path.append(cid)

            for dep_id in dependency_map.get(cid, []) or []:
                if dep_id not in chunk_map:
                    continue
                if dep_id not in visited:
                    dfs(dep_id, path)
                elif dep_id in rec_stack:
                    cycle = tuple(path[path.index(dep_id):] + [dep_id])
                    if cycle not in cycles:
                        cycles.append(cycle)

            path.pop()
            rec_stack.discard(cid)

        for cid in remaining:
            if cid not in visited:
                dfs(cid, [])

        return cycles
