"""Service for building and validating stack execution graphs."""

import logging
from typing import Dict, List, Optional

from models.graph import ExecutionGraph, GraphNode
from models.workflow import WorkflowSpec


class GraphBuildError(Exception):
    """Raised when a workflow cannot be turned into a valid graph."""

    pass


class DuplicateTaskError(GraphBuildError):
    """Raised when two tasks share an ID."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"duplicate task ID detected: {task_id}")


class UnknownDependencyError(GraphBuildError):
    """Raised when a task references a task that does not exist."""

    def __init__(self, task_id: str, dependency_id: str):
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(
            f"task '{task_id}' depends on unknown dependency '{dependency_id}'"
        )


class CycleDetectedError(GraphBuildError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        self.task_id = cycle[0]
        path = " -> ".join(cycle)
        super().__init__(
            f"cycle detected in task dependencies involving '{self.task_id}': {path}"
        )


class GraphService:
    """Service for building execution graphs from workflow specs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def build_graph(self, spec: WorkflowSpec) -> ExecutionGraph:
        """Build and validate the execution graph for a workflow."""
        if spec is None:
            raise ValueError("spec is required")

        if not spec.agents:
            raise GraphBuildError("workflow must contain at least one task")

        self.logger.info(f"Building execution graph for workflow: {spec.name}")

        graph = ExecutionGraph()

        # First pass: one node per task
        for index, task in enumerate(spec.agents):
            if task.id in graph.all_nodes:
                raise DuplicateTaskError(task.id)
            graph.add_node(GraphNode(task=task, index=index))
            self.logger.debug(f"Created graph node: {task.id}")

        # Second pass: edges from every declared dependency to the task
        for task in spec.agents:
            for dep_id in task.dependency_ids:
                if dep_id not in graph.all_nodes:
                    raise UnknownDependencyError(task.id, dep_id)
                graph.add_edge(dep_id, task.id)
                self.logger.debug(f"Connected: {dep_id} -> {task.id}")

        cycle = self._find_cycle(graph)
        if cycle:
            raise CycleDetectedError(cycle)

        order = graph.topological_sort()

        self.logger.info(
            f"Graph built successfully with {len(graph)} nodes, "
            f"{len(graph.get_roots())} roots, {len(graph.get_leaves())} leaves"
        )
        self.logger.debug(f"Execution order: {order}")

        return graph

    def _find_cycle(self, graph: ExecutionGraph) -> Optional[List[str]]:
        """Return the nodes of a cycle if one exists, using DFS."""
        visited = set()
        visiting: Dict[str, int] = {}
        path: List[str] = []

        def visit(node: GraphNode) -> Optional[List[str]]:
            visiting[node.id] = len(path)
            path.append(node.id)

            for dependent_id in node.dependents:
                if dependent_id in visiting:
                    return path[visiting[dependent_id]:] + [dependent_id]
                if dependent_id not in visited:
                    cycle = visit(graph.get_node(dependent_id))
                    if cycle:
                        return cycle

            path.pop()
            del visiting[node.id]
            visited.add(node.id)
            return None

        for node in graph.all_nodes.values():
            if node.id not in visited:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def get_execution_order(self, graph: ExecutionGraph) -> List[str]:
        """Get the deterministic topological order of a graph."""
        if graph is None:
            raise ValueError("graph is required")
        return graph.topological_sort()

    def get_execution_levels(self, graph: ExecutionGraph) -> List[List[str]]:
        """Get topological execution order as levels (tasks that can run in parallel)."""
        if graph is None:
            raise ValueError("graph is required")

        levels = graph.get_execution_levels()
        self.logger.info(f"Execution order determined: {len(levels)} levels")
        for i, level in enumerate(levels):
            self.logger.debug(f"Level {i}: {level}")
        return levels
