"""Graph representation for stack execution."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from models.workflow import TaskSpec


@dataclass
class GraphNode:
    """A node in the execution graph."""
    task: TaskSpec
    index: int
    dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        """Unique key for this graph node."""
        return self.task.id

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, GraphNode):
            return False
        return self.id == other.id


@dataclass
class ExecutionGraph:
    """Directed acyclic graph of stack tasks.

    Nodes keep the insertion order of the workflow; that order is the
    tie-breaker wherever independent tasks need to be ordered.
    """
    all_nodes: Dict[str, GraphNode] = field(default_factory=dict)
    _order: Optional[List[str]] = field(default=None, init=False, repr=False)

    def add_node(self, graph_node: GraphNode):
        """Add a node to the graph."""
        self.all_nodes[graph_node.id] = graph_node
        self._order = None

    def add_edge(self, dependency_id: str, dependent_id: str):
        """Record that dependent_id must run after dependency_id."""
        dependency = self.all_nodes[dependency_id]
        dependent = self.all_nodes[dependent_id]
        if dependency_id not in dependent.dependencies:
            dependent.dependencies.append(dependency_id)
            dependency.dependents.append(dependent_id)
            self._order = None

    def get_node(self, node_id: str) -> GraphNode:
        return self.all_nodes[node_id]

    def get_roots(self) -> List[GraphNode]:
        """Get nodes with no dependencies."""
        return [node for node in self.all_nodes.values() if not node.dependencies]

    def get_leaves(self) -> List[GraphNode]:
        """Get nodes with no dependents."""
        return [node for node in self.all_nodes.values() if not node.dependents]

    def get_ready_nodes(self, executed: Iterable[str]) -> List[GraphNode]:
        """Get nodes not yet executed whose dependencies have all executed."""
        done = set(executed)
        return [
            node
            for node in self.all_nodes.values()
            if node.id not in done and all(dep in done for dep in node.dependencies)
        ]

    def topological_sort(self) -> List[str]:
        """Return a deterministic execution order.

        Kahn's algorithm; among tasks that are ready at the same time the one
        declared first in the workflow goes first.

        Raises:
            ValueError: If the graph contains a cycle.
        """
        if self._order is not None:
            return list(self._order)

        remaining = {node_id: len(node.dependencies) for node_id, node in self.all_nodes.items()}
        ready = sorted(
            (node for node in self.all_nodes.values() if remaining[node.id] == 0),
            key=lambda n: n.index,
        )
        order: List[str] = []

        while ready:
            node = ready.pop(0)
            order.append(node.id)
            released = []
            for dependent_id in node.dependents:
                remaining[dependent_id] -= 1
                if remaining[dependent_id] == 0:
                    released.append(self.all_nodes[dependent_id])
            if released:
                ready = sorted(ready + released, key=lambda n: n.index)

        if len(order) != len(self.all_nodes):
            raise ValueError("Unable to determine execution order - circular dependency")

        self._order = order
        return list(order)

    def get_execution_levels(self) -> List[List[str]]:
        """Group tasks into ready sets that can run in parallel."""
        levels: List[List[str]] = []
        done: set = set()
        while len(done) < len(self.all_nodes):
            ready = [node.id for node in self.get_ready_nodes(done)]
            if not ready:
                raise ValueError("Unable to determine execution levels - circular dependency")
            levels.append(ready)
            done.update(ready)
        return levels

    def __len__(self) -> int:
        return len(self.all_nodes)
