"""Dependency graph builder for resource reconciliation ordering."""

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from stackweave.state.models import StateRecord
from stackweave.template.models import Template
from stackweave.template.parameters import PSEUDO_PARAMETERS
from stackweave.template.references import GetAtt, ImportValue, Ref, iter_references
from stackweave.utils.errors import CycleError, TemplateError, UnresolvedReferenceError

IMPORT_PREFIX = "import:"


class ResourceStatus(Enum):
    """Lifecycle state of a resource node."""
    PENDING = "pending"
    CREATING = "creating"
    ACTIVE = "active"
    UPDATING = "updating"
    DELETING = "deleting"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass
class ResourceNode:
    """Node in the dependency graph."""

    logical_id: str
    kind: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    dependencies: Set[str] = field(default_factory=set)  # Node IDs this node depends on
    status: ResourceStatus = ResourceStatus.PENDING
    template_hash: Optional[str] = None
    external: bool = False  # Synthetic node standing for another stack's export

    @property
    def resource_dependencies(self) -> List[str]:
        """Dependencies that are resources of this stack, sorted."""
        return sorted(dep for dep in self.dependencies if not dep.startswith(IMPORT_PREFIX))


def import_node_id(export_name: str) -> str:
    return f"{IMPORT_PREFIX}{export_name}"


class DependencyGraph:
    """Directed acyclic graph (DAG) of resource dependencies."""

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, ResourceNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            TemplateError: If a node with the same ID already exists
        """
        if node.logical_id in self.nodes:
            raise TemplateError(f"Duplicate logical ID '{node.logical_id}'")
        self.nodes[node.logical_id] = node

    def add_edge(self, source: str, target: str) -> None:
        """Record that ``source`` depends on ``target``."""
        self.nodes[source].dependencies.add(target)
        self._adjacency_list[target].add(source)

    def edges(self) -> List[Tuple[str, str]]:
        """Get all (dependent, dependency) pairs, sorted."""
        return sorted(
            (node_id, dep_id)
            for node_id, node in self.nodes.items()
            for dep_id in node.dependencies
        )

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of node IDs that this node depends on
        """
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def get_dependents(self, node_id: str) -> Set[str]:
        """Get direct dependents of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of node IDs that depend on this node
        """
        return self._adjacency_list[node_id].copy()

    def get_all_dependents(self, node_id: str) -> Set[str]:
        """Get all transitive dependents of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of all node IDs that depend on this node
        """
        visited = set()
        queue = deque([node_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue

            visited.add(current_id)

            for dependent_id in self._adjacency_list[current_id]:
                if dependent_id not in visited:
                    queue.append(dependent_id)

        visited.discard(node_id)
        return visited

    def resources(self) -> List[ResourceNode]:
        """Get resource nodes (external imports excluded), sorted by ID."""
        return [self.nodes[node_id] for node_id in sorted(self.nodes) if not self.nodes[node_id].external]

    def external_imports(self) -> List[str]:
        """Get the export names this stack imports, sorted."""
        return sorted(
            node_id[len(IMPORT_PREFIX):] for node_id, node in self.nodes.items() if node.external
        )

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Depth-first traversal keeping the current path in a recursion stack;
        reaching a node already on the stack closes a cycle.

        Returns:
            List of node IDs forming a cycle (first ID repeated at the end),
            or None if no cycle exists
        """
        visited: Set[str] = set()
        on_stack: Set[str] = set()
        path: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            visited.add(node_id)
            on_stack.add(node_id)
            path.append(node_id)

            for dep_id in sorted(self.nodes[node_id].dependencies):
                if dep_id in on_stack:
                    return path[path.index(dep_id):] + [dep_id]
                if dep_id not in visited and dep_id in self.nodes:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            on_stack.discard(node_id)
            path.pop()
            return None

        for node_id in sorted(self.nodes):
            if node_id not in visited:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            CycleError: If the graph contains a cycle
            UnresolvedReferenceError: If an edge points at a missing node
        """
        for node_id, node in self.nodes.items():
            for dep_id in node.dependencies:
                if dep_id not in self.nodes:
                    raise UnresolvedReferenceError(
                        f"Resource '{node_id}' depends on '{dep_id}' which does not exist",
                        source=node_id,
                        target=dep_id
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Independent nodes are ordered by logical ID so the result is stable.

        Returns:
            List of resource IDs in dependency order (dependencies before dependents)

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        heap = [node_id for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            node_id = heapq.heappop(heap)
            if not self.nodes[node_id].external:
                result.append(node_id)

            for dependent_id in self._adjacency_list[node_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, dependent_id)

        return result

    def size(self) -> int:
        """Get the number of resource nodes in the graph."""
        return len(self.resources())

    @classmethod
    def from_records(cls, records: Iterable[StateRecord]) -> "DependencyGraph":
        """Build a graph whose desired state is a set of recorded resources.

        Properties are the recorded (already resolved) values; edges follow
        the recorded dependencies between the given records.
        """
        records = list(records)
        graph = cls()
        for record in records:
            graph.add_node(ResourceNode(
                logical_id=record.logical_id,
                kind=record.kind,
                properties=dict(record.properties),
                template_hash=record.template_hash,
            ))
        for record in records:
            for dep_id in record.dependencies:
                if dep_id in graph.nodes:
                    graph.add_edge(record.logical_id, dep_id)
        graph.validate()
        return graph


class GraphBuilder:
    """Builds a DependencyGraph from a parsed template."""

    def __init__(self, pseudo_parameters: Iterable[str] = PSEUDO_PARAMETERS):
        self.pseudo_parameters = set(pseudo_parameters)

    def build(self, template: Template) -> DependencyGraph:
        """Build and validate the graph for a template.

        Args:
            template: Parsed template

        Returns:
            Validated DependencyGraph

        Raises:
            TemplateError: If a parameter and a resource share a name
            UnresolvedReferenceError: If a reference names nothing declared
            CycleError: If references form a cycle
        """
        clashes = sorted(set(template.parameters) & set(template.resources))
        if clashes:
            raise TemplateError(f"Names used for both a parameter and a resource: {', '.join(clashes)}")

        graph = DependencyGraph()
        for declaration in template.resources.values():
            graph.add_node(ResourceNode(
                logical_id=declaration.logical_id,
                kind=declaration.kind,
                properties=declaration.properties,
                depends_on=list(declaration.depends_on),
                template_hash=declaration.declaration_hash(),
            ))

        for declaration in template.resources.values():
            source = declaration.logical_id
            for reference in iter_references(declaration.properties):
                self._add_reference(graph, template, source, reference)

            for target in declaration.depends_on:
                if target not in template.resources:
                    raise UnresolvedReferenceError(
                        f"Resource '{source}' has DependsOn on undeclared resource '{target}'",
                        source=source,
                        target=target
                    )
                graph.add_edge(source, target)

        for output in template.outputs.values():
            for reference in iter_references([output.value, output.export_name]):
                if isinstance(reference, ImportValue):
                    continue
                self._check_target(template, f"Output {output.name}", reference)

        graph.validate()
        return graph

    def _check_target(self, template: Template, source: str, reference) -> Optional[str]:
        """Check a Ref/GetAtt target exists; return it if it is a resource."""
        if isinstance(reference, Ref):
            target = reference.target
            if target in template.parameters or target in self.pseudo_parameters:
                return None
        else:
            target = reference.resource

        if target not in template.resources:
            raise UnresolvedReferenceError(
                f"{source} references undeclared '{target}'",
                source=source,
                target=target
            )
        return target

    def _add_reference(self, graph: DependencyGraph, template: Template, source: str, reference) -> None:
        if isinstance(reference, ImportValue):
            if isinstance(reference.export_name, str):
                node_id = import_node_id(reference.export_name)
                if node_id not in graph.nodes:
                    graph.add_node(ResourceNode(logical_id=node_id, kind="import", external=True))
                graph.add_edge(source, node_id)
            return

        if isinstance(reference, (Ref, GetAtt)):
            target = self._check_target(template, f"Resource '{source}'", reference)
            if target is not None:
                graph.add_edge(source, target)


def build_graph(template: Template) -> DependencyGraph:
    """Build the dependency graph for a template."""
    return GraphBuilder().build(template)
