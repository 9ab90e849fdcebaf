"""Dependency graph for resource reconciliation.

Builds a DAG from a flat set of resource declarations and partitions it into
levels: level 0 holds resources with no dependencies, level k holds
resources whose dependencies all sit in levels below k. The scheduler runs
each level concurrently, creating levels in ascending order and destroying
them in descending order.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from blueprint import Resource, make_reference, parse_type, validate_name
from config import DEFAULT_DOMAIN
from engine.errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    InvalidResourceError,
    UnresolvedReferenceError,
    UnsupportedTypeError,
)
from naming import resource_fqdn
from providers.base import ProviderRegistry

logger = logging.getLogger(__name__)

# 'type.name' tokens inside free text, e.g. "network.onprem" or "${container.consul.ip}"
_REFERENCE_TOKEN = re.compile(r'(?<![\w.-])([a-z][a-z0-9_]*)\.([A-Za-z0-9_-]+)')


def _handle_pattern(handle: str) -> re.Pattern:
    """Match a handle only where it is not part of a longer DNS label."""
    return re.compile(rf'(?<![A-Za-z0-9-]){re.escape(handle)}(?![A-Za-z0-9-])')


@dataclass
class GraphNode:
    """A resource in the graph with its dependency edges.

    Attributes:
        resource: The resource this node wraps
        dependencies: Nodes that must exist before this one
        dependents: Nodes that rely on this one
        level: Scheduling level (0 for nodes without dependencies)
    """
    resource: Resource
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    level: int = 0

    @property
    def reference(self) -> str:
        return self.resource.reference

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def type(self) -> str:
        return self.resource.type.value

    @property
    def is_root(self) -> bool:
        return len(self.dependencies) == 0

    @property
    def is_leaf(self) -> bool:
        return len(self.dependents) == 0

    def __repr__(self) -> str:
        return f"GraphNode({self.reference}, level={self.level})"


def _iter_strings(value: Any) -> Iterator[str]:
    """Yield every string nested in an attribute value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, (list, tuple, set)):
        for v in value:
            yield from _iter_strings(v)


def find_implicit_references(
    resource: Resource,
    known: dict[str, Resource],
    domain: str = DEFAULT_DOMAIN,
) -> list[str]:
    """Find other resources mentioned in a resource's attribute values.

    A resource is referenced when one of the attribute strings contains its
    'type.name' reference as a token, or its full handle. This is a
    best-effort textual scan; explicit depends_on is the reliable way to
    declare an edge.

    Args:
        resource: Resource whose attributes are scanned
        known: All declared resources keyed by reference
        domain: Domain suffix used to build handles

    Returns:
        Referenced 'type.name' strings in first-seen order, excluding self
    """
    handles = [(_handle_pattern(resource_fqdn(r, domain)), ref) for ref, r in known.items()]
    found: dict[str, None] = {}

    for text in _iter_strings(resource.attributes):
        for match in _REFERENCE_TOKEN.finditer(text):
            ref = f"{match.group(1)}.{match.group(2)}"
            if ref in known:
                found[ref] = None
        for pattern, ref in handles:
            if pattern.search(text):
                found[ref] = None

    found.pop(resource.reference, None)
    return list(found)


class ResourceGraph:
    """Directed acyclic graph of resources with level partitioning.

    Provides ordered traversal for lifecycle operations:
    - levels(): level partition, lowest first
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, reference: object) -> bool:
        return reference in self._nodes

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self._nodes.values())

    @property
    def resources(self) -> list[Resource]:
        """Resources in declaration order."""
        return [n.resource for n in self._nodes.values()]

    @property
    def max_level(self) -> int:
        if not self._nodes:
            return 0
        return max(n.level for n in self._nodes.values())

    def get_node(self, reference: str) -> GraphNode:
        """Get a GraphNode by 'type.name' reference.

        Raises:
            KeyError: If reference not found
        """
        return self._nodes[reference]

    def get(self, reference: str) -> Optional[Resource]:
        node = self._nodes.get(reference)
        return node.resource if node else None

    def dependencies(self, reference: str) -> list[str]:
        return [d.reference for d in self._nodes[reference].dependencies]

    def dependents(self, reference: str) -> list[str]:
        return [d.reference for d in self._nodes[reference].dependents]

    def transitive_dependents(self, reference: str) -> set[str]:
        """All references that depend on the given one, directly or not."""
        seen: set[str] = set()
        queue: deque[GraphNode] = deque(self._nodes[reference].dependents)
        while queue:
            node = queue.popleft()
            if node.reference in seen:
                continue
            seen.add(node.reference)
            queue.extend(node.dependents)
        return seen

    def levels(self) -> list[list[GraphNode]]:
        """Return nodes grouped by level, lowest level first.

        Nodes inside a level are sorted by reference for stable output; the
        scheduler does not rely on that order.
        """
        grouped: list[list[GraphNode]] = [[] for _ in range(self.max_level + 1)] if self._nodes else []
        for node in self._nodes.values():
            grouped[node.level].append(node)
        for level in grouped:
            level.sort(key=lambda n: n.reference)
        return grouped

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies before dependents)."""
        return [node for level in self.levels() for node in level]

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (dependents before dependencies).

        Reverse of create_order: levels descending, reversed within a level.
        """
        return list(reversed(self.create_order()))

    def _add(self, resource: Resource) -> GraphNode:
        node = GraphNode(resource=resource)
        self._nodes[resource.reference] = node
        return node

    def _link(self, node: GraphNode, dependency_ref: str) -> None:
        dep = self._nodes[dependency_ref]
        if dep in node.dependencies:
            return
        node.dependencies.append(dep)
        dep.dependents.append(node)

    def _check_acyclic(self) -> None:
        """Depth-first search with a recursion stack; a back edge is a cycle.

        Raises:
            CyclicDependencyError: With the full cycle path
        """
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def _visit(node: GraphNode) -> Optional[list[str]]:
            visited.add(node.reference)
            stack.append(node.reference)
            on_stack.add(node.reference)
            for dep in node.dependencies:
                if dep.reference in on_stack:
                    start = stack.index(dep.reference)
                    return stack[start:] + [dep.reference]
                if dep.reference not in visited:
                    cycle = _visit(dep)
                    if cycle:
                        return cycle
            stack.pop()
            on_stack.discard(node.reference)
            return None

        for node in self._nodes.values():
            if node.reference not in visited:
                cycle = _visit(node)
                if cycle:
                    raise CyclicDependencyError(cycle)

    def _assign_levels(self) -> None:
        """Assign levels in topological order (Kahn's algorithm)."""
        remaining = {ref: len(n.dependencies) for ref, n in self._nodes.items()}
        queue: deque[GraphNode] = deque(
            n for n in self._nodes.values() if not n.dependencies)

        while queue:
            node = queue.popleft()
            node.level = max((d.level + 1 for d in node.dependencies), default=0)
            for dependent in node.dependents:
                remaining[dependent.reference] -= 1
                if remaining[dependent.reference] == 0:
                    queue.append(dependent)

    def _finalize(self) -> None:
        self._check_acyclic()
        self._assign_levels()
        for node in self._nodes.values():
            node.resource.requires = [d.reference for d in node.dependencies]

    @classmethod
    def from_state(cls, resources: Iterable[Resource]) -> 'ResourceGraph':
        """Build a graph from persisted records.

        Uses the resolved edges recorded at apply time. Edges pointing at
        resources no longer in state are dropped; names are not re-validated.
        """
        graph = cls()
        for resource in resources:
            graph._add(resource)
        for node in graph:
            for ref in node.resource.requires or node.resource.depends_on:
                if ref in graph and ref != node.reference:
                    graph._link(node, ref)
        graph._finalize()
        return graph


class GraphBuilder:
    """Validates declarations and builds a ResourceGraph.

    Args:
        registry: Provider registry; when given, every enabled resource type
            must have a provider or the build fails
        domain: Domain suffix used for handle-based implicit references
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None, domain: str = DEFAULT_DOMAIN):
        self.registry = registry
        self.domain = domain

    def build(self, resources: Iterable[Resource]) -> ResourceGraph:
        """Build the graph for a set of declarations.

        The input records are copied; the returned graph owns its resources.

        Raises:
            InvalidResourceError: Bad name, type, attributes, duplicate or
                unresolved reference
            UnsupportedTypeError: No provider for an enabled resource's type
            CyclicDependencyError: The declarations form a cycle
        """
        declared = [r.copy() for r in resources]

        known: dict[str, Resource] = {}
        for resource in declared:
            self._validate(resource)
            if resource.reference in known:
                raise DuplicateResourceError(
                    "duplicate resource declaration", reference=resource.reference)
            known[resource.reference] = resource
        self._warn_shared_handles(declared)

        if self.registry is not None:
            for resource in declared:
                if not resource.disabled and not self.registry.supports(resource.type):
                    raise UnsupportedTypeError(resource.type.value, reference=resource.reference)

        graph = ResourceGraph()
        for resource in declared:
            graph._add(resource)

        for resource in declared:
            node = graph.get_node(resource.reference)
            for ref in resource.depends_on:
                if ref not in known:
                    raise UnresolvedReferenceError(
                        f"depends_on references unknown resource '{ref}'",
                        reference=resource.reference,
                    )
                graph._link(node, ref)
            for ref in find_implicit_references(resource, known, self.domain):
                graph._link(node, ref)

        graph._finalize()
        logger.debug(f"Built graph with {len(graph)} resources in {graph.max_level + 1} levels")
        return graph

    def _warn_shared_handles(self, declared: list[Resource]) -> None:
        """Warn when sanitized names make two resources share a handle."""
        seen: dict[str, str] = {}
        for resource in declared:
            handle = resource_fqdn(resource, self.domain)
            other = seen.setdefault(handle, resource.reference)
            if other != resource.reference:
                logger.warning(f"{resource.reference} and {other} share the handle {handle}")

    def _validate(self, resource: Resource) -> None:
        """Validate name, type and type-specific attributes of one resource."""
        resource.type = parse_type(resource.type, resource.name)
        try:
            validate_name(resource.name)
        except InvalidResourceError as e:
            raise type(e)(str(e), reference=make_reference(resource.type, resource.name)) from None

        for ref in resource.depends_on:
            if not isinstance(ref, str) or '.' not in ref:
                raise InvalidResourceError(
                    f"depends_on entry {ref!r} is not a 'type.name' reference",
                    reference=resource.reference,
                )

        # raises on a malformed client_nodes attribute
        _ = resource.client_nodes
