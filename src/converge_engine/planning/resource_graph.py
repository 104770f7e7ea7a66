"""Deterministic resource dependency graph and its builder.

The builder turns a mapping of resource names to declarations into a
:class:`ResourceGraph`. Every ``require``/``before`` reference must resolve,
either by resource name or by ``Kind[title]`` reference, and the resulting
relation must be acyclic. Topological order breaks ties by declaration order,
so two runs over the same manifest always visit resources identically.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from heapq import heapify, heappop, heappush

from converge_engine.domain.errors import GraphCycleError, ManifestError, UnknownReferenceError
from converge_engine.domain.models import JSONValue, Resource

_REF_PATTERN = re.compile(r"^(?P<kind>[A-Za-z][A-Za-z0-9_:-]*)\[(?P<title>.+)\]$")

Declaration = Resource | Mapping[str, object]


class ResourceGraph:
    """Directed prerequisite graph over declared resources.

    Edges run ``prerequisite -> dependent``.
    """

    __slots__ = ("_resources", "_index", "_children", "_parents")

    def __init__(
        self,
        resources: Iterable[Resource],
        edges: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._resources: dict[str, Resource] = {}
        self._index: dict[str, int] = {}
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}

        for resource in resources:
            if resource.name in self._resources:
                raise ManifestError("duplicate resource name", path=resource.name)
            self._index[resource.name] = len(self._resources)
            self._resources[resource.name] = resource
            self._children[resource.name] = set()
            self._parents[resource.name] = set()

        for parent, child in edges:
            self._add_edge(parent, child)

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    @property
    def resources(self) -> tuple[Resource, ...]:
        """All resources in declaration order."""
        return tuple(self._resources.values())

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(prerequisite, dependent)`` pairs in declaration order."""
        ordered_edges: list[tuple[str, str]] = []
        for parent in self._resources:
            for child in self._sorted(self._children[parent]):
                ordered_edges.append((parent, child))
        return tuple(ordered_edges)

    def resource(self, name: str) -> Resource:
        self._assert_node_exists(name)
        return self._resources[name]

    def declaration_index(self, name: str) -> int:
        self._assert_node_exists(name)
        return self._index[name]

    def topological_order(self) -> tuple[Resource, ...]:
        """Return prerequisites-first order or raise ``GraphCycleError``."""
        indegree: dict[str, int] = {name: len(self._parents[name]) for name in self._resources}
        ready: list[tuple[int, str]] = [
            (self._index[name], name) for name, degree in indegree.items() if degree == 0
        ]
        heapify(ready)

        order: list[Resource] = []
        while ready:
            _, name = heappop(ready)
            order.append(self._resources[name])

            for child in self._children[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (self._index[child], child))

        if len(order) != len(self._resources):
            raise GraphCycleError(self.detect_cycles())

        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("a", "b", "c", "a")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._resources:
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(self._sorted(self._children[start])))
            ]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self._sorted(self._children[child]))))
                    continue

                if child_state == 1:
                    start_index = stack_index[child]
                    cycle = tuple(stack[start_index:] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def dependencies(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive prerequisites of ``name``."""
        self._assert_node_exists(name)
        if not transitive:
            return self._sorted(self._parents[name])
        return self._transitive_closure(name, upstream=True)

    def dependents(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents of ``name``."""
        self._assert_node_exists(name)
        if not transitive:
            return self._sorted(self._children[name])
        return self._transitive_closure(name, upstream=False)

    def serialize(self) -> dict[str, JSONValue]:
        """Serialize to a stable JSON-friendly mapping."""
        return {
            "resources": [resource.to_dict() for resource in self._resources.values()],
            "edges": [[parent, child] for parent, child in self.edges],
            "order": [resource.name for resource in self.topological_order()],
        }

    def _add_edge(self, parent: str, child: str) -> None:
        self._assert_node_exists(parent)
        self._assert_node_exists(child)
        self._children[parent].add(child)
        self._parents[child].add(parent)

    def _transitive_closure(self, name: str, *, upstream: bool) -> tuple[str, ...]:
        adjacency = self._parents if upstream else self._children
        visited: set[str] = set()
        pending: list[str] = list(adjacency[name])

        while pending:
            node = pending.pop()
            if node in visited:
                continue

            visited.add(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    pending.append(neighbor)

        return self._sorted(visited)

    def _sorted(self, names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(names, key=self._index.__getitem__))

    def _assert_node_exists(self, name: str) -> None:
        if name not in self._resources:
            raise KeyError(f"Unknown resource: {name}")


def build_resource_graph(declarations: Mapping[str, Declaration]) -> ResourceGraph:
    """Parse declarations, resolve references, and reject cycles.

    Raises ``ManifestError`` for malformed declarations, ``UnknownReferenceError``
    naming every unresolved reference, and ``GraphCycleError`` naming the cycles.
    """
    resources = [_as_resource(name, declaration) for name, declaration in declarations.items()]

    by_ref: dict[tuple[str, str], str] = {}
    for resource in resources:
        key = (resource.kind, resource.title)
        existing = by_ref.get(key)
        if existing is not None:
            raise ManifestError(
                f"{resource.ref} is already declared by {existing!r}", path=resource.name
            )
        by_ref[key] = resource.name

    names = {resource.name for resource in resources}
    edges: list[tuple[str, str]] = []
    missing: list[tuple[str, str]] = []
    for resource in resources:
        for reference in resource.requires:
            target = _resolve_reference(reference, names, by_ref)
            if target is None:
                missing.append((resource.name, reference))
            else:
                edges.append((target, resource.name))
        for reference in resource.before:
            target = _resolve_reference(reference, names, by_ref)
            if target is None:
                missing.append((resource.name, reference))
            else:
                edges.append((resource.name, target))

    if missing:
        raise UnknownReferenceError(missing)

    graph = ResourceGraph(resources, edges)
    graph.topological_order()
    return graph


def order_resources(declarations: Mapping[str, Declaration]) -> tuple[Resource, ...]:
    """Return declared resources in dependency order (prerequisites first)."""
    return build_resource_graph(declarations).topological_order()


def parse_reference(reference: str) -> tuple[str, str] | None:
    """Split a ``Kind[title]`` reference into ``(kind, title)``; ``None`` for plain names."""
    match = _REF_PATTERN.match(reference.strip())
    if match is None:
        return None
    return match.group("kind").lower(), match.group("title").strip()


def _resolve_reference(
    reference: str,
    names: set[str],
    by_ref: Mapping[tuple[str, str], str],
) -> str | None:
    if reference in names:
        return reference
    parsed = parse_reference(reference)
    if parsed is None:
        return None
    return by_ref.get(parsed)


def _as_resource(name: str, declaration: Declaration) -> Resource:
    if not isinstance(name, str):
        raise ManifestError(f"resource names must be strings, got {type(name).__name__}")
    if isinstance(declaration, Resource):
        if declaration.name != name.strip():
            raise ManifestError(
                f"declared under {name!r} but named {declaration.name!r}", path=name
            )
        return declaration
    return Resource.from_declaration(name, declaration)


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    if len(cycle) < 2:
        raise ValueError("Cycle path must contain at least two nodes.")

    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated

    return best + (best[0],)


__all__ = [
    "Declaration",
    "ResourceGraph",
    "build_resource_graph",
    "order_resources",
    "parse_reference",
]
