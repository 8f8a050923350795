from heapq import heappop, heappush
from logging import getLogger
from typing import Iterable

from .container import Container

LOG = getLogger(__name__)


class DependencyGraph:
    def __init__(self, containers: Iterable[Container]):
        self.containers: dict[str, Container] = {}
        self.position: dict[str, int] = {}
        for index, container in enumerate(containers):
            self.containers[container.id] = container
            self.position[container.id] = index
        self.dependencies: dict[str, set[str]] = {container_id: set() for container_id in self.containers}
        self.dependents: dict[str, set[str]] = {container_id: set() for container_id in self.containers}
        self._link()

    def _link(self) -> None:
        by_name = {container.name: container.id for container in self.containers.values()}
        by_service: dict[tuple, str] = {}
        for container in self.containers.values():
            if container.compose_service:
                by_service[(container.compose_project, container.compose_service)] = container.id

        for container in self.containers.values():
            targets: set[str] = set()
            for name in container.depends_on + container.links:
                target = by_name.get(name)
                if target is None:
                    LOG.debug("%s depends on %s which is not in scope", container.name, name)
                    continue
                targets.add(target)
            for service in container.compose_depends_on:
                target = by_service.get((container.compose_project, service))
                if target is not None:
                    targets.add(target)
            for target in targets:
                self.dependencies[container.id].add(target)
                self.dependents[target].add(container.id)

    def cycles(self) -> list[set[str]]:
        """Strongly connected components that form a cycle (size > 1 or a self-loop)."""
        index_of: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        stack: list[str] = []
        on_stack: set[str] = set()
        components: list[set[str]] = []
        counter = 0

        def _visit(node: str) -> None:
            nonlocal counter
            index_of[node] = lowlink[node] = counter
            counter += 1
            stack.append(node)
            on_stack.add(node)
            for target in sorted(self.dependencies[node], key=self.position.get):
                if target not in index_of:
                    _visit(target)
                    lowlink[node] = min(lowlink[node], lowlink[target])
                elif target in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[target])
            if lowlink[node] == index_of[node]:
                component: set[str] = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                if len(component) > 1 or node in self.dependencies[node]:
                    components.append(component)

        for node in sorted(self.containers, key=self.position.get):
            if node not in index_of:
                _visit(node)
        return components

    def order(self, ids: Iterable[str]) -> list[str]:
        """Topologically sort `ids`, dependencies first.

        Ordering honours transitive edges through containers outside `ids`.
        Members of cycles must be removed by the caller beforehand.
        """
        wanted = set(ids)
        remaining = {node: len(deps) for node, deps in self.dependencies.items()}
        ready: list[tuple[int, str]] = []
        for node, count in remaining.items():
            if count == 0:
                heappush(ready, (self.position[node], node))
        ordered: list[str] = []
        while ready:
            _, node = heappop(ready)
            if node in wanted:
                ordered.append(node)
            for dependent in self.dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heappush(ready, (self.position[dependent], dependent))
        missing = wanted.difference(ordered)
        if missing:
            # nodes downstream of a cycle never become ready; keep engine order
            ordered.extend(sorted(missing, key=self.position.get))
        return ordered

    def dependents_closure(self, ids: Iterable[str]) -> set[str]:
        """Every container that transitively depends on one of `ids`."""
        seen: set[str] = set()
        pending = list(ids)
        while pending:
            node = pending.pop()
            for dependent in self.dependents.get(node, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    pending.append(dependent)
        return seen

    def name(self, container_id: str) -> str:
        return self.containers[container_id].name
