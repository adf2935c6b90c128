"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, Dict, Set
from ..errors import CycleError, UnknownDependencyError
from ..MODELS.stack_config import StackConfig


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def validate(self, config: StackConfig) -> None:
        """
        Checks that every dependency exists and the graph is acyclic.

        :raises UnknownDependencyError: If a service references a missing name.
        :raises CycleError: If a circular dependency is detected.
        """
        self.resolve_layers(config)

    def resolve_layers(self, config: StackConfig) -> List[Set[str]]:
        """
        Groups services by dependency depth using a depth-first topological sort.
        Services in the same layer do not depend on each other and may start concurrently.

        :param config: The stack configuration.
        :return: Layers of service names; layer ``n`` only depends on layers ``< n``.
        :raises UnknownDependencyError: If a service references a missing name.
        :raises CycleError: If a circular dependency is detected.
        """
        services = config.services
        for name, spec in services.items():
            for dep in spec.dependency_names:
                if dep not in services:
                    raise UnknownDependencyError(name, dep)

        depth: Dict[str, int] = {}
        visiting: List[str] = []

        def visit(name: str) -> int:
            """
            Recursive function for topological sort, returns the depth of ``name``.
            """
            if name in depth:
                return depth[name]
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise CycleError(cycle)
            visiting.append(name)
            level = 0
            for dep in services[name].dependency_names:
                level = max(level, visit(dep) + 1)
            visiting.pop()
            depth[name] = level
            return level

        for name in services:
            visit(name)

        layers: List[Set[str]] = [set() for _ in range(max(depth.values(), default=-1) + 1)]
        for name, level in depth.items():
            layers[level].add(name)
        return layers

    def resolve_order(self, config: StackConfig) -> List[str]:
        """
        Determines a valid order to start services.
        Names inside one layer are sorted only to make the output stable.

        :param config: The stack configuration.
        :return: Service names in the order they may be started.
        """
        return [name for layer in self.resolve_layers(config) for name in sorted(layer)]

    def shutdown_order(self, config: StackConfig) -> List[str]:
        """Dependents first, then their dependencies."""
        return list(reversed(self.resolve_order(config)))

    def dependents_of(self, config: StackConfig, name: str) -> Set[str]:
        """
        Returns every service that transitively depends on ``name``.
        """
        reverse: Dict[str, Set[str]] = {svc: set() for svc in config.services}
        for svc, spec in config.services.items():
            for dep in spec.dependency_names:
                reverse.setdefault(dep, set()).add(svc)

        found: Set[str] = set()
        stack = [name]
        while stack:
            for dependent in reverse.get(stack.pop(), ()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found
