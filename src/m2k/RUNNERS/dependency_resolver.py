"""
Dependency resolution between buildable components.
"""
from typing import Dict, List, Sequence
from ..errors import ManifestError
from ..MODELS.build_spec import BuildSpec


class DependencyResolver:
    """
    Orders components so that an image is built after the images it consumes.
    """
    def resolve_order(self, specs: Dict[str, BuildSpec]) -> List[str]:
        """
        Determines the build order using a topological sort that keeps the
        declaration order among independent components.

        :param specs: Build specs keyed by component name.
        :return: Component names in build order.
        :raises ManifestError: If a circular dependency is detected.
        """
        ordered = []
        visited = set()
        processing = set()

        def visit(name):
            if name in processing:
                raise ManifestError(f"Circular build dependency detected involving '{name}'")
            if name in visited:
                return
            processing.add(name)
            for dep in specs[name].depends_on:
                if dep in specs:  # Only components declared in the manifest
                    visit(dep)
            processing.remove(name)
            visited.add(name)
            ordered.append(name)

        for name in specs:
            visit(name)

        return ordered

    def resolve_waves(self, specs: Dict[str, BuildSpec], selected: Sequence[str]) -> List[List[str]]:
        """
        Groups the selected components into waves that can be built concurrently.

        A component lands in the first wave after every selected component it
        depends on. Dependencies that are not selected (already built or
        skipped) impose no ordering.

        :param specs: All build specs of the manifest.
        :param selected: Names of the components that must be built.
        :return: Waves of component names, each in declaration order.
        """
        chosen = set(selected)
        level: Dict[str, int] = {}
        for name in self.resolve_order(specs):
            if name not in chosen:
                continue
            deps = [d for d in specs[name].depends_on if d in chosen]
            level[name] = 1 + max((level[d] for d in deps), default=-1)

        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in specs:
            if name in level:
                waves[level[name]].append(name)
        return waves
