# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Dependency resolution.
"""
from __future__ import annotations

import logging
from typing import (
    Callable,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

from .common import CycleDetected
from .formula import FormulaDescriptor, FormulaRegistry
from .profile import PlatformProfile

log = logging.getLogger(__name__)

InstalledCheck = Callable[[FormulaDescriptor], bool]


class GraphNode(NamedTuple):
    """
    One formula of a resolved install order.

    :param formula: The formula
    :param dependencies: Names of the formulas this node waits on
    :param installed: True when the node is already installed and only kept for ordering
    """

    formula: FormulaDescriptor
    dependencies: Tuple[str, ...]
    installed: bool = False

    @property
    def name(self) -> str:
        return self.formula.name


class DependencyGraph:
    """
    Resolve formulas into an installation order.

    :param registry: The formulas dependency names are resolved against
    :type registry: ``brewkit.formula.FormulaRegistry``
    :param options: Build options per formula name
    :type options: dict
    :param installed: Returns True for formulas that need no work
    :type installed: callable
    """

    def __init__(
        self,
        registry: FormulaRegistry,
        options: Optional[Mapping[str, Sequence[str]]] = None,
        installed: Optional[InstalledCheck] = None,
    ) -> None:
        self.registry = registry
        self.options = dict(options or {})
        self.installed = installed

    def edges(
        self, formula: FormulaDescriptor, profile: PlatformProfile
    ) -> List[str]:
        """
        The dependency names of ``formula`` that exist on ``profile``, in declaration order.

        Dependencies provided by the system are satisfied without an edge.
        """
        options = self.options.get(formula.name, ())
        names: List[str] = []
        for dep in formula.dependencies:
            if not dep.applies(profile, options):
                log.debug(
                    "Dropping %s dependency %s of %s", dep.kind, dep.name, formula.name
                )
                continue
            if self.registry.is_system(dep.name):
                log.debug("%s is provided by the system", dep.name)
                continue
            if dep.name not in names:
                names.append(dep.name)
        return names

    def resolve(
        self, root: FormulaDescriptor, profile: PlatformProfile
    ) -> List[GraphNode]:
        """
        Order ``root`` and everything it depends on, dependencies first.

        :raises CycleDetected: If the formulas depend on each other in a loop
        :raises UnresolvedDependency: If a dependency is not in the registry

        :return: The nodes in installation order
        :rtype: list
        """
        return self.resolve_many([root], profile)

    def resolve_many(
        self, roots: Sequence[FormulaDescriptor], profile: PlatformProfile
    ) -> List[GraphNode]:
        """
        Order several roots and their dependencies, roots visited in the order given.
        """
        order: List[GraphNode] = []
        done: Dict[str, GraphNode] = {}
        for root in roots:
            self._visit(root, profile, [], done, order)
        return order

    def _visit(
        self,
        formula: FormulaDescriptor,
        profile: PlatformProfile,
        path: List[str],
        done: Dict[str, GraphNode],
        order: List[GraphNode],
    ) -> None:
        if formula.name in done:
            return
        if formula.name in path:
            start = path.index(formula.name)
            raise CycleDetected(path[start:] + [formula.name])
        path.append(formula.name)
        deps = self.edges(formula, profile)
        for name in deps:
            dep = self.registry.get(name, required_by=formula.name)
            self._visit(dep, profile, path, done, order)
        path.pop()
        installed = bool(self.installed and self.installed(formula))
        node = GraphNode(formula, tuple(deps), installed)
        done[formula.name] = node
        order.append(node)
