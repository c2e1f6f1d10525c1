"""Registry of compiled workflow definitions."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..contracts import WorkflowDefinition, parse_definition_id
from ..errors import DefinitionError, UnknownDefinition
from ..graph import Graph, compile_definition

logger = logging.getLogger(__name__)


class DefinitionRegistry:
    """Map ``name@version`` to a compiled :class:`Graph`.

    Graphs are compiled once on registration. Registering the same
    definition object twice is a no-op, registering a different definition
    under an id that is already taken is rejected.
    """

    def __init__(self) -> None:
        self._graphs: Dict[str, Graph] = {}

    def register(self, definition: WorkflowDefinition) -> Graph:
        existing = self._graphs.get(definition.definition_id)
        if existing is not None:
            if existing.definition is definition or existing.definition == definition:
                return existing
            raise DefinitionError(
                f"A different definition is already registered as {definition.definition_id}"
            )
        graph = compile_definition(definition)
        self._graphs[definition.definition_id] = graph
        logger.debug(f"Registered {definition.definition_id} with steps {graph.order}")
        return graph

    def get(self, definition_id: str) -> Graph:
        """Return the graph for ``name@version``, or the latest ``name``."""
        graph = self._graphs.get(definition_id)
        if graph is not None:
            return graph
        name, version = parse_definition_id(definition_id)
        if version is None:
            candidates = [
                g for g in self._graphs.values() if g.definition.name == name
            ]
            if candidates:
                return max(candidates, key=lambda g: g.definition.version)
        raise UnknownDefinition(f"Unknown workflow definition: {definition_id}")

    def find(self, definition_id: str) -> Optional[Graph]:
        try:
            return self.get(definition_id)
        except UnknownDefinition:
            return None

    def definitions(self) -> List[WorkflowDefinition]:
        return [g.definition for g in self._graphs.values()]

    def __contains__(self, definition_id: str) -> bool:
        return self.find(definition_id) is not None

    def __len__(self) -> int:
        return len(self._graphs)


__all__ = ["DefinitionRegistry"]
