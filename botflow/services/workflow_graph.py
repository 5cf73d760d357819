"""
In-memory workflow graph.

A graph is loaded once per turn from the store (or from a test-harness
payload) and never mutated while a turn executes.
"""
from loguru import logger

from botflow.core.exceptions import GraphIntegrityError, GraphValidationError
from botflow.models.enums import NodeType
from botflow.schemas.workflow import GraphNode, GraphEdge


NODE_TYPES = {t.value for t in NodeType}

# Legacy entry preference when no node carries an explicit marker
ENTRY_FALLBACK_ORDER = ("milestone", "start", "ai")


class WorkflowGraph:
    """Nodes keyed by id, edges in the order they were stored."""

    def __init__(self, nodes: list[GraphNode], edges: list[GraphEdge], workflow_id: str | None = None):
        self.workflow_id = workflow_id
        self.nodes: list[GraphNode] = list(nodes)
        self.edges: list[GraphEdge] = list(edges)
        self._by_id: dict[str, GraphNode] = {}
        for node in self.nodes:
            # first declaration wins for lookups; duplicates are reported by validate_graph
            self._by_id.setdefault(node.node_id, node)

    @classmethod
    def load(
        cls,
        nodes: list[GraphNode | dict],
        edges: list[GraphEdge | dict],
        workflow_id: str | None = None,
        strict: bool = False,
    ) -> "WorkflowGraph":
        """
        Build a graph and check it.

        Args:
            nodes: Node models or raw dicts (``type``/``node_type`` both accepted)
            edges: Edge models or raw dicts (``source``/``source_node_id`` both accepted)
            workflow_id: Optional id, used in log lines
            strict: Reject any validation error instead of only ambiguous entries

        Returns:
            The loaded WorkflowGraph

        Raises:
            GraphValidationError: strict mode with any error, or multiple entry markers
        """
        graph = cls(
            [n if isinstance(n, GraphNode) else GraphNode.model_validate(n) for n in nodes],
            [e if isinstance(e, GraphEdge) else GraphEdge.model_validate(e) for e in edges],
            workflow_id=workflow_id,
        )
        errors = graph.validate_graph()
        if strict and errors:
            raise GraphValidationError(errors)

        entries = [n for n in graph.nodes if n.is_entry]
        if len(entries) > 1:
            raise GraphValidationError(
                [f"Multiple entry nodes: {', '.join(n.node_id for n in entries)}"]
            )

        for error in errors:
            logger.warning(f"Workflow {workflow_id}: {error}")
        return graph

    def get_node(self, node_id: str | None) -> GraphNode | None:
        if not node_id:
            return None
        return self._by_id.get(node_id)

    def entry_node(self) -> GraphNode:
        """
        Resolve where a new session starts.

        An explicit ``is_entry`` marker wins. Without one, the first
        milestone, then start, then ai node is used, then the first node.
        """
        if not self.nodes:
            raise GraphIntegrityError("Workflow has no nodes")

        marked = [n for n in self.nodes if n.is_entry]
        if len(marked) > 1:
            raise GraphValidationError(
                [f"Multiple entry nodes: {', '.join(n.node_id for n in marked)}"]
            )
        if marked:
            return marked[0]

        for node_type in ENTRY_FALLBACK_ORDER:
            for node in self.nodes:
                if node.type == node_type:
                    return node
        return self.nodes[0]

    def outgoing_edges(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self.edges if e.source == node_id]

    def find_edge(self, node_id: str, tag: str | None = None) -> GraphEdge | None:
        """First outgoing edge (in stored order) whose tag matches. ``None`` matches any edge."""
        for edge in self.outgoing_edges(node_id):
            if tag is None or edge.tag == tag:
                return edge
        return None

    def validate_graph(self) -> list[str]:
        """Return a list of human-readable problems. Empty list means valid."""
        errors: list[str] = []

        if not self.nodes:
            errors.append("Workflow has no nodes")

        seen: set[str] = set()
        for node in self.nodes:
            if node.node_id in seen:
                errors.append(f"Duplicate node id '{node.node_id}'")
            seen.add(node.node_id)
            if node.type not in NODE_TYPES:
                errors.append(f"Node '{node.node_id}' has unknown type '{node.type}'")

        entries = [n.node_id for n in self.nodes if n.is_entry]
        if len(entries) > 1:
            errors.append(f"Multiple entry nodes: {', '.join(entries)}")

        tags_by_source: dict[str, set[str]] = {}
        for edge in self.edges:
            if edge.source not in self._by_id:
                errors.append(f"Edge references unknown source node '{edge.source}'")
            if edge.target not in self._by_id:
                errors.append(f"Edge references unknown target node '{edge.target}'")

            # condition edges are evaluated in order, so they may share a tag
            if edge.condition:
                continue
            used = tags_by_source.setdefault(edge.source, set())
            if edge.tag in used:
                errors.append(
                    f"Node '{edge.source}' has more than one outgoing '{edge.tag}' edge"
                )
            used.add(edge.tag)

        return errors
