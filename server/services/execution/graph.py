"""Static graph view of a workflow: adjacency, inbound counts and step orders."""

from collections import deque
from typing import Dict, List, Optional

from models.nodes import Edge, Node, Workflow


def compute_step_orders(workflow: Workflow) -> Dict[str, int]:
    """Shortest edge distance from any trigger, 1-based.

    Triggers get 1, their direct targets 2 and so on. Nodes unreachable from
    every trigger get 0. Multi-source BFS, so the result depends only on the
    static graph.
    """
    outgoing: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        outgoing.setdefault(edge.source, []).append(edge.target)

    orders: Dict[str, int] = {node.id: 0 for node in workflow.nodes}
    queue = deque()
    for node in workflow.triggers:
        orders[node.id] = 1
        queue.append(node.id)

    while queue:
        current = queue.popleft()
        for target in outgoing.get(current, []):
            if orders.get(target, 0) == 0:
                orders[target] = orders[current] + 1
                queue.append(target)

    return orders


class WorkflowGraph:
    """Immutable adjacency view built once per workflow."""

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.nodes: Dict[str, Node] = {node.id: node for node in workflow.nodes}
        self._outgoing: Dict[str, List[Edge]] = {node.id: [] for node in workflow.nodes}
        self._inbound_counts: Dict[str, int] = {node.id: 0 for node in workflow.nodes}
        for edge in workflow.edges:
            self._outgoing[edge.source].append(edge)
            self._inbound_counts[edge.target] += 1
        self.step_orders = compute_step_orders(workflow)

    @property
    def workflow_id(self) -> str:
        return self.workflow.id

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def outgoing(self, node_id: str) -> List[Edge]:
        return self._outgoing.get(node_id, [])

    def inbound_count(self, node_id: str) -> int:
        return self._inbound_counts.get(node_id, 0)

    def step_order(self, node_id: str) -> int:
        return self.step_orders.get(node_id, 0)

    def is_terminal(self, node_id: str) -> bool:
        return not self._outgoing.get(node_id)
