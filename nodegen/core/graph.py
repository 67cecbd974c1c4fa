"""
In-memory node graph: nodes, ordered parent edges and update listeners
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from nodegen.core.errors import NodeNotFoundError, ValidationError
from nodegen.models.models import Node

logger = logging.getLogger(__name__)

# listener(event, node) where event is "updated" or "removed"
NodeListener = Callable[[str, Node], None]


class NodeGraph:
    """Owns the canvas nodes. Edges are derived from each child's parent_ids."""

    def __init__(self):
        self._nodes: Dict[str, Node] = {}
        self._listeners: List[NodeListener] = []

    # ---- listeners ----

    def subscribe(self, listener: NodeListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, node: Node):
        for listener in list(self._listeners):
            try:
                listener(event, node)
            except Exception:
                logger.exception(f"❌ Node listener failed for {node.id}")

    # ---- nodes ----

    def add(self, node: Node) -> Node:
        if not node.id:
            node = node.model_copy(update={"id": uuid.uuid4().hex})
        if node.id in self._nodes:
            raise ValidationError(f"Node {node.id} already exists")

        parent_ids = list(node.parent_ids)
        node = node.model_copy(update={"parent_ids": [], "frame_inputs": {}})
        self._nodes[node.id] = node
        try:
            for parent_id in parent_ids:
                self.connect(parent_id, node.id)
        except (NodeNotFoundError, ValidationError):
            del self._nodes[node.id]
            raise

        node = self._nodes[node.id]
        logger.info(f"➕ Added node {node.id} ({node.type.value})")
        self._notify("updated", node)
        return node

    def get(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def find(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def all(self) -> List[Node]:
        return list(self._nodes.values())

    def remove(self, node_id: str) -> Node:
        node = self.get(node_id)
        del self._nodes[node_id]

        for child in self.children(node_id):
            frame_inputs = {k: v for k, v in child.frame_inputs.items() if k != node_id}
            self._store(child.model_copy(update={
                "parent_ids": [p for p in child.parent_ids if p != node_id],
                "frame_inputs": frame_inputs,
            }))

        logger.info(f"🗑️ Removed node {node_id}")
        self._notify("removed", node)
        return node

    def update_node(self, node_id: str, **fields: Any) -> Node:
        """Apply a partial update, validate it through the model and notify listeners."""
        node = self.get(node_id)
        data = node.model_dump()
        data.update(fields)
        updated = Node.model_validate(data)
        self._store(updated)
        return updated

    def _store(self, node: Node):
        self._nodes[node.id] = node
        self._notify("updated", node)

    # ---- edges ----

    def connect(self, parent_id: str, child_id: str) -> Node:
        """Append parent_id to the child's ordered parent list."""
        self.get(parent_id)
        child = self.get(child_id)

        if parent_id == child_id:
            raise ValidationError("A node cannot be connected to itself")
        if parent_id in child.parent_ids:
            raise ValidationError(f"Node {parent_id} is already connected to {child_id}")
        if self._reaches(child_id, parent_id):
            raise ValidationError(
                f"Connecting {parent_id} -> {child_id} would create a cycle"
            )

        return self.update_node(child_id, parent_ids=child.parent_ids + [parent_id])

    def disconnect(self, parent_id: str, child_id: str) -> Node:
        child = self.get(child_id)
        if parent_id not in child.parent_ids:
            raise ValidationError(f"Node {parent_id} is not connected to {child_id}")
        frame_inputs = {k: v for k, v in child.frame_inputs.items() if k != parent_id}
        return self.update_node(
            child_id,
            parent_ids=[p for p in child.parent_ids if p != parent_id],
            frame_inputs=frame_inputs,
        )

    def parents(self, node_id: str) -> List[Node]:
        """Connected parents in connection order."""
        node = self.get(node_id)
        return [self._nodes[p] for p in node.parent_ids if p in self._nodes]

    def children(self, node_id: str) -> List[Node]:
        return [n for n in self._nodes.values() if node_id in n.parent_ids]

    def _reaches(self, start_id: str, target_id: str) -> bool:
        """True if target_id is downstream of start_id."""
        stack = [start_id]
        seen = set()
        while stack:
            current = stack.pop()
            if current == target_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(child.id for child in self.children(current))
        return False

    def topological_order(self) -> List[str]:
        """Node ids ordered so every parent precedes its children."""
        graph = {node_id: [] for node_id in self._nodes}
        in_degree = {node_id: 0 for node_id in self._nodes}

        for node in self._nodes.values():
            for parent_id in node.parent_ids:
                if parent_id in graph:
                    graph[parent_id].append(node.id)
                    in_degree[node.id] += 1

        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        order = []

        while queue:
            current = queue.pop(0)
            order.append(current)

            for neighbor in graph[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(order) != len(self._nodes):
            raise ValidationError("Node graph contains circular dependencies")

        return order
