"""In-memory cluster topology: declared nodes, roles, and join state."""

from __future__ import annotations

import copy
import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from recon.errors import TopologyError
from recon.state import JoinState, Node, NodeEvent, NodeRole

logger = logging.getLogger(__name__)

NodeListener = Callable[[NodeEvent], None]

# joining -> unjoined covers token expiry; failed -> joining is an explicit re-request
ALLOWED_TRANSITIONS: Dict[JoinState, frozenset] = {
    JoinState.UNJOINED: frozenset({JoinState.JOINING}),
    JoinState.JOINING: frozenset({JoinState.READY, JoinState.FAILED, JoinState.UNJOINED}),
    JoinState.READY: frozenset({JoinState.UNREACHABLE}),
    JoinState.UNREACHABLE: frozenset({JoinState.READY, JoinState.FAILED}),
    JoinState.FAILED: frozenset({JoinState.JOINING}),
}


class TopologyModel:
    """
    Serializes every node mutation behind one lock.

    Readers get copies; listeners are notified of each join-state transition
    after the lock is released.
    """

    def __init__(self, event_buffer: Optional[int] = None) -> None:
        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        self._listeners: List[NodeListener] = []
        maxlen = event_buffer or int(os.environ.get("RECON_EVENT_BUFFER", 512))
        self._events: Deque[NodeEvent] = deque(maxlen=max(32, maxlen))

    # -------- declaration --------

    def declare(
        self,
        node_id: str,
        role: NodeRole = NodeRole.WORKER,
        address: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Node:
        """Declare a node. Safe to call multiple times; join state is preserved."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                node = Node(node_id=node_id, role=role, address=address, labels=dict(labels or {}))
                self._nodes[node_id] = node
                logger.info(f"Declared {role.value} node {node_id}")
            else:
                if node.role != role:
                    raise TopologyError(
                        f"node {node_id} already declared as {node.role.value}, cannot redeclare as {role.value}",
                        node_id=node_id,
                    )
                node.address = address or node.address
                node.labels.update(labels or {})
            return copy.deepcopy(node)

    def populate(self, declarations: Iterable) -> List[Node]:
        """Declare every entry exposing node_id/role/address/labels (e.g. NodeConfig)."""
        return [
            self.declare(d.node_id, role=d.role, address=d.address, labels=d.labels)
            for d in declarations
        ]

    def decommission(self, node_id: str) -> Node:
        with self._lock:
            node = self._require(node_id)
            node.decommissioned = True
            logger.info(f"Decommissioned node {node_id}")
            return copy.deepcopy(node)

    # -------- read --------

    def get(self, node_id: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def list_nodes(self, role: Optional[NodeRole] = None, include_decommissioned: bool = True) -> List[Node]:
        with self._lock:
            nodes = [
                copy.deepcopy(n)
                for n in self._nodes.values()
                if (role is None or n.role == role) and (include_decommissioned or not n.decommissioned)
            ]
        return sorted(nodes, key=lambda n: n.node_id)

    def ready_nodes(self, role: Optional[NodeRole] = None) -> List[Node]:
        return [
            n for n in self.list_nodes(role=role, include_decommissioned=False)
            if n.join_state == JoinState.READY
        ]

    def recent_events(self, limit: int = 100) -> List[NodeEvent]:
        with self._lock:
            return list(self._events)[-limit:]

    # -------- mutation --------

    def transition(
        self,
        node_id: str,
        new_state: JoinState,
        reason: str = "",
        expected: Optional[Iterable[JoinState]] = None,
    ) -> Optional[NodeEvent]:
        """
        Move a node to `new_state`.

        Args:
            node_id: Node to move
            new_state: Target join state
            reason: Free-form reason recorded on the event
            expected: If given, the current state must be one of these

        Returns:
            The emitted NodeEvent, or None when the node is already in `new_state`

        Raises:
            TopologyError: Unknown node, unexpected current state, or illegal transition
        """
        with self._lock:
            node = self._require(node_id)
            current = node.join_state
            if expected is not None and current not in set(expected):
                raise TopologyError(
                    f"node {node_id} is {current.value}, expected one of "
                    f"{sorted(s.value for s in expected)}",
                    node_id=node_id,
                )
            if current == new_state:
                return None
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise TopologyError(
                    f"illegal transition for node {node_id}: {current.value} -> {new_state.value}",
                    node_id=node_id,
                )
            node.join_state = new_state
            if new_state == JoinState.READY:
                node.last_heartbeat = time.time()
            event = NodeEvent(node_id=node_id, previous=current, current=new_state, reason=reason)
            self._events.append(event)
            listeners = list(self._listeners)

        logger.info(f"Node {node_id}: {current.value} -> {new_state.value}" + (f" ({reason})" if reason else ""))
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Node event listener failed for {node_id}: {e}")
        return event

    def record_heartbeat(self, node_id: str, timestamp: Optional[float] = None) -> None:
        with self._lock:
            node = self._require(node_id)
            node.last_heartbeat = timestamp if timestamp is not None else time.time()

    def subscribe(self, listener: NodeListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def _require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise TopologyError(f"node '{node_id}' is not declared in the topology", node_id=node_id)
        return node
