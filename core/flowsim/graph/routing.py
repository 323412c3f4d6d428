"""
Routing - Map a transformer output to outgoing connections.

Each output object may carry a reserved ``__targets`` field:
- absent or null: broadcast to every outgoing connection
- list of names: send only to connections whose destination node's
  display name matches (exact, case-sensitive)

Names are resolved against the live graph on every call; renaming a
node takes effect on the next delivery.
"""

import logging
from typing import Any

from flowsim.graph.model import ConnectionId, Flowchart, NodeId

logger = logging.getLogger(__name__)

TARGETS_FIELD = "__targets"


def extract_targets(value: Any) -> tuple[Any, list[str] | None]:
    """
    Split the routing field off an output object.

    Args:
        value: One transformer output (normally a dict)

    Returns:
        (payload without ``__targets``, target names or None for broadcast)
    """
    if not isinstance(value, dict) or TARGETS_FIELD not in value:
        return value, None

    payload = {k: v for k, v in value.items() if k != TARGETS_FIELD}
    raw = value[TARGETS_FIELD]

    if raw is None:
        return payload, None
    if isinstance(raw, list):
        return payload, [name for name in raw if isinstance(name, str)]

    logger.warning(
        f"Ignoring {TARGETS_FIELD} of type {type(raw).__name__}; broadcasting instead",
        extra={"event": "routing_invalid_targets"},
    )
    return payload, None


def resolve(
    flowchart: Flowchart,
    node_id: NodeId,
    targets: list[str] | None,
) -> list[ConnectionId]:
    """
    Resolve target names to outgoing connection ids.

    Args:
        flowchart: Graph to resolve against
        node_id: Node whose outgoing connections are considered
        targets: None to broadcast, otherwise destination display names

    Returns:
        Connection ids in creation order; each connection appears at most once
    """
    outgoing = flowchart.outgoing(node_id)
    if targets is None:
        return outgoing

    wanted = set(targets)
    matched: list[ConnectionId] = []
    matched_names: set[str] = set()
    for conn_id in outgoing:
        dest = flowchart.nodes.get(flowchart.connections[conn_id].target)
        if dest is not None and dest.name in wanted:
            matched.append(conn_id)
            matched_names.add(dest.name)

    for name in dict.fromkeys(targets):
        if name in matched_names:
            continue
        logger.debug(
            f"Routing miss: no outgoing connection to {name!r}",
            extra={"event": "routing_miss", "node_id": node_id},
        )

    return matched
