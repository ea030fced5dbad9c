"""Cluster-wide node/core/memory limits, applied to scale-up decisions last."""
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

from cluster.model import Node
from normalize.quantity import CPU, MEMORY

logger = logging.getLogger(__name__)

NODES = 'nodes'
GIB = 2 ** 30


@dataclass(frozen=True)
class ResourceLimits:
    """Zero means unlimited"""
    max_nodes: int = 0
    max_cores: int = 0
    max_memory_gib: int = 0

    def as_list(self) -> Dict[str, int]:
        out = {}
        if self.max_nodes:
            out[NODES] = self.max_nodes
        if self.max_cores:
            out[CPU] = self.max_cores * 1000
        if self.max_memory_gib:
            out[MEMORY] = self.max_memory_gib * GIB
        return out

    @property
    def unlimited(self) -> bool:
        return not self.as_list()


def node_footprint(node: Node) -> Dict[str, int]:
    return {NODES: 1, CPU: node.allocatable.get(CPU, 0), MEMORY: node.allocatable.get(MEMORY, 0)}


def cluster_usage(nodes: List[Node]) -> Dict[str, int]:
    used = {NODES: 0, CPU: 0, MEMORY: 0}
    for node in nodes:
        for name, amount in node_footprint(node).items():
            used[name] += amount
    return used


def _max_additional(per_node: Mapping[str, int], used: Mapping[str, int], limits: Mapping[str, int]) -> int:
    allowed = None
    for name, limit in limits.items():
        need = per_node.get(name, 0)
        if need <= 0:
            continue
        room = max(0, (limit - used.get(name, 0)) // need)
        allowed = room if allowed is None else min(allowed, room)
    return allowed


def apply_limits(requests: List[Tuple[str, int, Node]], used: Mapping[str, int],
                 limits: ResourceLimits) -> List[Tuple[str, int]]:
    """Grant (pool_id, delta) requests in order within the global limits.

    Requests that fit are granted in full; the first that does not is cut
    down to what is left and every later request is dropped, so that fewer
    pools end up fully satisfied rather than many partially.
    """
    caps = limits.as_list()
    if not caps:
        return [(pool_id, delta) for pool_id, delta, _ in requests]

    used = dict(used)
    granted: List[Tuple[str, int]] = []
    for pool_id, delta, template_node in requests:
        per_node = node_footprint(template_node)
        allowed = _max_additional(per_node, used, caps)
        take = delta if allowed is None else min(delta, allowed)
        if take > 0:
            granted.append((pool_id, take))
            for name, amount in per_node.items():
                used[name] = used.get(name, 0) + amount * take
        if take < delta:
            logger.info(f"Global limits cut scale-up of {pool_id} from {delta} to {take}")
            break
    return granted
