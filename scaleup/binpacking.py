"""
Binpacking estimator: how many fresh nodes of a pool would the pending pods need?

First-fit decreasing over hypothetical template nodes inside a forked
snapshot. Pods are sorted by (cpu, memory) descending, each goes on the first
already-added template node that accepts it, otherwise a new node is added as
long as the pool still has headroom.
"""
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import List, Optional

from cluster.model import Node, Pod
from cluster.node_pool import NodePool, build_template_node
from cluster.snapshot import ClusterSnapshot
from normalize.quantity import CPU, MEMORY
from simulator.scheduling import can_schedule

logger = logging.getLogger(__name__)


@dataclass
class Estimate:
    pool_id: str
    node_count: int = 0
    pods: List[Pod] = field(default_factory=list)
    # Unused share of cpu plus unused share of memory on the added nodes
    waste: Fraction = Fraction(0)
    template_node: Optional[Node] = None

    @property
    def pod_uids(self) -> List[str]:
        return [p.uid for p in self.pods]


def _sort_key(pod: Pod):
    return (-pod.requests.get(CPU, 0), -pod.requests.get(MEMORY, 0), pod.uid)


def _free_name(snapshot: ClusterSnapshot, pool_id: str, index: int) -> int:
    while snapshot.node(f"template-node-for-{pool_id}-{index}") is not None:
        index += 1
    return index


def _waste(template_node: Node, count: int, pods: List[Pod]) -> Fraction:
    waste = Fraction(0)
    for name in (CPU, MEMORY):
        capacity = template_node.allocatable.get(name, 0) * count
        if capacity <= 0:
            continue
        used = sum(p.requests.get(name, 0) for p in pods)
        waste += Fraction(capacity - used, capacity)
    return waste


def estimate(pool: NodePool, pods: List[Pod], snapshot: ClusterSnapshot,
             max_nodes: int, pool_label_key: Optional[str] = None) -> Estimate:
    """Nodes needed (at most max_nodes) and the pods they would host"""
    pool_id = pool.id()
    template = pool.template()
    result = Estimate(pool_id=pool_id)
    result.template_node = build_template_node(pool_id, template, 0, pool_label_key)
    if max_nodes <= 0 or not pods:
        return result

    sim = snapshot.fork()
    added: List[Node] = []
    next_index = 0
    for pod in sorted(pods, key=_sort_key):
        target = None
        for node in added:
            if can_schedule(pod, node, sim):
                target = node
                break
        if target is None:
            if len(added) >= max_nodes:
                continue
            next_index = _free_name(sim, pool_id, next_index)
            candidate = build_template_node(pool_id, template, next_index, pool_label_key)
            # A pod the empty template cannot host would never fit any added node
            if not can_schedule(pod, candidate, sim):
                continue
            sim.add_node(candidate)
            added.append(candidate)
            next_index += 1
            target = candidate
        sim.place(pod, target.name)
        result.pods.append(pod)

    result.node_count = len(added)
    if added:
        result.waste = _waste(result.template_node, len(added), result.pods)
    logger.debug(f"Estimate for {pool_id}: {result.node_count} node(s) for {len(result.pods)} pod(s)")
    return result
