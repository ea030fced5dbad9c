"""
Scale-down candidate eligibility.

Read-only checks run per node on a worker pool; the expensive part
(re-placing pods) lives in scaledown.planner and runs serially.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, List, Optional, Tuple

from cluster.model import Node, Pod
from cluster.node_pool import NodePool, NodePoolError
from cluster.snapshot import ClusterSnapshot
from config import AutoscalingOptions
from registry.cluster_state import ClusterStateRegistry

logger = logging.getLogger(__name__)

REASON_TEMPLATE = 'template_node'
REASON_NOT_MANAGED = 'not_managed'
REASON_BEING_DELETED = 'being_deleted'
REASON_DISABLED = 'scale_down_disabled'
REASON_UTILIZATION = 'utilization_above_threshold'
REASON_NOT_UNNEEDED_LONG_ENOUGH = 'not_unneeded_long_enough'
REASON_POOL_BACKOFF = 'pool_in_backoff'
REASON_POOL_AT_MIN = 'pool_at_min_size'
REASON_BLOCKING_POD = 'blocking_pod'
REASON_DEFERRED = 'deferred'
REASON_PROVIDER_ERROR = 'provider_error'


@dataclass
class Candidate:
    node: Node
    utilization: Fraction
    # Pods that have to find a new home (DaemonSet and mirror pods excluded)
    pods: List[Pod] = field(default_factory=list)


def blocking_reason(pod: Pod) -> Optional[str]:
    """Why this pod prevents draining its node, or None"""
    if pod.is_mirror or pod.is_daemonset:
        return None
    if pod.safe_to_evict is False:
        return 'not_safe_to_evict'
    if pod.is_static:
        return 'static_pod'
    if not pod.has_controller and pod.safe_to_evict is not True:
        return 'no_controller'
    return None


def pods_to_move(pods: List[Pod]) -> List[Pod]:
    return [p for p in pods if not (p.is_mirror or p.is_daemonset)]


def classify_node(node: Node, snapshot: ClusterSnapshot, registry: ClusterStateRegistry,
                  pools: Dict[str, NodePool], options: AutoscalingOptions,
                  now: float) -> Tuple[Optional[Candidate], Optional[str]]:
    """(candidate, None) when the node may be removed, else (None, reason)"""
    if node.is_template:
        return None, REASON_TEMPLATE
    if node.pool_id is None or node.pool_id not in pools:
        return None, REASON_NOT_MANAGED
    if registry.is_being_deleted(node.name):
        return None, REASON_BEING_DELETED
    if node.scale_down_disabled:
        return None, REASON_DISABLED

    utilization = snapshot.utilization(node.name)
    if utilization >= Fraction(str(options.scale_down_utilization_threshold)):
        return None, REASON_UTILIZATION
    since = registry.low_utilization_since(node.name)
    if since is None or now - since < options.scale_down_unneeded_seconds:
        return None, REASON_NOT_UNNEEDED_LONG_ENOUGH

    pods = snapshot.pods_on(node.name)
    for pod in pods:
        reason = blocking_reason(pod)
        if reason is not None:
            return None, f"{REASON_BLOCKING_POD}:{pod.uid}:{reason}"

    pool = pools[node.pool_id]
    if registry.is_in_backoff(node.pool_id, now):
        return None, REASON_POOL_BACKOFF
    in_flight = len(registry.deletions_in_flight(node.pool_id))
    if registry.target_size(node.pool_id) - in_flight <= pool.min_size():
        return None, REASON_POOL_AT_MIN

    return Candidate(node=node, utilization=utilization, pods=pods_to_move(pods)), None


def find_candidates(snapshot: ClusterSnapshot, registry: ClusterStateRegistry,
                    pools: Dict[str, NodePool], options: AutoscalingOptions, now: float,
                    deadline: Optional[float] = None) -> Tuple[List[Candidate], Dict[str, str]]:
    """Eligible candidates ordered by (utilization, name), plus why the rest are not"""
    nodes = [n for n in snapshot.nodes() if not n.is_template]
    candidates: List[Candidate] = []
    unremovable: Dict[str, str] = {}
    failed_pools: Dict[str, NodePoolError] = {}
    if not nodes:
        return candidates, unremovable

    timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
    executor = ThreadPoolExecutor(max_workers=max(1, options.worker_pool_size))
    try:
        futures = {
            executor.submit(classify_node, node, snapshot, registry, pools, options, now): node.name
            for node in nodes
        }
        done, not_done = wait(futures, timeout=timeout)
        for future in not_done:
            future.cancel()
            unremovable[futures[future]] = REASON_DEFERRED
        for future in sorted(done, key=lambda f: futures[f]):
            name = futures[future]
            error = future.exception()
            if isinstance(error, NodePoolError):
                unremovable[name] = REASON_PROVIDER_ERROR
                failed_pools.setdefault(snapshot.node(name).pool_id, error)
                continue
            candidate, reason = future.result()
            if candidate is not None:
                candidates.append(candidate)
            else:
                unremovable[name] = reason
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for pool_id, error in sorted(failed_pools.items()):
        logger.warning(f"Pool {pool_id}: provider call failed during eligibility checks: {error}")
        registry.record_provider_error(pool_id, error, now)

    if not_done:
        logger.warning(f"Deadline reached with {len(not_done)} node(s) unclassified")
    candidates.sort(key=lambda c: (c.utilization, c.node.name))
    return candidates, unremovable
