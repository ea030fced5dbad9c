"""
Scale-down planning.

Candidates come from scaledown.eligibility, least utilized first. Each one is
removed in a fork of the working snapshot; its pods must all find a new home
on the remaining ready nodes (or on nodes already on their way), and every
disruption budget matching a moved pod must still allow a disruption. A
candidate that passes is committed, so later candidates see the pods it
pushed onto other nodes.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cluster.node_pool import NodePool, NodePoolError, inject_upcoming_nodes
from cluster.snapshot import ClusterSnapshot
from config import AutoscalingOptions
from registry import events
from registry.cluster_state import ClusterStateRegistry
from scaledown.eligibility import (
    REASON_DEFERRED, REASON_PROVIDER_ERROR, Candidate, find_candidates, pods_to_move,
)
from simulator.scheduling import find_placement

logger = logging.getLogger(__name__)

REASON_UNDERUTILIZED = 'underutilized'
REASON_BATCH_LIMIT = 'batch_limit'
REASON_POOL_CONCURRENCY = 'pool_concurrency_limit'
REASON_POOL_AT_MIN = 'pool_at_min_size'
REASON_PDB = 'pdb_blocks'
REASON_NO_PLACE = 'no_place_for_pod'


@dataclass
class ScaleDownDecision:
    node_name: str
    pool_id: str
    reason: str = REASON_UNDERUTILIZED
    grace_period_seconds: int = 600
    pods: List[str] = field(default_factory=list)
    # pod uid -> node it is expected to land on
    placements: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'node_name': self.node_name,
            'pool_id': self.pool_id,
            'reason': self.reason,
            'grace_period_seconds': self.grace_period_seconds,
            'pods': list(self.pods),
            'placements': dict(self.placements),
        }


@dataclass
class ScaleDownResult:
    decisions: List[ScaleDownDecision] = field(default_factory=list)
    unremovable: Dict[str, str] = field(default_factory=dict)
    deferred: List[str] = field(default_factory=list)
    deadline_exceeded: bool = False

    def to_dict(self) -> Dict:
        return {
            'decisions': [d.to_dict() for d in self.decisions],
            'unremovable': dict(self.unremovable),
            'deferred': list(self.deferred),
            'deadline_exceeded': self.deadline_exceeded,
        }


def _past(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def try_remove(candidate: Candidate, working: ClusterSnapshot,
               registry: ClusterStateRegistry):
    """Simulate draining one node.

    Returns (fork, placements, None) when every pod found a home within
    the disruption budgets, else (None, {}, reason).
    """
    trial = working.fork()
    name = candidate.node.name
    # Pods committed onto this node by earlier removals have to move too
    evicted = pods_to_move(trial.remove_node(name))
    placements: Dict[str, str] = {}
    for pod in sorted(evicted, key=lambda p: p.uid):
        for pdb in trial.matching_pdbs(pod):
            if trial.disruptions_allowed(pdb.uid) < 1:
                return None, {}, f"{REASON_PDB}:{pdb.uid}"
            trial.consume_disruption(pdb.uid)
        targets = [n for n in trial.nodes()
                   if n.ready and not registry.is_being_deleted(n.name)]
        dest = find_placement(pod, targets, trial)
        if dest is None:
            return None, {}, f"{REASON_NO_PLACE}:{pod.uid}"
        trial.place(pod, dest.name)
        placements[pod.uid] = dest.name
    return trial, placements, None


def plan_scale_down(
    snapshot: ClusterSnapshot,
    registry: ClusterStateRegistry,
    pools: Dict[str, NodePool],
    options: AutoscalingOptions,
    now: Optional[float] = None,
    deadline: Optional[float] = None,
    upcoming_nodes: Optional[Dict[str, int]] = None,
) -> ScaleDownResult:
    """Pick nodes that can go this tick and record them as draining.

    Args:
        deadline: time.monotonic() value; candidates not reached are deferred
        upcoming_nodes: pool id -> requested-but-unregistered node count;
            defaults to the registry's view
    """
    now = time.time() if now is None else now
    result = ScaleDownResult()

    candidates, unremovable = find_candidates(snapshot, registry, pools, options, now, deadline)
    result.unremovable.update(unremovable)
    result.deferred.extend(sorted(n for n, r in unremovable.items() if r == REASON_DEFERRED))
    if not candidates:
        return result

    if upcoming_nodes is None:
        upcoming_nodes = registry.upcoming_nodes()
    working = inject_upcoming_nodes(snapshot, pools, upcoming_nodes, options.pool_label_key,
                                    on_error=lambda pid, e: registry.record_provider_error(pid, e, now))

    in_flight: Dict[str, int] = {}
    remaining_size: Dict[str, int] = {}
    for pool_id in pools:
        in_flight[pool_id] = len(registry.deletions_in_flight(pool_id))
        remaining_size[pool_id] = registry.target_size(pool_id) - in_flight[pool_id]

    for index, candidate in enumerate(candidates):
        node = candidate.node
        if _past(deadline):
            rest = [c.node.name for c in candidates[index:]]
            for name in rest:
                result.unremovable[name] = REASON_DEFERRED
            result.deferred.extend(rest)
            result.deadline_exceeded = True
            registry.recorder.record(events.DEADLINE_EXCEEDED, 'scale_down',
                                     f"{len(rest)} candidate(s) deferred", now)
            logger.warning(f"Scale-down deadline reached, deferring {len(rest)} candidate(s)")
            break
        if len(result.decisions) >= options.max_scale_down_batch:
            result.unremovable[node.name] = REASON_BATCH_LIMIT
            continue
        pool_id = node.pool_id
        if in_flight[pool_id] >= options.max_scale_down_per_pool:
            result.unremovable[node.name] = REASON_POOL_CONCURRENCY
            continue
        try:
            min_size = pools[pool_id].min_size()
        except NodePoolError as e:
            result.unremovable[node.name] = REASON_PROVIDER_ERROR
            registry.record_provider_error(pool_id, e, now)
            continue
        if remaining_size[pool_id] - 1 < min_size:
            result.unremovable[node.name] = REASON_POOL_AT_MIN
            continue

        trial, placements, reason = try_remove(candidate, working, registry)
        if trial is None:
            result.unremovable[node.name] = reason
            logger.debug(f"Node {node.name} cannot be removed: {reason}")
            continue

        working = trial
        in_flight[pool_id] += 1
        remaining_size[pool_id] -= 1
        result.decisions.append(ScaleDownDecision(
            node_name=node.name,
            pool_id=pool_id,
            reason=f"{REASON_UNDERUTILIZED}:{float(candidate.utilization):.2f}",
            grace_period_seconds=options.drain_grace_period_seconds,
            pods=sorted(placements),
            placements=placements,
        ))

    for decision in result.decisions:
        result.unremovable.pop(decision.node_name, None)
        registry.record_scale_down_attempt(decision.node_name, decision.pool_id, now)
    return result
