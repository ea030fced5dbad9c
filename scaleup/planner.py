"""
Scale-up planning: turn unschedulable pods into (pool, delta) decisions.

    plan_scale_up(pods, pools, snapshot, registry, options, now, deadline)

1. Pods that fit an existing ready node, or a node already requested but not
   yet registered (injected as a template node), need nothing new.
2. Pods that no pool template could ever host are reported as permanently
   unschedulable.
3. Every eligible pool (healthy, not backing off, below max) gets a
   binpacking estimate; estimates run on a bounded worker pool.
4. The active expander picks a winner; pools with the same fingerprint share
   the winner's node count. Repeat for the pods still uncovered.
5. Global limits trim the decisions; a trimmed decision keeps only the pods
   its granted nodes can still host. Each surviving decision is recorded
   with the registry.

A pool whose provider fails to describe it is skipped for the tick and
backed off; the other pools carry on.
"""
import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from cluster.model import Node, Pod
from cluster.node_pool import NodePool, NodePoolError, build_template_node, inject_upcoming_nodes
from cluster.snapshot import ClusterSnapshot
from config import AutoscalingOptions
from registry import events
from registry.cluster_state import ClusterStateRegistry
from scaleup import expander
from scaleup.balancing import split_proportionally
from scaleup.binpacking import Estimate, estimate
from scaleup.limits import ResourceLimits, apply_limits, cluster_usage
from simulator.scheduling import can_schedule, find_placement

logger = logging.getLogger(__name__)


@dataclass
class ScaleUpDecision:
    pool_id: str
    delta: int
    attempt_id: Optional[str] = None
    pods: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'pool_id': self.pool_id, 'delta': self.delta,
                'attempt_id': self.attempt_id, 'pods': list(self.pods)}


@dataclass
class ScaleUpResult:
    decisions: List[ScaleUpDecision] = field(default_factory=list)
    already_schedulable: List[str] = field(default_factory=list)
    waiting_for_upcoming: List[str] = field(default_factory=list)
    permanently_unschedulable: List[str] = field(default_factory=list)
    # Pods that could be helped by some pool, but not this tick
    remaining: List[str] = field(default_factory=list)
    skipped_pools: Dict[str, str] = field(default_factory=dict)
    deadline_exceeded: bool = False

    def to_dict(self) -> Dict:
        return {
            'decisions': [d.to_dict() for d in self.decisions],
            'already_schedulable': list(self.already_schedulable),
            'waiting_for_upcoming': list(self.waiting_for_upcoming),
            'permanently_unschedulable': list(self.permanently_unschedulable),
            'remaining': list(self.remaining),
            'skipped_pools': dict(self.skipped_pools),
            'deadline_exceeded': self.deadline_exceeded,
        }


class DeadlineExceeded(Exception):
    """Planning ran past the tick deadline"""
    pass


def _remaining_time(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _estimate_all(executor: ThreadPoolExecutor, pools: Dict[str, NodePool], pool_ids: List[str],
                  pods: List[Pod], snapshot: ClusterSnapshot, headroom: Dict[str, int],
                  options: AutoscalingOptions,
                  deadline: Optional[float]) -> Tuple[List[Estimate], Dict[str, NodePoolError]]:
    """Estimates of the pools that answered, plus the provider errors of those that did not"""
    futures = {
        executor.submit(estimate, pools[pid], pods, snapshot, headroom[pid], options.pool_label_key): pid
        for pid in pool_ids
    }
    done, not_done = wait(futures, timeout=_remaining_time(deadline))
    if not_done:
        for f in not_done:
            f.cancel()
        raise DeadlineExceeded(f"{len(not_done)} estimate(s) unfinished")
    estimates: List[Estimate] = []
    failures: Dict[str, NodePoolError] = {}
    for f in sorted(done, key=lambda f: futures[f]):
        error = f.exception()
        if isinstance(error, NodePoolError):
            failures[futures[f]] = error
        elif error is not None:
            raise error
        else:
            estimates.append(f.result())
    return estimates, failures


def _skip_failed_pool(pool_id: str, error: NodePoolError, result: ScaleUpResult,
                      registry: ClusterStateRegistry, now: float) -> None:
    logger.warning(f"Pool {pool_id} skipped this tick, provider call failed: {error}")
    result.skipped_pools[pool_id] = 'provider_error'
    registry.record_provider_error(pool_id, error, now)


def _repack(pool: NodePool, pods: List[Pod], snapshot: ClusterSnapshot, node_count: int,
            options: AutoscalingOptions) -> List[Pod]:
    """Pods that still fit once a decision is cut down to node_count nodes"""
    if node_count <= 0:
        return []
    try:
        return estimate(pool, pods, snapshot, node_count, options.pool_label_key).pods
    except NodePoolError as e:
        logger.warning(f"Could not re-pack pods after limits: {e}")
        return []


def plan_scale_up(
    unschedulable_pods: List[Pod],
    pools: Dict[str, NodePool],
    snapshot: ClusterSnapshot,
    registry: ClusterStateRegistry,
    options: AutoscalingOptions,
    now: Optional[float] = None,
    deadline: Optional[float] = None,
    seed: Optional[int] = None,
) -> ScaleUpResult:
    """Decide which pools to grow for the given pods.

    Args:
        deadline: time.monotonic() value after which estimation is abandoned
        seed: random tie-break seed; defaults to the tick time
    """
    now = time.time() if now is None else now
    rng = random.Random(int(now) if seed is None else seed)
    result = ScaleUpResult()
    pods = sorted(unschedulable_pods, key=lambda p: p.uid)
    if not pods:
        return result

    templates: Dict[str, Node] = {}
    for pid, pool in sorted(pools.items()):
        try:
            templates[pid] = build_template_node(pid, pool.template(), 0, options.pool_label_key)
        except NodePoolError as e:
            _skip_failed_pool(pid, e, result, registry, now)
    live = {pid: pools[pid] for pid in templates}

    # 1. existing ready nodes, then nodes on their way
    upcoming = registry.upcoming_nodes()
    sim = inject_upcoming_nodes(snapshot, live, upcoming, options.pool_label_key)
    existing = [n for n in sim.nodes()
                if not n.is_template and n.ready and not registry.is_being_deleted(n.name)]
    upcoming_nodes = [n for n in sim.nodes() if n.is_template]
    pending: List[Pod] = []
    for pod in pods:
        node = find_placement(pod, existing, sim)
        if node is not None:
            sim.place(pod, node.name)
            result.already_schedulable.append(pod.uid)
            continue
        node = find_placement(pod, upcoming_nodes, sim)
        if node is not None:
            sim.place(pod, node.name)
            result.waiting_for_upcoming.append(pod.uid)
            continue
        pending.append(pod)
    base = sim.fork()

    # 2. pods no template can host, whatever the pool's health
    empty = ClusterSnapshot()
    helpable: List[Pod] = []
    # Not hostable by any template we could read, but a failed pool might be
    undecided: List[Pod] = []
    for pod in pending:
        if any(can_schedule(pod, t, empty) for t in templates.values()):
            helpable.append(pod)
        elif len(templates) < len(pools):
            undecided.append(pod)
        else:
            result.permanently_unschedulable.append(pod.uid)
            registry.recorder.record(events.POD_UNSCHEDULABLE, pod.uid,
                                     "no node pool template can host this pod", now)
    if not helpable:
        result.remaining = sorted(p.uid for p in undecided)
        return result

    # 3. eligible pools
    headroom: Dict[str, int] = {}
    fingerprints: Dict[str, str] = {}
    for pid in sorted(live):
        pool = live[pid]
        if registry.is_in_backoff(pid, now):
            result.skipped_pools[pid] = 'backoff'
            continue
        if not registry.is_healthy(pid):
            result.skipped_pools[pid] = 'unhealthy'
            continue
        try:
            room = pool.max_size() - registry.target_size(pid)
            if room > 0:
                fingerprints[pid] = pool.similarity_fingerprint()
        except NodePoolError as e:
            _skip_failed_pool(pid, e, result, registry, now)
            continue
        if room <= 0:
            result.skipped_pools[pid] = 'max_size_reached'
        else:
            headroom[pid] = room

    # 4. expander rounds
    kind = expander.ExpanderKind(options.expander)
    rounds: List[Tuple[Estimate, List[ScaleUpDecision]]] = []
    touched: Set[str] = set()
    remaining = list(helpable)
    executor = ThreadPoolExecutor(max_workers=max(1, options.worker_pool_size))
    try:
        while remaining:
            candidates = [pid for pid in sorted(headroom) if pid not in touched]
            if not candidates:
                break
            estimates, failures = _estimate_all(executor, live, candidates, remaining, base,
                                                headroom, options, deadline)
            for pid, error in sorted(failures.items()):
                _skip_failed_pool(pid, error, result, registry, now)
                del headroom[pid]
            candidates = [pid for pid in candidates if pid in headroom]
            winner = expander.choose(kind, estimates, rng, options.priorities)
            if winner is None:
                break
            touched.add(winner.pool_id)
            covered = {p.uid for p in winner.pods}
            shares = {winner.pool_id: winner.node_count}
            if options.balance_similar_pools:
                family = [pid for pid in candidates
                          if pid != winner.pool_id and fingerprints[pid] == fingerprints[winner.pool_id]]
                if family:
                    groups = [(pid, registry.target_size(pid), headroom[pid])
                              for pid in sorted(family + [winner.pool_id])]
                    shares = split_proportionally(winner.node_count, groups)
                    touched.update(family)
            group = [ScaleUpDecision(pool_id=pid, delta=shares[pid]) for pid in sorted(shares)]
            rounds.append((winner, group))
            logger.info(f"Expander {kind.value} picked {winner.pool_id} "
                        f"(+{winner.node_count}) for {len(covered)} pod(s)")
            remaining = [p for p in remaining if p.uid not in covered]
    except DeadlineExceeded as e:
        logger.warning(f"Scale-up planning hit the tick deadline: {e}")
        registry.recorder.record(events.DEADLINE_EXCEEDED, 'scale_up', str(e), now)
        result.deadline_exceeded = True
        result.remaining = sorted(p.uid for p in helpable + undecided)
        return result
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    # 5. global limits, in decision order
    limits = ResourceLimits(options.max_total_nodes, options.max_total_cores,
                            options.max_total_memory_gib)
    used = cluster_usage(base.nodes())
    planned = [d for _, group in rounds for d in group]
    granted = dict(apply_limits([(d.pool_id, d.delta, templates[d.pool_id]) for d in planned],
                                used, limits))
    for winner, group in rounds:
        kept = [d for d in group if granted.get(d.pool_id, 0) > 0]
        total = sum(granted[d.pool_id] for d in kept)
        hosted = winner.pods
        if total < sum(d.delta for d in group):
            # Similar pools share one template, so the winner's stands for the family
            hosted = _repack(live[winner.pool_id], winner.pods, base, total, options)
            logger.info(f"Limits cut {winner.pool_id} to +{total}; "
                        f"{len(winner.pods) - len(hosted)} pod(s) left uncovered")
        hosted_uids = {p.uid for p in hosted}
        remaining.extend(p for p in winner.pods if p.uid not in hosted_uids)
        if not kept or not hosted_uids:
            continue
        holder = next((d for d in kept if d.pool_id == winner.pool_id), kept[0])
        holder.pods = sorted(hosted_uids)
        for decision in kept:
            decision.delta = granted[decision.pool_id]
            decision.attempt_id = registry.record_scale_up_attempt(decision.pool_id, decision.delta, now)
            result.decisions.append(decision)

    result.remaining = sorted({p.uid for p in remaining + undecided})
    return result
