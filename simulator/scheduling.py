"""
Scheduling feasibility simulator.

Answers "can this pod run on this node in this snapshot?" without touching
any state. Hard predicates are evaluated in a fixed order and short-circuit:

1. node selector and required node affinity
2. taints vs tolerations (NoSchedule / NoExecute)
3. resource fit against what is still free on the node

Preferred affinity, anti-affinity, topology spread and PreferNoSchedule
taints only feed `soft_score`, which breaks ties in `find_placement`.
"""
from typing import Dict, Iterable, Optional

from cluster.model import NO_EXECUTE, NO_SCHEDULE, PREFER_NO_SCHEDULE, Node, Pod
from cluster.snapshot import ClusterSnapshot
from normalize import resources as res

REASON_NODE_SELECTOR = 'node_selector_mismatch'
REASON_NODE_AFFINITY = 'node_affinity_mismatch'
REASON_TAINT = 'untolerated_taint'
REASON_INSUFFICIENT = 'insufficient_'


def _matches_node_selector(pod: Pod, node: Node) -> bool:
    for key, value in pod.node_selector.items():
        if node.labels.get(key) != value:
            return False
    return True


def _matches_required_affinity(pod: Pod, node: Node) -> bool:
    # Terms are ORed
    if not pod.required_node_terms:
        return True
    return any(term.matches(node.labels) for term in pod.required_node_terms)


def _untolerated(pod: Pod, node: Node, effects) -> int:
    count = 0
    for taint in node.effective_taints:
        if taint.effect not in effects:
            continue
        if not any(t.tolerates(taint) for t in pod.tolerations):
            count += 1
    return count


def pod_request(pod: Pod, node: Node) -> res.ResourceList:
    """What the pod needs from this node, including a pod slot when counted"""
    return res.add(pod.requests, res.pod_slot(node.allocatable))


def check_schedule(pod: Pod, node: Node, snapshot: ClusterSnapshot) -> Optional[str]:
    """First failing predicate, or None when the pod can be placed"""
    if not _matches_node_selector(pod, node):
        return REASON_NODE_SELECTOR
    if not _matches_required_affinity(pod, node):
        return REASON_NODE_AFFINITY
    if _untolerated(pod, node, (NO_SCHEDULE, NO_EXECUTE)):
        return REASON_TAINT
    free = snapshot.free(node.name) if snapshot.node(node.name) is not None else dict(node.allocatable)
    missing = res.first_insufficient(pod_request(pod, node), free)
    if missing is not None:
        return REASON_INSUFFICIENT + missing
    return None


def can_schedule(pod: Pod, node: Node, snapshot: ClusterSnapshot) -> bool:
    return check_schedule(pod, node, snapshot) is None


def _domain_pod_counts(snapshot: ClusterSnapshot, topology_key: str, selector, namespace: str) -> Dict[str, int]:
    """Matching pods per topology domain value"""
    counts: Dict[str, int] = {}
    for other, node in snapshot.placed_pods():
        if other.namespace != namespace or not selector.matches(other.labels):
            continue
        domain = node.labels.get(topology_key)
        if domain is None:
            continue
        counts[domain] = counts.get(domain, 0) + 1
    return counts


def soft_score(pod: Pod, node: Node, snapshot: ClusterSnapshot) -> int:
    """Higher is better; never used to reject a node"""
    score = 0
    for preferred in pod.preferred_node_terms:
        if preferred.term.matches(node.labels):
            score += preferred.weight

    for term in pod.pod_affinity:
        domain = node.labels.get(term.topology_key)
        if domain is None:
            continue
        counts = _domain_pod_counts(snapshot, term.topology_key, term.label_selector, pod.namespace)
        if counts.get(domain, 0) > 0:
            score += -term.weight if term.anti else term.weight

    for constraint in pod.topology_spread:
        domain = node.labels.get(constraint.topology_key)
        if domain is None:
            continue
        counts = _domain_pod_counts(snapshot, constraint.topology_key,
                                    constraint.label_selector, pod.namespace)
        domains = {n.labels[constraint.topology_key] for n in snapshot.nodes()
                   if constraint.topology_key in n.labels}
        domains.add(domain)
        floor = min(counts.get(d, 0) for d in domains)
        # Penalize placements that would push this domain past the allowed skew
        if counts.get(domain, 0) + 1 - floor > constraint.max_skew:
            score -= 1
        score -= counts.get(domain, 0)

    score -= _untolerated(pod, node, (PREFER_NO_SCHEDULE,))
    return score


def find_placement(pod: Pod, candidates: Iterable[Node], snapshot: ClusterSnapshot) -> Optional[Node]:
    """Best feasible node: highest soft score, earliest name among ties"""
    best: Optional[Node] = None
    best_score = None
    for node in sorted(candidates, key=lambda n: n.name):
        if not can_schedule(pod, node, snapshot):
            continue
        score = soft_score(pod, node, snapshot)
        if best is None or score > best_score:
            best = node
            best_score = score
    return best
