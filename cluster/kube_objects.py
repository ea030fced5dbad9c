"""
Parse Kubernetes API objects (v1.Node, v1.Pod, policy/v1.PodDisruptionBudget)
into the engine's immutable records.

Objects with malformed quantities or missing identity are logged and left out
of the snapshot; one bad object never aborts the whole tick.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cluster.model import (
    TAINT_EFFECTS,
    LabelSelector,
    Node,
    NodeSelectorTerm,
    Pod,
    PodAffinityTerm,
    PodDisruptionBudget,
    PreferredNodeTerm,
    SelectorRequirement,
    Taint,
    Toleration,
    TopologySpreadConstraint,
)
from cluster.snapshot import ClusterSnapshot
from normalize.quantity import InvalidQuantityError
from normalize.resources import ResourceList, parse_resource_list, total

logger = logging.getLogger(__name__)

TERMINAL_POD_PHASES = ('Succeeded', 'Failed')


def parse_timestamp(value: Optional[str]) -> float:
    """RFC 3339 timestamp to epoch seconds; 0.0 when absent"""
    if not value:
        return 0.0
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value).timestamp()


def _requirements(raw: Optional[List[Dict[str, Any]]]) -> Tuple[SelectorRequirement, ...]:
    return tuple(
        SelectorRequirement(
            key=r['key'],
            operator=r.get('operator', 'In'),
            values=tuple(str(v) for v in (r.get('values') or ())),
        )
        for r in (raw or [])
    )


def parse_label_selector(raw: Optional[Dict[str, Any]]) -> LabelSelector:
    raw = raw or {}
    return LabelSelector(
        match_labels=dict(raw.get('matchLabels') or {}),
        match_expressions=_requirements(raw.get('matchExpressions')),
    )


def _node_term(raw: Optional[Dict[str, Any]]) -> NodeSelectorTerm:
    return NodeSelectorTerm(match_expressions=_requirements((raw or {}).get('matchExpressions')))


def parse_taints(raw: Optional[List[Dict[str, Any]]]) -> Tuple[Taint, ...]:
    taints = []
    for t in raw or []:
        effect = t.get('effect', '')
        if effect not in TAINT_EFFECTS:
            logger.debug(f"Ignoring taint {t.get('key')} with unknown effect {effect!r}")
            continue
        taints.append(Taint(key=t['key'], value=t.get('value', ''), effect=effect))
    return tuple(taints)


def parse_tolerations(raw: Optional[List[Dict[str, Any]]]) -> Tuple[Toleration, ...]:
    return tuple(
        Toleration(
            key=t.get('key', ''),
            operator=t.get('operator', 'Equal'),
            value=t.get('value', ''),
            effect=t.get('effect', ''),
        )
        for t in (raw or [])
    )


def _is_ready(status: Dict[str, Any]) -> bool:
    for cond in status.get('conditions') or []:
        if cond.get('type') == 'Ready':
            return cond.get('status') == 'True'
    return False


def parse_node(obj: Dict[str, Any], pool_label_key: Optional[str] = None) -> Node:
    meta = obj.get('metadata') or {}
    spec = obj.get('spec') or {}
    status = obj.get('status') or {}
    labels = dict(meta.get('labels') or {})
    return Node(
        name=meta['name'],
        allocatable=parse_resource_list(status.get('allocatable') or status.get('capacity')),
        labels=labels,
        taints=parse_taints(spec.get('taints')),
        pool_id=labels.get(pool_label_key) if pool_label_key else None,
        ready=_is_ready(status),
        unschedulable=bool(spec.get('unschedulable', False)),
        created_at=parse_timestamp(meta.get('creationTimestamp')),
        annotations=dict(meta.get('annotations') or {}),
    )


def pod_requests(spec: Dict[str, Any]) -> ResourceList:
    """Effective requests: max(sum of containers, any init container) plus overhead"""
    containers = total(
        parse_resource_list((c.get('resources') or {}).get('requests'))
        for c in spec.get('containers') or []
    )
    for init in spec.get('initContainers') or []:
        req = parse_resource_list((init.get('resources') or {}).get('requests'))
        for name, amount in req.items():
            if amount > containers.get(name, 0):
                containers[name] = amount
    overhead = parse_resource_list(spec.get('overhead'))
    return total([containers, overhead])


def _owner(meta: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    refs = meta.get('ownerReferences') or []
    for ref in refs:
        if ref.get('controller'):
            return ref.get('kind'), ref.get('name')
    if refs:
        return refs[0].get('kind'), refs[0].get('name')
    return None, None


def _pod_affinity_terms(affinity: Dict[str, Any]) -> Tuple[PodAffinityTerm, ...]:
    terms = []
    for key, anti in (('podAffinity', False), ('podAntiAffinity', True)):
        section = affinity.get(key) or {}
        for weighted in section.get('preferredDuringSchedulingIgnoredDuringExecution') or []:
            term = weighted.get('podAffinityTerm') or {}
            terms.append(PodAffinityTerm(
                label_selector=parse_label_selector(term.get('labelSelector')),
                topology_key=term.get('topologyKey', ''),
                weight=int(weighted.get('weight', 1)),
                anti=anti,
            ))
    return tuple(terms)


def parse_pod(obj: Dict[str, Any]) -> Pod:
    meta = obj.get('metadata') or {}
    spec = obj.get('spec') or {}
    affinity = spec.get('affinity') or {}
    node_affinity = affinity.get('nodeAffinity') or {}
    required = node_affinity.get('requiredDuringSchedulingIgnoredDuringExecution') or {}
    preferred = node_affinity.get('preferredDuringSchedulingIgnoredDuringExecution') or []
    owner_kind, owner_name = _owner(meta)
    return Pod(
        name=meta['name'],
        namespace=meta.get('namespace', 'default'),
        requests=pod_requests(spec),
        labels=dict(meta.get('labels') or {}),
        node_name=spec.get('nodeName') or None,
        node_selector=dict(spec.get('nodeSelector') or {}),
        required_node_terms=tuple(_node_term(t) for t in required.get('nodeSelectorTerms') or []),
        preferred_node_terms=tuple(
            PreferredNodeTerm(weight=int(p.get('weight', 1)), term=_node_term(p.get('preference')))
            for p in preferred
        ),
        pod_affinity=_pod_affinity_terms(affinity),
        topology_spread=tuple(
            TopologySpreadConstraint(
                topology_key=c['topologyKey'],
                label_selector=parse_label_selector(c.get('labelSelector')),
                max_skew=int(c.get('maxSkew', 1)),
            )
            for c in spec.get('topologySpreadConstraints') or []
        ),
        tolerations=parse_tolerations(spec.get('tolerations')),
        owner_kind=owner_kind,
        owner_name=owner_name,
        annotations=dict(meta.get('annotations') or {}),
    )


def parse_pdb(obj: Dict[str, Any]) -> PodDisruptionBudget:
    meta = obj.get('metadata') or {}
    spec = obj.get('spec') or {}
    status = obj.get('status') or {}
    return PodDisruptionBudget(
        name=meta['name'],
        namespace=meta.get('namespace', 'default'),
        selector=parse_label_selector(spec.get('selector')),
        disruptions_allowed=int(status.get('disruptionsAllowed', 0)),
    )


def _parse_all(kind: str, items: Iterable[Dict[str, Any]], parser, **kwargs) -> List:
    parsed = []
    for item in items or []:
        name = (item.get('metadata') or {}).get('name', '<unnamed>')
        try:
            parsed.append(parser(item, **kwargs))
        except InvalidQuantityError as e:
            logger.error(f"Skipping {kind} {name}: {e}")
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Skipping malformed {kind} {name}: {e!r}")
    return parsed


def build_snapshot(
    nodes: Iterable[Dict[str, Any]],
    pods: Iterable[Dict[str, Any]],
    pdbs: Iterable[Dict[str, Any]] = (),
    pool_label_key: Optional[str] = None,
    taken_at: float = 0.0,
) -> ClusterSnapshot:
    """Frozen snapshot from raw API objects; finished pods are ignored"""
    live_pods = [p for p in pods or []
                 if (p.get('status') or {}).get('phase') not in TERMINAL_POD_PHASES]
    return ClusterSnapshot(
        nodes=_parse_all('node', nodes, parse_node, pool_label_key=pool_label_key),
        pods=_parse_all('pod', live_pods, parse_pod),
        pdbs=_parse_all('pdb', pdbs, parse_pdb),
        taken_at=taken_at,
    )
