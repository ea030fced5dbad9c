"""
Immutable records for nodes, pods and disruption budgets.

Records are frozen; what-if exploration never edits them; it re-indexes them
inside a forked ClusterSnapshot instead.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from normalize.resources import ResourceList

NO_SCHEDULE = 'NoSchedule'
NO_EXECUTE = 'NoExecute'
PREFER_NO_SCHEDULE = 'PreferNoSchedule'
TAINT_EFFECTS = (NO_SCHEDULE, NO_EXECUTE, PREFER_NO_SCHEDULE)

UNSCHEDULABLE_TAINT_KEY = 'node.kubernetes.io/unschedulable'
HOSTNAME_LABEL = 'kubernetes.io/hostname'

SAFE_TO_EVICT_ANNOTATION = 'cluster-autoscaler.kubernetes.io/safe-to-evict'
SCALE_DOWN_DISABLED_ANNOTATION = 'cluster-autoscaler.kubernetes.io/scale-down-disabled'
CONFIG_MIRROR_ANNOTATION = 'kubernetes.io/config.mirror'
CONFIG_SOURCE_ANNOTATION = 'kubernetes.io/config.source'


@dataclass(frozen=True)
class Taint:
    key: str
    value: str = ''
    effect: str = NO_SCHEDULE


@dataclass(frozen=True)
class Toleration:
    key: str = ''
    operator: str = 'Equal'
    value: str = ''
    effect: str = ''

    def tolerates(self, taint: Taint) -> bool:
        if self.effect and self.effect != taint.effect:
            return False
        if self.operator == 'Exists':
            # Empty key with Exists tolerates everything
            return not self.key or self.key == taint.key
        return bool(self.key) and self.key == taint.key and self.value == taint.value


@dataclass(frozen=True)
class SelectorRequirement:
    """One matchExpressions entry (label or node selector)"""
    key: str
    operator: str
    values: Tuple[str, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        op = self.operator
        present = self.key in labels
        if op == 'In':
            return present and labels[self.key] in self.values
        if op == 'NotIn':
            return not present or labels[self.key] not in self.values
        if op == 'Exists':
            return present
        if op == 'DoesNotExist':
            return not present
        if op in ('Gt', 'Lt'):
            if not present or len(self.values) != 1:
                return False
            try:
                actual = int(labels[self.key])
                bound = int(self.values[0])
            except ValueError:
                return False
            return actual > bound if op == 'Gt' else actual < bound
        return False


@dataclass(frozen=True)
class NodeSelectorTerm:
    match_expressions: Tuple[SelectorRequirement, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        # An empty term selects nothing
        if not self.match_expressions:
            return False
        return all(r.matches(labels) for r in self.match_expressions)


@dataclass(frozen=True)
class PreferredNodeTerm:
    weight: int
    term: NodeSelectorTerm


@dataclass(frozen=True)
class LabelSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: Tuple[SelectorRequirement, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        for k, v in self.match_labels.items():
            if labels.get(k) != v:
                return False
        return all(r.matches(labels) for r in self.match_expressions)


@dataclass(frozen=True)
class PodAffinityTerm:
    """Preferred inter-pod (anti-)affinity; only ever a soft signal"""
    label_selector: LabelSelector
    topology_key: str
    weight: int = 1
    anti: bool = False


@dataclass(frozen=True)
class TopologySpreadConstraint:
    topology_key: str
    label_selector: LabelSelector
    max_skew: int = 1


@dataclass(frozen=True)
class Node:
    name: str
    allocatable: ResourceList = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    taints: Tuple[Taint, ...] = ()
    pool_id: Optional[str] = None
    ready: bool = True
    unschedulable: bool = False
    created_at: float = 0.0
    annotations: Dict[str, str] = field(default_factory=dict)
    is_template: bool = False

    @property
    def effective_taints(self) -> Tuple[Taint, ...]:
        """Taints plus the implicit cordon taint"""
        if self.unschedulable and not any(t.key == UNSCHEDULABLE_TAINT_KEY for t in self.taints):
            return self.taints + (Taint(UNSCHEDULABLE_TAINT_KEY, '', NO_SCHEDULE),)
        return self.taints

    @property
    def scale_down_disabled(self) -> bool:
        return self.annotations.get(SCALE_DOWN_DISABLED_ANNOTATION, '').lower() == 'true'


@dataclass(frozen=True)
class Pod:
    name: str
    namespace: str = 'default'
    requests: ResourceList = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    node_name: Optional[str] = None
    node_selector: Dict[str, str] = field(default_factory=dict)
    required_node_terms: Tuple[NodeSelectorTerm, ...] = ()
    preferred_node_terms: Tuple[PreferredNodeTerm, ...] = ()
    pod_affinity: Tuple[PodAffinityTerm, ...] = ()
    topology_spread: Tuple[TopologySpreadConstraint, ...] = ()
    tolerations: Tuple[Toleration, ...] = ()
    owner_kind: Optional[str] = None
    owner_name: Optional[str] = None
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def uid(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_daemonset(self) -> bool:
        return self.owner_kind == 'DaemonSet'

    @property
    def is_mirror(self) -> bool:
        return CONFIG_MIRROR_ANNOTATION in self.annotations

    @property
    def is_static(self) -> bool:
        source = self.annotations.get(CONFIG_SOURCE_ANNOTATION)
        return source is not None and source != 'api' and not self.is_mirror

    @property
    def has_controller(self) -> bool:
        return bool(self.owner_kind)

    @property
    def safe_to_evict(self) -> Optional[bool]:
        """Explicit annotation value, or None when the pod does not say"""
        raw = self.annotations.get(SAFE_TO_EVICT_ANNOTATION)
        if raw is None:
            return None
        return raw.lower() == 'true'


@dataclass(frozen=True)
class PodDisruptionBudget:
    name: str
    namespace: str = 'default'
    selector: LabelSelector = field(default_factory=LabelSelector)
    disruptions_allowed: int = 0

    @property
    def uid(self) -> str:
        return f"{self.namespace}/{self.name}"

    def matches(self, pod: Pod) -> bool:
        return pod.namespace == self.namespace and self.selector.matches(pod.labels)
