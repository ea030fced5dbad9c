"""
Node-pool interface consumed by the scaling engine, plus node templates.

Provider adapters implement NodePool; the engine never talks to a cloud API
directly. StaticNodePool is an in-memory implementation used for dry runs
(loaded from YAML) and tests.
"""
import abc
import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from cluster.model import HOSTNAME_LABEL, TAINT_EFFECTS, Node, Taint
from cluster.snapshot import ClusterSnapshot
from normalize.quantity import PODS
from normalize.resources import ResourceList, parse_resource_list

logger = logging.getLogger(__name__)

DEFAULT_POD_CAPACITY = 110

# Labels that legitimately differ between otherwise interchangeable pools
SIMILARITY_IGNORED_LABELS = (
    HOSTNAME_LABEL,
    'topology.kubernetes.io/zone',
    'failure-domain.beta.kubernetes.io/zone',
    'topology.kubernetes.io/region',
    'failure-domain.beta.kubernetes.io/region',
)

_TAINT_VALUE_RE = re.compile(r'^(.*):(NoSchedule|NoExecute|PreferNoSchedule)$')


class NodePoolError(Exception):
    """Provider call failure, classified by kind"""

    QUOTA_EXCEEDED = 'quota_exceeded'
    API_ERROR = 'api_error'
    TIMEOUT = 'timeout'
    PERMANENT = 'permanent'

    def __init__(self, message: str, kind: str = API_ERROR):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class NodeTemplate:
    """What a freshly created member of a pool would look like"""
    allocatable: ResourceList = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    taints: Tuple[Taint, ...] = ()


def parse_taints_spec(spec: str) -> List[Taint]:
    """Parse kubelet --register-with-taints syntax.

    "dedicated=foo:NoSchedule,group=bar:NoExecute" -> [Taint, Taint]
    Duplicates and malformed entries are skipped.
    """
    taints: List[Taint] = []
    seen = set()
    for raw in (spec or '').split(','):
        raw = raw.strip()
        if not raw or raw in seen:
            continue
        seen.add(raw)
        parts = raw.split('=')
        if len(parts) != 2:
            logger.debug(f"Ignoring malformed taint {raw!r}")
            continue
        key, rest = parts
        m = _TAINT_VALUE_RE.match(rest)
        if not key or not m:
            logger.debug(f"Ignoring malformed taint {raw!r}")
            continue
        taints.append(Taint(key=key, value=m.group(1), effect=m.group(2)))
    return taints


def build_template_node(pool_id: str, template: NodeTemplate, index: int,
                        pool_label_key: Optional[str] = None) -> Node:
    """Synthetic, ready Node built from a pool template"""
    name = f"template-node-for-{pool_id}-{index}"
    allocatable = dict(template.allocatable)
    allocatable.setdefault(PODS, DEFAULT_POD_CAPACITY)
    labels = dict(template.labels)
    labels[HOSTNAME_LABEL] = name
    if pool_label_key:
        labels.setdefault(pool_label_key, pool_id)
    return Node(
        name=name,
        allocatable=allocatable,
        labels=labels,
        taints=tuple(template.taints),
        pool_id=pool_id,
        ready=True,
        is_template=True,
    )


def inject_upcoming_nodes(snapshot: ClusterSnapshot, pools: Dict[str, 'NodePool'],
                          upcoming: Dict[str, int], pool_label_key: Optional[str] = None,
                          on_error: Optional[Callable[[str, NodePoolError], None]] = None) -> ClusterSnapshot:
    """Fork with a template node for every requested-but-unregistered node.

    A pool whose template cannot be read contributes no nodes; on_error is
    told about it.
    """
    sim = snapshot.fork()
    for pool_id in sorted(upcoming):
        pool = pools.get(pool_id)
        if pool is None:
            continue
        try:
            template = pool.template()
        except NodePoolError as e:
            logger.warning(f"Pool {pool_id}: cannot read template, ignoring its upcoming nodes: {e}")
            if on_error is not None:
                on_error(pool_id, e)
            continue
        index = 0
        for _ in range(upcoming[pool_id]):
            while sim.node(f"template-node-for-{pool_id}-{index}") is not None:
                index += 1
            sim.add_node(build_template_node(pool_id, template, index, pool_label_key))
            index += 1
    return sim


def template_fingerprint(template: NodeTemplate,
                         ignored_labels: Tuple[str, ...] = SIMILARITY_IGNORED_LABELS) -> str:
    """Stable digest of capacity, labels (minus per-instance ones) and taints"""
    allocatable = dict(template.allocatable)
    allocatable.setdefault(PODS, DEFAULT_POD_CAPACITY)
    doc = {
        'allocatable': sorted(allocatable.items()),
        'labels': sorted((k, v) for k, v in template.labels.items() if k not in ignored_labels),
        'taints': sorted((t.key, t.value, t.effect) for t in template.taints),
    }
    return hashlib.sha1(json.dumps(doc, sort_keys=True).encode('utf-8')).hexdigest()


class NodePool(abc.ABC):
    """Capability set the engine consumes from a provider adapter"""

    @abc.abstractmethod
    def id(self) -> str:
        ...

    @abc.abstractmethod
    def target_size(self) -> int:
        ...

    @abc.abstractmethod
    def set_target_size(self, n: int) -> None:
        """Raises NodePoolError on failure"""
        ...

    @abc.abstractmethod
    def delete_nodes(self, ids: List[str]) -> None:
        """Raises NodePoolError on failure"""
        ...

    @abc.abstractmethod
    def template(self) -> NodeTemplate:
        ...

    @abc.abstractmethod
    def min_size(self) -> int:
        ...

    @abc.abstractmethod
    def max_size(self) -> int:
        ...

    def instance_ids(self) -> Optional[List[str]]:
        """Instances the provider knows about, or None when it cannot list them"""
        return None

    def similarity_fingerprint(self) -> str:
        return template_fingerprint(self.template())


class StaticNodePool(NodePool):
    """In-memory pool; resizes are applied immediately"""

    def __init__(
        self,
        pool_id: str,
        template: NodeTemplate,
        min_size: int = 0,
        max_size: int = 10,
        target_size: int = 0,
        instances: Optional[List[str]] = None,
    ):
        if min_size < 0 or max_size < min_size:
            raise ValueError(f"pool {pool_id}: invalid bounds min={min_size} max={max_size}")
        self._id = pool_id
        self._template = template
        self._min = min_size
        self._max = max_size
        self._target = target_size
        self._instances = list(instances) if instances is not None else None
        self._lock = threading.Lock()

    def id(self) -> str:
        return self._id

    def target_size(self) -> int:
        with self._lock:
            return self._target

    def set_target_size(self, n: int) -> None:
        if n < self._min or n > self._max:
            raise NodePoolError(
                f"pool {self._id}: target {n} outside [{self._min}, {self._max}]",
                kind=NodePoolError.PERMANENT,
            )
        with self._lock:
            self._target = n

    def delete_nodes(self, ids: List[str]) -> None:
        with self._lock:
            if self._target - len(ids) < self._min:
                raise NodePoolError(
                    f"pool {self._id}: deleting {len(ids)} would go below min size {self._min}",
                    kind=NodePoolError.PERMANENT,
                )
            if self._instances is not None:
                self._instances = [i for i in self._instances if i not in ids]
            self._target -= len(ids)

    def template(self) -> NodeTemplate:
        return self._template

    def min_size(self) -> int:
        return self._min

    def max_size(self) -> int:
        return self._max

    def instance_ids(self) -> Optional[List[str]]:
        with self._lock:
            return list(self._instances) if self._instances is not None else None

    def __repr__(self):
        return f"StaticNodePool({self._id}, target={self._target}, min={self._min}, max={self._max})"


def template_from_dict(raw: Dict[str, Any]) -> NodeTemplate:
    taints = raw.get('taints') or []
    if isinstance(taints, str):
        parsed = parse_taints_spec(taints)
    else:
        parsed = [Taint(key=t['key'], value=t.get('value', ''), effect=t.get('effect', 'NoSchedule'))
                  for t in taints if t.get('effect', 'NoSchedule') in TAINT_EFFECTS]
    return NodeTemplate(
        allocatable=parse_resource_list(raw.get('allocatable') or raw.get('capacity')),
        labels={str(k): str(v) for k, v in (raw.get('labels') or {}).items()},
        taints=tuple(parsed),
    )


def load_node_pools(config_path: str) -> Dict[str, StaticNodePool]:
    """Load static pools from a YAML file.

    pools:
      - id: general
        min_size: 1
        max_size: 10
        target_size: 2
        template:
          allocatable: {cpu: "4", memory: 8Gi}
          labels: {workload: general}
          taints: "dedicated=batch:NoSchedule"
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    pools: Dict[str, StaticNodePool] = {}
    for entry in config.get('pools', []):
        pool_id = entry.get('id')
        if not pool_id:
            logger.warning("Skipping pool entry without id")
            continue
        if pool_id in pools:
            logger.warning(f"Duplicate pool id {pool_id}, keeping the first definition")
            continue
        pools[pool_id] = StaticNodePool(
            pool_id=pool_id,
            template=template_from_dict(entry.get('template') or {}),
            min_size=int(entry.get('min_size', 0)),
            max_size=int(entry.get('max_size', 10)),
            target_size=int(entry.get('target_size', 0)),
            instances=entry.get('instances'),
        )
    logger.info(f"Loaded {len(pools)} node pool(s) from {config_path}")
    return pools
