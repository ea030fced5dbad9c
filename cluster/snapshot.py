"""
ClusterSnapshot - immutable per-tick view with copy-on-write forks.

A snapshot built from live data is frozen. `fork()` returns an overlay that
shares every Node/Pod record with its parent and only stores the entries it
changes (removed nodes, added template nodes, pod placements, consumed
disruption allowances). Forking freezes the parent so an overlay can never
observe a parent changing underneath it.
"""
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from cluster.model import Node, Pod, PodDisruptionBudget
from normalize import resources as res
from normalize.quantity import PODS


class SnapshotError(Exception):
    """Raised for inconsistent snapshot input or writes to a frozen snapshot"""
    pass


class ClusterSnapshot:

    def __init__(
        self,
        nodes: Iterable[Node] = (),
        pods: Iterable[Pod] = (),
        pdbs: Iterable[PodDisruptionBudget] = (),
        taken_at: float = 0.0,
    ):
        self.taken_at = taken_at
        self._parent: Optional['ClusterSnapshot'] = None
        self._frozen = True
        self._depth = 0

        self._nodes: Dict[str, Optional[Node]] = {}
        self._pods: Dict[str, Pod] = {}
        self._placement: Dict[str, Optional[str]] = {}
        self._node_pods: Dict[str, Tuple[str, ...]] = {}
        self._requested: Dict[str, res.ResourceList] = {}
        self._pdbs: Dict[str, PodDisruptionBudget] = {}
        self._disruptions: Dict[str, int] = {}

        for node in nodes:
            if node.name in self._nodes:
                raise SnapshotError(f"duplicate node {node.name}")
            self._nodes[node.name] = node

        by_node: Dict[str, List[str]] = {name: [] for name in self._nodes}
        for pod in pods:
            if pod.uid in self._pods:
                raise SnapshotError(f"duplicate pod {pod.uid}")
            self._pods[pod.uid] = pod
            self._placement[pod.uid] = pod.node_name
            if pod.node_name in by_node:
                by_node[pod.node_name].append(pod.uid)

        for name, uids in by_node.items():
            self._node_pods[name] = tuple(sorted(uids))
            self._requested[name] = _sum_requests(self._pods[u] for u in uids)

        for pdb in pdbs:
            self._pdbs[pdb.uid] = pdb
            self._disruptions[pdb.uid] = pdb.disruptions_allowed

    # ------------------------------------------------------------------
    # Forking
    # ------------------------------------------------------------------
    def fork(self) -> 'ClusterSnapshot':
        """Writable overlay sharing all records with this snapshot"""
        self._frozen = True
        child = ClusterSnapshot.__new__(ClusterSnapshot)
        child.taken_at = self.taken_at
        child._parent = self
        child._frozen = False
        child._depth = self._depth + 1
        child._nodes = {}
        child._pods = {}
        child._placement = {}
        child._node_pods = {}
        child._requested = {}
        child._pdbs = {}
        child._disruptions = {}
        return child

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def depth(self) -> int:
        return self._depth

    def _chain(self) -> List['ClusterSnapshot']:
        """Root first"""
        layers = []
        snap: Optional[ClusterSnapshot] = self
        while snap is not None:
            layers.append(snap)
            snap = snap._parent
        layers.reverse()
        return layers

    def _lookup(self, attr: str, key: str, default=None):
        snap: Optional[ClusterSnapshot] = self
        while snap is not None:
            table = getattr(snap, attr)
            if key in table:
                return table[key]
            snap = snap._parent
        return default

    def _check_writable(self) -> None:
        if self._frozen:
            raise SnapshotError("snapshot is frozen; fork() it first")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def node(self, name: str) -> Optional[Node]:
        return self._lookup('_nodes', name)

    def node_names(self) -> List[str]:
        names: Dict[str, bool] = {}
        for layer in self._chain():
            for name, node in layer._nodes.items():
                names[name] = node is not None
        return sorted(n for n, alive in names.items() if alive)

    def nodes(self) -> List[Node]:
        """All live nodes ordered by name"""
        return [self.node(n) for n in self.node_names()]

    def pod(self, uid: str) -> Optional[Pod]:
        return self._lookup('_pods', uid)

    def pod_node(self, uid: str) -> Optional[str]:
        return self._lookup('_placement', uid)

    def pods(self) -> List[Pod]:
        seen: Dict[str, Pod] = {}
        for layer in self._chain():
            seen.update(layer._pods)
        return [seen[uid] for uid in sorted(seen)]

    def pods_on(self, node_name: str) -> List[Pod]:
        uids = self._lookup('_node_pods', node_name, ())
        return [self.pod(u) for u in uids]

    def placed_pods(self) -> Iterator[Tuple[Pod, Node]]:
        """(pod, node) for every pod placed on a live node"""
        for node in self.nodes():
            for pod in self.pods_on(node.name):
                yield pod, node

    def pending_pods(self) -> List[Pod]:
        """Pods with no node assignment, ordered by uid"""
        return [p for p in self.pods() if self.pod_node(p.uid) is None]

    def requested(self, node_name: str) -> res.ResourceList:
        return dict(self._lookup('_requested', node_name, {}))

    def free(self, node_name: str) -> res.ResourceList:
        """Allocatable minus what placed pods request"""
        node = self.node(node_name)
        if node is None:
            return {}
        return res.subtract(node.allocatable, self.requested(node_name))

    def utilization(self, node_name: str):
        node = self.node(node_name)
        if node is None:
            return None
        return res.utilization(self.requested(node_name), node.allocatable)

    def pdbs(self) -> List[PodDisruptionBudget]:
        seen: Dict[str, PodDisruptionBudget] = {}
        for layer in self._chain():
            seen.update(layer._pdbs)
        return [seen[uid] for uid in sorted(seen)]

    def matching_pdbs(self, pod: Pod) -> List[PodDisruptionBudget]:
        return [pdb for pdb in self.pdbs() if pdb.matches(pod)]

    def disruptions_allowed(self, pdb_uid: str) -> int:
        return self._lookup('_disruptions', pdb_uid, 0)

    # ------------------------------------------------------------------
    # Writes (forks only)
    # ------------------------------------------------------------------
    def add_node(self, node: Node) -> None:
        self._check_writable()
        if self.node(node.name) is not None:
            raise SnapshotError(f"node {node.name} already exists")
        self._nodes[node.name] = node
        self._node_pods[node.name] = ()
        self._requested[node.name] = {}

    def remove_node(self, name: str) -> List[Pod]:
        """Remove a node; its pods become unassigned and are returned"""
        self._check_writable()
        if self.node(name) is None:
            raise SnapshotError(f"node {name} not found")
        evicted = self.pods_on(name)
        for pod in evicted:
            self._placement[pod.uid] = None
        self._nodes[name] = None
        self._node_pods[name] = ()
        self._requested[name] = {}
        return evicted

    def place(self, pod: Pod, node_name: str) -> None:
        """Assign a pod to a node, moving it if it is already placed"""
        self._check_writable()
        if self.node(node_name) is None:
            raise SnapshotError(f"node {node_name} not found")
        if self.pod(pod.uid) is None:
            self._pods[pod.uid] = pod
        current = self.pod_node(pod.uid)
        if current == node_name:
            return
        if current is not None:
            self.unassign(pod.uid)
        uids = self._lookup('_node_pods', node_name, ())
        self._node_pods[node_name] = tuple(sorted(uids + (pod.uid,)))
        self._requested[node_name] = res.add(self.requested(node_name), _pod_usage(pod))
        self._placement[pod.uid] = node_name

    def unassign(self, uid: str) -> None:
        self._check_writable()
        current = self.pod_node(uid)
        if current is None:
            return
        pod = self.pod(uid)
        if self.node(current) is not None:
            uids = self._lookup('_node_pods', current, ())
            self._node_pods[current] = tuple(u for u in uids if u != uid)
            self._requested[current] = res.subtract(self.requested(current), _pod_usage(pod))
        self._placement[uid] = None

    def consume_disruption(self, pdb_uid: str) -> int:
        """Spend one allowed disruption; returns what is left"""
        self._check_writable()
        left = self.disruptions_allowed(pdb_uid) - 1
        self._disruptions[pdb_uid] = left
        return left


def _pod_usage(pod: Pod) -> res.ResourceList:
    return res.add(pod.requests, {PODS: 1})


def _sum_requests(pods: Iterable[Pod]) -> res.ResourceList:
    return res.total(_pod_usage(p) for p in pods)
