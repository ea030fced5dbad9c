"""
ClusterStateRegistry - the only long-lived mutable state of the engine.

Tracks, per node pool:
  - target / registered / ready counts, refreshed by `update()`
  - in-flight scale-up requests (optimistic target, expiry) and deletions
  - instances that never registered as nodes
  - exponential backoff after failures, and permanent failure
  - health (too many unready nodes)

and, per node, how long it has been below the scale-down utilization
threshold. Every public method takes the same re-entrant lock, so the
planners may query it from worker threads while the control loop mutates it.
"""
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from cluster.node_pool import NodePool, NodePoolError
from cluster.snapshot import ClusterSnapshot
from config import AutoscalingOptions
from registry import events
from registry.events import EventRecorder

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 2


class PoolState(str, Enum):
    STABLE = 'stable'
    SCALING_UP = 'scaling_up'
    BACKOFF = 'backoff'
    UNHEALTHY = 'unhealthy'


@dataclass
class ScaleUpRequest:
    attempt_id: str
    pool_id: str
    delta: int
    started_at: float
    expires_at: float
    acknowledged: bool = False


@dataclass
class DeletionRecord:
    node_name: str
    pool_id: str
    started_at: float
    # draining -> deleting (provider acknowledged, node not yet gone)
    phase: str = 'draining'


@dataclass(frozen=True)
class UnregisteredNode:
    """A requested instance that never showed up as a node.

    instance_id is None when the provider cannot list instances and the
    entry only stands for an unfilled part of an expired scale-up request.
    """
    pool_id: str
    instance_id: Optional[str]
    since: float


@dataclass
class _Backoff:
    until: float = 0.0
    failures: int = 0
    permanent: bool = False
    reason: str = ''


@dataclass
class PoolHealthState:
    pool_id: str
    ready: int = 0
    registered: int = 0
    target_size: int = 0
    unregistered: int = 0
    backoff_until: Optional[float] = None
    permanently_failed: bool = False
    last_scale_up: Optional[float] = None
    last_scale_down: Optional[float] = None
    state: PoolState = PoolState.STABLE

    def to_dict(self) -> Dict:
        return {
            'pool_id': self.pool_id,
            'ready': self.ready,
            'registered': self.registered,
            'target_size': self.target_size,
            'unregistered': self.unregistered,
            'backoff_until': self.backoff_until,
            'permanently_failed': self.permanently_failed,
            'last_scale_up': self.last_scale_up,
            'last_scale_down': self.last_scale_down,
            'state': self.state.value,
        }


@dataclass
class _PoolRecord:
    pool_id: str
    target: int = 0
    registered: int = 0
    ready: int = 0
    unhealthy: bool = False
    last_scale_up: Optional[float] = None
    last_scale_down: Optional[float] = None
    backoff: _Backoff = field(default_factory=_Backoff)
    # instance id -> first time the provider reported it without a node
    pending_instances: Dict[str, float] = field(default_factory=dict)
    synthetic_unregistered: int = 0
    synthetic_since: float = 0.0
    reported_unregistered: set = field(default_factory=set)


class ClusterStateRegistry:

    def __init__(self, options: Optional[AutoscalingOptions] = None,
                 recorder: Optional[EventRecorder] = None):
        self.options = options or AutoscalingOptions()
        self.recorder = recorder or EventRecorder()
        self._lock = threading.RLock()
        self._pools: Dict[str, _PoolRecord] = {}
        self._scale_ups: Dict[str, ScaleUpRequest] = {}
        self._deletions: Dict[str, DeletionRecord] = {}
        self._registered_nodes: Dict[str, str] = {}
        self._low_util_since: Dict[str, float] = {}
        self._attempt_seq = itertools.count(1)
        self._now = 0.0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _clock(self, now: Optional[float]) -> float:
        if now is not None:
            self._now = max(self._now, now)
            return now
        return self._now or time.time()

    def _pool(self, pool_id: str) -> _PoolRecord:
        rec = self._pools.get(pool_id)
        if rec is None:
            rec = _PoolRecord(pool_id=pool_id)
            self._pools[pool_id] = rec
        return rec

    def _enter_backoff(self, pool_id: str, now: float, reason: str,
                       permanent: bool = False) -> None:
        rec = self._pool(pool_id)
        b = rec.backoff
        b.reason = reason
        if permanent:
            if not b.permanent:
                b.permanent = True
                logger.error(f"Pool {pool_id} permanently failed: {reason}")
                self.recorder.record(events.POOL_PERMANENTLY_FAILED, pool_id, reason, now)
            return
        # Streak resets after a quiet period following the last backoff
        if b.failures and now >= b.until + self.options.backoff_reset_seconds:
            b.failures = 0
        duration = min(
            self.options.backoff_initial_seconds * (BACKOFF_FACTOR ** b.failures),
            self.options.backoff_max_seconds,
        )
        b.failures += 1
        b.until = now + duration
        logger.warning(f"Pool {pool_id} backing off for {duration:.0f}s: {reason}")
        self.recorder.record(events.POOL_BACKOFF, pool_id, reason, now,
                             duration_seconds=duration, failures=b.failures)

    def _outstanding(self, pool_id: str) -> List[ScaleUpRequest]:
        return [r for r in self._scale_ups.values() if r.pool_id == pool_id]

    # ------------------------------------------------------------------
    # Scale-up bookkeeping
    # ------------------------------------------------------------------
    def record_scale_up_attempt(self, pool_id: str, delta: int, now: Optional[float] = None) -> str:
        """Optimistically raise the pool target; returns the attempt id"""
        with self._lock:
            now = self._clock(now)
            rec = self._pool(pool_id)
            attempt_id = f"{pool_id}-{next(self._attempt_seq)}"
            self._scale_ups[attempt_id] = ScaleUpRequest(
                attempt_id=attempt_id,
                pool_id=pool_id,
                delta=delta,
                started_at=now,
                expires_at=now + self.options.max_node_provision_seconds,
            )
            rec.target += delta
            rec.last_scale_up = now
            logger.debug(f"Scale-up attempt {attempt_id}: {pool_id} +{delta} (target {rec.target})")
            return attempt_id

    def record_scale_up_result(self, attempt_id: str,
                               error: Union[None, str, Exception] = None,
                               now: Optional[float] = None) -> bool:
        """Apply the provider outcome of an attempt once; returns False on repeats"""
        with self._lock:
            now = self._clock(now)
            req = self._scale_ups.get(attempt_id)
            if req is None:
                # Failed attempts are dropped on the first result, expired ones on update
                logger.debug(f"Scale-up attempt {attempt_id} unknown or already resolved")
                return False
            if req.acknowledged:
                return False
            if error is None:
                req.acknowledged = True
                return True

            del self._scale_ups[attempt_id]
            rec = self._pool(req.pool_id)
            rec.target -= req.delta
            permanent = isinstance(error, NodePoolError) and error.kind == NodePoolError.PERMANENT
            message = f"scale-up by {req.delta} failed: {error}"
            self.recorder.record(events.SCALE_UP_FAILED, req.pool_id, message, now,
                                 attempt_id=attempt_id, delta=req.delta)
            self._enter_backoff(req.pool_id, now, message, permanent=permanent)
            return True

    # ------------------------------------------------------------------
    # Scale-down bookkeeping
    # ------------------------------------------------------------------
    def record_scale_down_attempt(self, node_name: str, pool_id: str, now: Optional[float] = None) -> bool:
        with self._lock:
            now = self._clock(now)
            if node_name in self._deletions:
                return False
            self._deletions[node_name] = DeletionRecord(node_name, pool_id, now)
            return True

    def record_scale_down_result(self, node_name: str,
                                 error: Union[None, str, Exception] = None,
                                 now: Optional[float] = None) -> bool:
        """Success lowers the pool target once; failure clears draining and backs off"""
        with self._lock:
            now = self._clock(now)
            record = self._deletions.get(node_name)
            if record is None or record.phase != 'draining':
                return False
            rec = self._pool(record.pool_id)
            if error is None:
                record.phase = 'deleting'
                rec.target = max(0, rec.target - 1)
                rec.last_scale_down = now
                return True

            del self._deletions[node_name]
            permanent = isinstance(error, NodePoolError) and error.kind == NodePoolError.PERMANENT
            message = f"removing node {node_name} failed: {error}"
            self.recorder.record(events.SCALE_DOWN_FAILED, record.pool_id, message, now,
                                 node=node_name)
            self._enter_backoff(record.pool_id, now, message, permanent=permanent)
            return True

    def abandon_scale_down(self, node_name: str, reason: str, now: Optional[float] = None) -> bool:
        """Drop a draining node without penalizing its pool"""
        with self._lock:
            now = self._clock(now)
            record = self._deletions.get(node_name)
            if record is None or record.phase != 'draining':
                return False
            del self._deletions[node_name]
            self.recorder.record(events.SCALE_DOWN_SKIPPED, node_name, reason, now,
                                 pool_id=record.pool_id)
            return True

    def record_provider_error(self, pool_id: str, error: Union[str, Exception],
                              now: Optional[float] = None) -> None:
        """A read-only provider call failed; back the pool off unless it already is"""
        with self._lock:
            now = self._clock(now)
            message = f"provider call failed: {error}"
            self.recorder.record(events.PROVIDER_ERROR, pool_id, message, now)
            permanent = isinstance(error, NodePoolError) and error.kind == NodePoolError.PERMANENT
            if permanent or not self.is_in_backoff(pool_id, now):
                self._enter_backoff(pool_id, now, message, permanent=permanent)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def record_node_registered(self, node_name: str, pool_id: str) -> bool:
        """Returns True the first time a node is seen"""
        with self._lock:
            if self._registered_nodes.get(node_name) == pool_id:
                return False
            self._registered_nodes[node_name] = pool_id
            rec = self._pool(pool_id)
            rec.pending_instances.pop(node_name, None)
            rec.reported_unregistered.discard(node_name)
            return True

    def update(self, snapshot: ClusterSnapshot, pools: Dict[str, NodePool],
               now: Optional[float] = None) -> None:
        """Reconcile with a fresh snapshot and the providers' view of each pool"""
        with self._lock:
            now = self._clock(now)
            opts = self.options

            for pool_id in list(self._pools):
                if pool_id not in pools:
                    del self._pools[pool_id]

            live_nodes = {}
            for node in snapshot.nodes():
                if node.is_template or node.pool_id not in pools:
                    continue
                live_nodes[node.name] = node
                self.record_node_registered(node.name, node.pool_id)
            for name in list(self._registered_nodes):
                if name not in live_nodes:
                    del self._registered_nodes[name]

            for name in list(self._deletions):
                if name not in live_nodes:
                    del self._deletions[name]

            for pool_id, pool in pools.items():
                rec = self._pool(pool_id)
                members = [n for n in live_nodes.values() if n.pool_id == pool_id]
                rec.registered = len(members)
                rec.ready = sum(1 for n in members if n.ready)
                try:
                    rec.target = pool.target_size()
                except NodePoolError as e:
                    logger.warning(f"Pool {pool_id}: cannot read target size, keeping {rec.target}: {e}")

                self._update_unregistered(rec, pool, live_nodes, now)
                self._update_health(rec, now)

            for name in list(self._low_util_since):
                if name not in live_nodes:
                    del self._low_util_since[name]
            threshold = opts.scale_down_utilization_threshold
            for name, node in live_nodes.items():
                util = snapshot.utilization(name)
                if util is not None and util < threshold:
                    self._low_util_since.setdefault(name, now)
                else:
                    self._low_util_since.pop(name, None)

    def _update_unregistered(self, rec: _PoolRecord, pool: NodePool,
                             live_nodes: Dict[str, object], now: float) -> None:
        opts = self.options
        instances = None
        try:
            instances = pool.instance_ids()
        except NodePoolError as e:
            logger.warning(f"Pool {rec.pool_id}: cannot list instances: {e}")

        outstanding = self._outstanding(rec.pool_id)
        if rec.registered >= rec.target:
            # Everything requested has shown up
            for req in outstanding:
                del self._scale_ups[req.attempt_id]
            rec.synthetic_unregistered = 0
            outstanding = []

        expired = [r for r in outstanding if r.expires_at <= now]
        for req in expired:
            del self._scale_ups[req.attempt_id]

        newly_unregistered = []
        if instances is not None:
            missing = [i for i in instances if i not in live_nodes]
            for instance_id in list(rec.pending_instances):
                if instance_id not in missing:
                    del rec.pending_instances[instance_id]
                    rec.reported_unregistered.discard(instance_id)
            for instance_id in missing:
                first_seen = rec.pending_instances.setdefault(instance_id, now)
                if (now - first_seen >= opts.max_node_provision_seconds
                        and instance_id not in rec.reported_unregistered):
                    rec.reported_unregistered.add(instance_id)
                    newly_unregistered.append(instance_id)
        elif expired:
            still_outstanding = sum(r.delta for r in self._outstanding(rec.pool_id))
            shortfall = rec.target - rec.registered - still_outstanding - rec.synthetic_unregistered
            shortfall = min(shortfall, sum(r.delta for r in expired))
            if shortfall > 0:
                rec.synthetic_unregistered += shortfall
                rec.synthetic_since = min(r.started_at for r in expired)
                newly_unregistered.extend([None] * shortfall)

        if not newly_unregistered:
            return
        for instance_id in newly_unregistered:
            subject = instance_id or rec.pool_id
            self.recorder.record(events.NODE_UNREGISTERED, subject,
                                 f"requested node in pool {rec.pool_id} did not register "
                                 f"within {opts.max_node_provision_seconds:.0f}s",
                                 now, pool_id=rec.pool_id)
        if self._unregistered_count(rec, now) > opts.unregistered_node_threshold:
            self._enter_backoff(rec.pool_id, now,
                                f"{self._unregistered_count(rec, now)} node(s) failed to register")

    def _unregistered_count(self, rec: _PoolRecord, now: float) -> int:
        limit = self.options.max_node_provision_seconds
        long_pending = sum(1 for since in rec.pending_instances.values() if now - since >= limit)
        return long_pending + rec.synthetic_unregistered

    def _update_health(self, rec: _PoolRecord, now: float) -> None:
        opts = self.options
        unready = rec.registered - rec.ready
        allowed = max(opts.ok_total_unready_count,
                      opts.max_total_unready_percentage * rec.registered / 100.0)
        unhealthy = unready > allowed
        if unhealthy and not rec.unhealthy:
            logger.warning(f"Pool {rec.pool_id} unhealthy: {unready}/{rec.registered} nodes unready")
            self.recorder.record(events.POOL_UNHEALTHY, rec.pool_id,
                                 f"{unready} of {rec.registered} nodes unready", now,
                                 unready=unready, registered=rec.registered)
        elif rec.unhealthy and not unhealthy:
            logger.info(f"Pool {rec.pool_id} recovered")
            self.recorder.record(events.POOL_RECOVERED, rec.pool_id, "unready nodes within limits", now)
        rec.unhealthy = unhealthy

    def record_forced_removal(self, pool_id: str, instance_ids: List[str], synthetic: int,
                              now: Optional[float] = None) -> None:
        """Forget unregistered entries the control loop has asked the provider to drop"""
        with self._lock:
            self._clock(now)
            rec = self._pool(pool_id)
            for instance_id in instance_ids:
                rec.pending_instances.pop(instance_id, None)
                rec.reported_unregistered.discard(instance_id)
            rec.synthetic_unregistered = max(0, rec.synthetic_unregistered - synthetic)
            rec.target = max(0, rec.target - len(instance_ids) - synthetic)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_in_backoff(self, pool_id: str, now: Optional[float] = None) -> bool:
        with self._lock:
            now = self._clock(now)
            rec = self._pools.get(pool_id)
            if rec is None:
                return False
            return rec.backoff.permanent or now < rec.backoff.until

    def is_permanently_failed(self, pool_id: str) -> bool:
        with self._lock:
            rec = self._pools.get(pool_id)
            return rec is not None and rec.backoff.permanent

    def is_healthy(self, pool_id: str) -> bool:
        with self._lock:
            rec = self._pools.get(pool_id)
            return rec is None or not rec.unhealthy

    def unregistered_nodes(self, pool_id: Optional[str] = None,
                           now: Optional[float] = None) -> List[UnregisteredNode]:
        """Instances past the provisioning grace period without a node"""
        with self._lock:
            now = self._clock(now)
            limit = self.options.max_node_provision_seconds
            result: List[UnregisteredNode] = []
            for pid in sorted(self._pools):
                if pool_id is not None and pid != pool_id:
                    continue
                rec = self._pools[pid]
                for instance_id, since in sorted(rec.pending_instances.items()):
                    if now - since >= limit:
                        result.append(UnregisteredNode(pid, instance_id, since))
                for _ in range(rec.synthetic_unregistered):
                    result.append(UnregisteredNode(pid, None, rec.synthetic_since))
            return result

    def upcoming_nodes(self, pool_id: Optional[str] = None) -> Dict[str, int]:
        """Requested-but-unregistered node count per pool while scaling up"""
        with self._lock:
            result: Dict[str, int] = {}
            for pid, rec in sorted(self._pools.items()):
                if pool_id is not None and pid != pool_id:
                    continue
                if not self._outstanding(pid):
                    continue
                pending = rec.target - rec.registered - self._unregistered_count(rec, self._now)
                if pending > 0:
                    result[pid] = pending
            return result

    def pool_state(self, pool_id: str, now: Optional[float] = None) -> PoolHealthState:
        with self._lock:
            now = self._clock(now)
            rec = self._pools.get(pool_id) or _PoolRecord(pool_id=pool_id)
            if self.is_in_backoff(pool_id, now):
                state = PoolState.BACKOFF
            elif rec.unhealthy:
                state = PoolState.UNHEALTHY
            elif self._outstanding(pool_id):
                state = PoolState.SCALING_UP
            else:
                state = PoolState.STABLE
            return PoolHealthState(
                pool_id=pool_id,
                ready=rec.ready,
                registered=rec.registered,
                target_size=rec.target,
                unregistered=self._unregistered_count(rec, now),
                backoff_until=rec.backoff.until if rec.backoff.until > now else None,
                permanently_failed=rec.backoff.permanent,
                last_scale_up=rec.last_scale_up,
                last_scale_down=rec.last_scale_down,
                state=state,
            )

    def pool_states(self, now: Optional[float] = None) -> Dict[str, PoolHealthState]:
        with self._lock:
            return {pid: self.pool_state(pid, now) for pid in sorted(self._pools)}

    def target_size(self, pool_id: str) -> int:
        with self._lock:
            rec = self._pools.get(pool_id)
            return rec.target if rec is not None else 0

    def is_being_deleted(self, node_name: str) -> bool:
        with self._lock:
            return node_name in self._deletions

    def deletions_in_flight(self, pool_id: Optional[str] = None) -> List[DeletionRecord]:
        with self._lock:
            return [d for _, d in sorted(self._deletions.items())
                    if pool_id is None or d.pool_id == pool_id]

    def low_utilization_since(self, node_name: str) -> Optional[float]:
        with self._lock:
            return self._low_util_since.get(node_name)

    def last_scale_up_time(self, pool_id: Optional[str] = None) -> Optional[float]:
        with self._lock:
            times = [rec.last_scale_up for pid, rec in self._pools.items()
                     if rec.last_scale_up is not None and (pool_id is None or pid == pool_id)]
            return max(times) if times else None

    def scale_ups_in_flight(self) -> List[ScaleUpRequest]:
        with self._lock:
            return [r for _, r in sorted(self._scale_ups.items())]
